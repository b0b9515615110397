from enum import Enum
from typing import Optional

from ..api.schemas import Packet
from .errors import DataIntegrityError


class Direction(str, Enum):
    CLIENT_TO_SERVER = "client_to_server"
    SERVER_TO_CLIENT = "server_to_client"


def resolve(packet: Packet, client_addr: str, server_addr: Optional[str] = None) -> Direction:
    """Return which endpoint sent ``packet``.

    The packet's source address is the only input: a packet without one, or
    (when ``server_addr`` is given) one whose source is neither endpoint, is a
    :class:`DataIntegrityError`.
    """
    source = packet.source_addr
    if not source:
        raise DataIntegrityError(f"Packet {packet.id} has no source address")
    if source == client_addr:
        return Direction.CLIENT_TO_SERVER
    if server_addr is not None and source != server_addr:
        raise DataIntegrityError(
            f"Packet {packet.id} source {source} matches neither {client_addr} nor {server_addr}"
        )
    return Direction.SERVER_TO_CLIENT
