"""Ladder (two-rail sequence) diagram layout.

The layout is pure geometry: it returns one row per packet with the arrow
endpoints, colour and label, and leaves drawing to whatever renders it.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..api.schemas import Packet
from .direction import Direction, resolve

logger = logging.getLogger(__name__)

BASE_ROW_HEIGHT = 40
MIN_SCALE = 0.5
MAX_SCALE = 2.0

CLIENT_RAIL_X = 120
SERVER_RAIL_X = 520

RST_COLOR = "#ef4444"
SYN_COLOR = "#22c55e"
FIN_COLOR = "#eab308"
DEFAULT_COLOR = "#64748b"


@dataclass(frozen=True)
class LadderRow:
    packet: Packet
    offset: float
    is_client_originated: bool
    delta_ms: float
    x_start: float
    x_end: float
    label: str
    color: str
    anomaly: Optional[str] = None

    @property
    def direction(self) -> Direction:
        return Direction.CLIENT_TO_SERVER if self.is_client_originated else Direction.SERVER_TO_CLIENT


def clamp_scale(scale: float) -> float:
    return max(MIN_SCALE, min(MAX_SCALE, scale))


def arrow_color(packet: Packet) -> str:
    if "RST" in packet.flags:
        return RST_COLOR
    if "SYN" in packet.flags:
        return SYN_COLOR
    if "FIN" in packet.flags:
        return FIN_COLOR
    return DEFAULT_COLOR


def layout(
    packets: Sequence[Packet],
    client_addr: str,
    server_addr: str,
    scale: float = 1.0,
) -> List[LadderRow]:
    """Lay out ``packets`` (already ordered by timestamp) between two rails.

    Raises:
        DataIntegrityError: if a packet's source is missing or is neither
            endpoint
    """
    if scale != clamp_scale(scale):
        logger.debug("Ladder scale %s clamped to [%s, %s]", scale, MIN_SCALE, MAX_SCALE)
    scale = clamp_scale(scale)

    rows: List[LadderRow] = []
    previous = None
    for index, packet in enumerate(packets):
        from_client = resolve(packet, client_addr, server_addr) == Direction.CLIENT_TO_SERVER

        anomaly = None
        delta_ms = 0.0
        if previous is not None:
            delta_ms = (packet.timestamp - previous.timestamp).total_seconds() * 1000
            if delta_ms < 0:
                anomaly = f"timestamp {abs(delta_ms):.3f} ms earlier than packet {previous.id}"
                logger.warning("Stream packets out of order: packet %s is %s", packet.id, anomaly)
                delta_ms = 0.0

        x_start, x_end = (CLIENT_RAIL_X, SERVER_RAIL_X) if from_client else (SERVER_RAIL_X, CLIENT_RAIL_X)
        rows.append(
            LadderRow(
                packet=packet,
                offset=(index + 1) * BASE_ROW_HEIGHT * scale,
                is_client_originated=from_client,
                delta_ms=delta_ms,
                x_start=x_start,
                x_end=x_end,
                label=f"{packet.flag_label or 'DATA'} len={packet.payload_length}",
                color=arrow_color(packet),
                anomaly=anomaly,
            )
        )
        previous = packet
    return rows


def diagram_height(rows: Sequence[LadderRow], scale: float = 1.0) -> float:
    """Canvas height needed for ``rows``, with one spare row of padding."""
    return (len(rows) + 1) * BASE_ROW_HEIGHT * clamp_scale(scale)


def render_text(rows: Sequence[LadderRow], client_addr: str, server_addr: str) -> str:
    """Plain-text ladder, one line per packet."""
    width = 40
    lines = [f"{'delta':>10}  {client_addr:<{width // 2}}{server_addr:>{width // 2}}"]
    for row in rows:
        shaft = "-" * (width - 2)
        arrow = f"{shaft}->" if row.is_client_originated else f"<-{shaft}"
        note = f"  !{row.anomaly}" if row.anomaly else ""
        lines.append(f"{'+%.1fms' % row.delta_ms:>10}  |{arrow}|  {row.label}{note}")
    return "\n".join(lines)
