import base64
import binascii
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .errors import DecodeError

BYTES_PER_ROW = 16


@dataclass(frozen=True)
class HexRow:
    offset: int
    hex_octets: Tuple[str, ...]
    ascii: str

    def to_bytes(self) -> bytes:
        return bytes.fromhex("".join(self.hex_octets))


@dataclass(frozen=True)
class HexDump:
    rows: List[HexRow]

    @property
    def length(self) -> int:
        return sum(len(row.hex_octets) for row in self.rows)

    def to_bytes(self) -> bytes:
        return b"".join(row.to_bytes() for row in self.rows)


@dataclass(frozen=True)
class NoPayload:
    message: str = "No Payload"


@dataclass(frozen=True)
class DecodeFailure:
    message: str


NO_PAYLOAD = NoPayload()

DecodeResult = Union[HexDump, NoPayload, DecodeFailure]


def printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte <= 0x7E else "."


def dump_bytes(data: bytes) -> HexDump:
    rows = []
    for offset in range(0, len(data), BYTES_PER_ROW):
        chunk = data[offset : offset + BYTES_PER_ROW]
        rows.append(
            HexRow(
                offset=offset,
                hex_octets=tuple(f"{b:02x}" for b in chunk),
                ascii="".join(printable(b) for b in chunk),
            )
        )
    return HexDump(rows=rows)


def decode_bytes(payload: str) -> bytes:
    """Strict base64 decode; raises :class:`DecodeError` on malformed input."""
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(str(e)) from e


def decode(payload: Optional[str]) -> DecodeResult:
    """Decode a base64 packet payload into 16-byte hex/ASCII rows.

    Never raises: an empty payload gives ``NO_PAYLOAD`` and malformed base64
    gives a :class:`DecodeFailure`.
    """
    if not payload:
        return NO_PAYLOAD
    try:
        data = decode_bytes(payload)
    except DecodeError as e:
        return DecodeFailure(message=f"Error decoding payload: {e}")
    if not data:
        return NO_PAYLOAD
    return dump_bytes(data)


def format_dump(result: DecodeResult) -> str:
    """Render ``result`` as offset / hex / ASCII columns."""
    if isinstance(result, (NoPayload, DecodeFailure)):
        return result.message
    lines = []
    for row in result.rows:
        hex_column = " ".join(row.hex_octets).ljust(BYTES_PER_ROW * 3 - 1)
        lines.append(f"{row.offset:04x}  {hex_column}  {row.ascii}")
    return "\n".join(lines)
