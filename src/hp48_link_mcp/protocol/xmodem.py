"""XModem packet codec with plain checksums and the Conn4x CRC variant.

Packet layout::

    +--------+-----+------------+---------------------+----------------+
    | Marker | Seq | 255 - Seq  | Payload             | Checksum       |
    | SOH/STX|     |            | 128 (SOH) / 1024 (STX) | 1 B or 2 B BE |
    +--------+-----+------------+---------------------+----------------+

- Normal mode: 8-bit additive checksum, 128-byte packets only. Used when
  talking to the calculator's built-in XRECV/XSEND.
- Conn4x mode: 16-bit Conn4x CRC, big-endian. Used with the XModem server,
  which accepts 1024-byte packets.

Server command packet (sent before a server transfer)::

    +-----+----------------+----------+--------------+
    | Cmd | Name length BE | Name     | Sum(name)    |
    | 1 B | 2 bytes        | variable | 1 byte       |
    +-----+----------------+----------+--------------+
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..utils.crc import additive_checksum, conn4x_crc

SOH = 0x01
STX = 0x02
EOT = 0x04
ACK = 0x06
NAK = 0x15
CAN = 0x18
SUB = 0x1A  # pads the last 128-byte packet

PACKET_SIZE = 128
PACKET_SIZE_1K = 1024
FRAME_SIZE = 3 + PACKET_SIZE + 1  # one received 128-byte frame, 132 bytes

CMD_PUT = "P"
CMD_GET = "G"
SERVER_READY = ord("D")
SERVER_QUIT = ord("Q")


class ChecksumMode(Enum):
    """Per-transfer checksum selection."""

    NORMAL = "normal"
    CONN4X = "conn4x"


@dataclass
class ReceivedFrame:
    """A received 128-byte frame after verification."""

    seq: int
    payload: bytes
    valid: bool
    reason: str = ""


def packet_checksum(payload: bytes, mode: ChecksumMode) -> bytes:
    """Checksum bytes that follow ``payload`` on the wire."""
    if mode is ChecksumMode.CONN4X:
        return conn4x_crc(payload).to_bytes(2, "big")
    return bytes([additive_checksum(payload)])


def build_packet(seq: int, payload: bytes, mode: ChecksumMode) -> bytes:
    """Build a single packet.

    Args:
        seq: 1-indexed packet number; only the low byte is sent.
        payload: Exactly 1024 bytes, or up to 128 bytes (padded with SUB).
        mode: Checksum mode.

    Returns:
        The packet bytes, ready to write to the port.
    """
    if len(payload) == PACKET_SIZE_1K:
        marker = STX
    elif len(payload) <= PACKET_SIZE:
        marker = SOH
        payload = payload.ljust(PACKET_SIZE, bytes([SUB]))
    else:
        raise ValueError(
            f"Payload must be 1024 bytes or at most 128 bytes, got {len(payload)}"
        )
    seq &= 0xFF
    return bytes([marker, seq, 255 - seq]) + payload + packet_checksum(payload, mode)


def build_128_packets(
    data: bytes,
    mode: ChecksumMode,
    first_seq: int = 1,
) -> list[bytes]:
    """Split ``data`` into 128-byte packets numbered from ``first_seq``."""
    return [
        build_packet(first_seq + i, data[offset : offset + PACKET_SIZE], mode)
        for i, offset in enumerate(range(0, len(data), PACKET_SIZE))
    ]


def build_conn4x_packets(data: bytes) -> list[bytes]:
    """1024-byte packets while a full 1K remains, then 128-byte packets.

    The 128-byte packets continue the sequence of the 1K packets.
    """
    full_blocks = len(data) // PACKET_SIZE_1K
    packets = [
        build_packet(i + 1, data[i * PACKET_SIZE_1K : (i + 1) * PACKET_SIZE_1K], ChecksumMode.CONN4X)
        for i in range(full_blocks)
    ]
    remainder = data[full_blocks * PACKET_SIZE_1K :]
    packets.extend(
        build_128_packets(remainder, ChecksumMode.CONN4X, first_seq=full_blocks + 1)
    )
    return packets


def build_command_packet(command: str, name: str) -> bytes:
    """Build a server command (``P`` put or ``G`` get) for file ``name``."""
    encoded = name.encode("latin-1")
    if len(encoded) > 0xFFFF:
        raise ValueError(f"File name too long: {len(encoded)} bytes")
    return (
        command.encode("ascii")
        + len(encoded).to_bytes(2, "big")
        + encoded
        + bytes([additive_checksum(encoded)])
    )


def parse_frame(frame: bytes) -> ReceivedFrame:
    """Verify a 132-byte frame from the calculator or server.

    Invalid frames are reported rather than raised; the caller NAKs them and
    reads the packet again.
    """
    if len(frame) != FRAME_SIZE:
        return ReceivedFrame(0, b"", False, f"short frame ({len(frame)} bytes)")
    if frame[0] != SOH:
        return ReceivedFrame(0, b"", False, f"bad marker 0x{frame[0]:02X}")

    seq, complement = frame[1], frame[2]
    payload = bytes(frame[3 : 3 + PACKET_SIZE])
    if complement != 255 - seq:
        return ReceivedFrame(seq, payload, False, "sequence complement mismatch")

    carried = frame[3 + PACKET_SIZE]
    expected = additive_checksum(payload)
    if carried != expected:
        return ReceivedFrame(
            seq, payload, False,
            f"checksum 0x{carried:02X}, expected 0x{expected:02X}",
        )
    return ReceivedFrame(seq, payload, True)


def strip_trailing_zeros(data: bytes) -> bytes:
    """Drop the zero bytes the server pads its last packet with."""
    return data.rstrip(b"\x00")
