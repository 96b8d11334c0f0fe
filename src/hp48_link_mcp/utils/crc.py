"""Checksums used by the calculator firmware and the Conn4x XModem server.

Both CRCs are the same nibble-wise mix with the constant ``0x1081``; the
object CRC consumes one nibble per step, the Conn4x CRC consumes a byte as its
low nibble followed by its high nibble, through a precomputed table.
"""

from __future__ import annotations

from collections.abc import Iterable

CRC_MULTIPLIER = 0x1081


def crc_step(crc: int, nibble: int) -> int:
    """Advance the calculator's nibble CRC by one nibble."""
    return (crc >> 4) ^ (((crc ^ nibble) & 0xF) * CRC_MULTIPLIER)


def object_crc(nibbles: Iterable[int]) -> int:
    """CRC over an object's nibbles, as reported by the calculator's BYTES."""
    crc = 0
    for nibble in nibbles:
        crc = crc_step(crc, nibble)
    return crc


def _build_conn4x_table() -> tuple[int, ...]:
    # Index is (crc_nibble << 4) | input_nibble
    return tuple(
        (crc ^ inp) * CRC_MULTIPLIER
        for crc in range(16)
        for inp in range(16)
    )


CONN4X_TABLE = _build_conn4x_table()


def conn4x_crc(data: bytes) -> int:
    """Conn4x 16-bit CRC over ``data``.

    This is not CRC-16-CCITT: each byte is fed as two nibbles, low first.

    Args:
        data: Packet payload (128 or 1024 bytes in practice).

    Returns:
        The CRC, sent big-endian after the payload.
    """
    crc = 0
    for byte in data:
        crc = (crc >> 4) ^ CONN4X_TABLE[((crc & 0xF) << 4) | (byte & 0xF)]
        crc = (crc >> 4) ^ CONN4X_TABLE[((crc & 0xF) << 4) | (byte >> 4)]
    return crc & 0xFFFF


def additive_checksum(data: bytes) -> int:
    """Unsigned 8-bit sum, used by plain XModem and server command packets."""
    return sum(data) & 0xFF
