"""Kermit packet codec (the subset spoken by the HP 48 series).

Packet layout::

    +------+-----+-----+------+------------------+-------+-----+
    | MARK | LEN | SEQ | TYPE |       DATA       | CHECK | EOL |
    | SOH  |     |     |      | control-prefixed |       | CR  |
    +------+-----+-----+------+------------------+-------+-----+

- LEN: ``tochar`` of the number of bytes after it (SEQ + TYPE + DATA + CHECK)
- SEQ: ``tochar`` of the packet number modulo 64
- CHECK: block check type 1 over LEN..DATA
- Only short packets and block check type 1 are supported.

Reference: Kermit Protocol Manual, https://www.kermitproject.org/kproto.pdf
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import ChecksumMismatch, ProtocolViolation

SOH = 0x01
CR = 0x0D
QCTL = ord("#")

MAX_PACKET_LENGTH = 94
DATA_BUDGET = 84  # escaped data bytes per D packet
SEQ_MODULUS = 64
TIMEOUT_SECONDS = 2

# Packet types
SEND_INIT = "S"
FILE_HEADER = "F"
DATA = "D"
END_OF_FILE = "Z"
BREAK = "B"
ACK = "Y"
NAK = "N"
ERROR = "E"
INIT = "I"
RECEIVE_INIT = "R"
GENERIC = "G"


def tochar(value: int) -> int:
    """Make a small integer printable."""
    return value + 32


def unchar(value: int) -> int:
    """Inverse of :func:`tochar`."""
    return value - 32


def ctl(value: int) -> int:
    """Toggle a character between its control and printable forms."""
    return value ^ 64


def block_check(data: bytes) -> int:
    """Kermit block check type 1 over ``data`` (LEN through DATA)."""
    total = sum(data)
    return tochar((total + ((total & 192) >> 6)) & 63)


@dataclass
class KermitPacket:
    """A decoded Kermit packet. ``data`` holds the on-wire (prefixed) bytes."""

    seq: int
    ptype: str
    data: bytes = field(default=b"")

    @property
    def length_field(self) -> int:
        return tochar(len(self.data) + 3)

    def check(self) -> int:
        header = bytes([self.length_field, tochar(self.seq % SEQ_MODULUS), ord(self.ptype)])
        return block_check(header + self.data)

    def to_bytes(self) -> bytes:
        """Serialize the packet, including MARK and the trailing CR."""
        if len(self.data) + 3 > MAX_PACKET_LENGTH:
            raise ValueError(
                f"Packet data too long: {len(self.data)} bytes "
                f"(max {MAX_PACKET_LENGTH - 3})"
            )
        return (
            bytes([SOH, self.length_field, tochar(self.seq % SEQ_MODULUS), ord(self.ptype)])
            + self.data
            + bytes([self.check(), CR])
        )

    def __repr__(self) -> str:
        return (
            f"KermitPacket(seq={self.seq}, type={self.ptype!r}, "
            f"data={self.data!r})"
        )


def parse_packet(raw: bytes) -> KermitPacket:
    """Parse one packet starting at MARK. The trailing EOL is optional.

    Raises:
        ProtocolViolation: MARK missing or the packet is shorter than LEN says.
        ChecksumMismatch: The carried CHECK differs from the computed one.
    """
    if len(raw) < 5 or raw[0] != SOH:
        raise ProtocolViolation(f"Packet does not start with SOH: {raw[:8]!r}")

    length = unchar(raw[1])
    if length < 3 or len(raw) < 2 + length:
        raise ProtocolViolation(
            f"Packet LEN {length} does not match {len(raw)} received bytes"
        )

    packet = KermitPacket(
        seq=unchar(raw[2]),
        ptype=chr(raw[3]),
        data=bytes(raw[4 : 1 + length]),
    )
    carried = raw[1 + length]
    expected = packet.check()
    if carried != expected:
        raise ChecksumMismatch(
            f"Kermit check mismatch on {packet.ptype!r} packet {packet.seq}: "
            f"got 0x{carried:02X}, expected 0x{expected:02X}"
        )
    return packet


# ─── CONTROL-PREFIX ENCODING ─────────────────────────────────────────

def needs_prefix(byte: int) -> bool:
    low = byte & 0x7F
    return low <= 31 or low == 127


def encode_byte(byte: int) -> bytes:
    """Encode a single data byte with control prefixing.

    Control characters (and DEL) become ``#`` followed by ``ctl(byte)``;
    the prefix character itself is sent as ``##``.
    """
    if needs_prefix(byte):
        return bytes([QCTL, ctl(byte)])
    if byte & 0x7F == QCTL:
        return bytes([QCTL, byte])
    return bytes([byte])


def encode_data(data: bytes) -> bytes:
    return b"".join(encode_byte(byte) for byte in data)


def decode_data(data: bytes) -> bytes:
    """Reverse control prefixing.

    After a prefix, characters in the control-image range (``?``, ``@``..``_``
    with or without the high bit) are toggled back; any other character is
    taken literally.

    Raises:
        ProtocolViolation: The data ends with a lone prefix character.
    """
    out = bytearray()
    it = iter(data)
    for byte in it:
        if byte != QCTL:
            out.append(byte)
            continue
        quoted = next(it, None)
        if quoted is None:
            raise ProtocolViolation("Data field ends with a dangling prefix")
        low = quoted & 0x7F
        if 0x40 <= low <= 0x5F or low == 0x3F:
            out.append(ctl(quoted))
        else:
            out.append(quoted)
    return bytes(out)


def segment_data(data: bytes, budget: int = DATA_BUDGET) -> list[bytes]:
    """Split file contents into encoded D-packet data fields.

    Prefixing can double a byte, so a packet is closed as soon as its encoded
    data reaches ``budget`` bytes rather than after a fixed number of input
    bytes.
    """
    chunks: list[bytes] = []
    current = bytearray()
    for byte in data:
        current += encode_byte(byte)
        if len(current) >= budget:
            chunks.append(bytes(current))
            current = bytearray()
    if current:
        chunks.append(bytes(current))
    return chunks


# ─── PACKET BUILDERS ─────────────────────────────────────────────────

def send_init_parameters() -> bytes:
    """Our Send-Init parameters, used in S, I, and the ACK to an S."""
    return bytes([
        tochar(MAX_PACKET_LENGTH),  # MAXL
        tochar(TIMEOUT_SECONDS),    # TIME
        tochar(0),                  # NPAD
        ctl(0),                     # PADC
        tochar(CR),                 # EOL
        QCTL,                       # QCTL
        ord("Y"),                   # QBIN: agree, but not needed
        ord("1"),                   # CHKT: block check type 1
    ])


def build_send_init(seq: int) -> KermitPacket:
    return KermitPacket(seq, SEND_INIT, send_init_parameters())


def build_server_init(seq: int) -> KermitPacket:
    return KermitPacket(seq, INIT, send_init_parameters())


def build_file_header(seq: int, name: str) -> KermitPacket:
    return KermitPacket(seq, FILE_HEADER, encode_data(name.encode("latin-1")))


def build_receive_init(seq: int, name: str) -> KermitPacket:
    """R packet asking a Kermit server to send ``name``."""
    return KermitPacket(seq, RECEIVE_INIT, encode_data(name.encode("latin-1")))


def build_data(seq: int, chunk: bytes) -> KermitPacket:
    """D packet; ``chunk`` must already be prefix-encoded."""
    return KermitPacket(seq, DATA, chunk)


def build_generic(seq: int, ptype: str) -> KermitPacket:
    """Packet with no data field (Z, B)."""
    return KermitPacket(seq, ptype)


def build_ack(seq: int, data: bytes = b"") -> KermitPacket:
    return KermitPacket(seq, ACK, data)


def build_server_finish(seq: int = 0) -> KermitPacket:
    """Generic server command ``F`` (finish); on the wire ``\\x01$ GF4\\r``."""
    return KermitPacket(seq, GENERIC, b"F")
