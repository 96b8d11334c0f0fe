"""HP 48 binary object files: size decoding and the calculator's object CRC.

File layout::

    +-----------+--------+----------------+------------------------------+
    | Signature | (skip) | ROM revision   | Object (Saturn nibbles)      |
    | "HPHP48"  | 1 byte | 1 ASCII char   | low nibble of each byte 1st  |
    +-----------+--------+----------------+------------------------------+

An object has no top-level length field. Its size is found by reading the
5-nibble prolog and applying the sizing rule for that object family, which
may recurse into embedded objects. The CRC must run over exactly that many
nibbles: transfers pad odd-length objects to a whole byte, and the padding
nibble would otherwise change the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path

from ..errors import TruncatedObject, UnrecognizedPrologue, UnsupportedFormat
from ..utils.crc import object_crc

logger = logging.getLogger(__name__)

HP48_SIGNATURE = b"HPHP48"
ROM_REVISION_OFFSET = 7
OBJECT_OFFSET = 8

PROLOG_NIBBLES = 5
SIZE_FIELD_NIBBLES = 5
ASCIC_COUNT_NIBBLES = 2
DIR_HEADER_NIBBLES = 18   # prolog(5) + attached libs(3) + offset(5) + terminator(5)
DIR_OFFSET_NIBBLES = 5
DIR_LINK_START = 8        # offset from here to the last entry's name
ADDRESS_MASK = 0xFFFFF    # Saturn addresses are 20 bits
SEMI_MARKER = 0xB2130     # SEMI (0x0312B) as it reads in nibble order


class Prolog(IntEnum):
    """Prolog addresses of the object types the decoder understands."""

    DOBINT = 0x02911
    DOREAL = 0x02933
    DOEREL = 0x02955
    DOCMP = 0x02977
    DOECMP = 0x0299D
    DOCHAR = 0x029BF
    DOARRY = 0x029E8
    DOLNKARRY = 0x02A0A
    DOCSTR = 0x02A2C
    DOHSTR = 0x02A4E
    DOLIST = 0x02A74
    DORRP = 0x02A96
    DOSYMB = 0x02AB8
    DOEXT = 0x02ADA
    DOTAG = 0x02AFC
    DOGROB = 0x02B1E
    DOLIB = 0x02B40
    DOBAK = 0x02B62
    DOEXT0 = 0x02B88
    DOCOL = 0x02D9D
    DOCODE = 0x02DCC
    DOIDNT = 0x02E48
    DOLAM = 0x02E6D
    DOROMP = 0x02E92


class Strategy(Enum):
    """How the length of an object family is determined."""

    FIXED = "fixed"
    SIZE_NEXT = "size_next"
    ASCIC_NEXT = "ascic_next"
    FIND_END_MARKER = "find_end_marker"
    DIR_NEXT = "dir_next"


# Total lengths in nibbles, prolog included
FIXED_LENGTHS: dict[Prolog, int] = {
    Prolog.DOBINT: 10,
    Prolog.DOREAL: 21,
    Prolog.DOEREL: 26,
    Prolog.DOCMP: 37,
    Prolog.DOECMP: 47,
    Prolog.DOCHAR: 7,
    Prolog.DOROMP: 11,
}

PROLOG_STRATEGIES: dict[Prolog, Strategy] = {
    **{prolog: Strategy.FIXED for prolog in FIXED_LENGTHS},
    Prolog.DOARRY: Strategy.SIZE_NEXT,
    Prolog.DOLNKARRY: Strategy.SIZE_NEXT,
    Prolog.DOCSTR: Strategy.SIZE_NEXT,
    Prolog.DOHSTR: Strategy.SIZE_NEXT,
    Prolog.DOGROB: Strategy.SIZE_NEXT,
    Prolog.DOLIB: Strategy.SIZE_NEXT,
    Prolog.DOBAK: Strategy.SIZE_NEXT,
    Prolog.DOEXT0: Strategy.SIZE_NEXT,
    Prolog.DOCODE: Strategy.SIZE_NEXT,
    Prolog.DOIDNT: Strategy.ASCIC_NEXT,
    Prolog.DOLAM: Strategy.ASCIC_NEXT,
    Prolog.DOTAG: Strategy.ASCIC_NEXT,
    Prolog.DOEXT: Strategy.FIND_END_MARKER,
    Prolog.DOCOL: Strategy.FIND_END_MARKER,
    Prolog.DOSYMB: Strategy.FIND_END_MARKER,
    Prolog.DOLIST: Strategy.FIND_END_MARKER,
    Prolog.DORRP: Strategy.DIR_NEXT,
}

# Names (identifiers, local names) end with their characters; a tag is
# followed by the object it labels.
ASCIC_WITH_OBJECT = frozenset({Prolog.DOTAG})


@dataclass(frozen=True)
class ObjectInfo:
    """What the calculator's BYTES command reports for an object."""

    rom_revision: str
    crc: int
    length: int  # nibbles

    @property
    def crc_literal(self) -> str:
        """The CRC as a calculator binary integer literal, e.g. ``#1A2Bh``."""
        return f"#{self.crc:X}h"

    @property
    def size_bytes(self) -> str:
        whole, half = divmod(self.length, 2)
        return f"{whole}.5" if half else str(whole)

    def report(self) -> str:
        return (
            f"ROM Revision: {self.rom_revision}, "
            f"Object CRC: {self.crc_literal}, "
            f"Object length (bytes): {self.size_bytes}"
        )

    def to_dict(self) -> dict:
        return {
            "rom_revision": self.rom_revision,
            "crc": self.crc_literal,
            "length_nibbles": self.length,
            "length_bytes": self.size_bytes,
        }


def to_nibbles(data: bytes) -> bytes:
    """Split bytes into nibbles, low nibble of each byte first."""
    nibbles = bytearray()
    for byte in data:
        nibbles.append(byte & 0xF)
        nibbles.append(byte >> 4)
    return bytes(nibbles)


def from_nibbles(nibbles: bytes) -> bytes:
    """Pack nibbles back into bytes; an odd trailing nibble is zero-padded."""
    if len(nibbles) % 2:
        nibbles = bytes(nibbles) + b"\x00"
    return bytes(
        nibbles[i] | (nibbles[i + 1] << 4) for i in range(0, len(nibbles), 2)
    )


def _read_field(nibbles, start: int, width: int) -> int:
    """Read a little-endian (Saturn order) field of ``width`` nibbles."""
    if start + width > len(nibbles):
        raise TruncatedObject(
            f"Need {start + width} nibbles, object has {len(nibbles)}"
        )
    value = 0
    for i in range(start + width - 1, start - 1, -1):
        value = (value << 4) | nibbles[i]
    return value


def read_prolog(nibbles) -> Prolog:
    """Read the 5-nibble prolog at the start of ``nibbles``.

    Raises:
        TruncatedObject: Fewer than 5 nibbles available.
        UnrecognizedPrologue: The prolog is not in the known table.
    """
    value = _read_field(nibbles, 0, PROLOG_NIBBLES)
    try:
        return Prolog(value)
    except ValueError:
        raise UnrecognizedPrologue(value) from None


def _fixed_size(nibbles, prolog: Prolog) -> int:
    return _check_bounds(nibbles, FIXED_LENGTHS[prolog])


def _size_next(nibbles, prolog: Prolog) -> int:
    # The size field counts itself but not the prolog
    size = _read_field(nibbles, PROLOG_NIBBLES, SIZE_FIELD_NIBBLES)
    return _check_bounds(nibbles, size + PROLOG_NIBBLES)


def _ascic_next(nibbles, prolog: Prolog) -> int:
    count = _read_field(nibbles, PROLOG_NIBBLES, ASCIC_COUNT_NIBBLES)
    length = _check_bounds(
        nibbles, PROLOG_NIBBLES + ASCIC_COUNT_NIBBLES + 2 * count
    )
    if prolog in ASCIC_WITH_OBJECT:
        length += decode_object_size(nibbles[length:])
    return length


def _find_end_marker(nibbles, prolog: Prolog) -> int:
    # Only a SEMI closing the slice counts, allowing one nibble of byte
    # padding after it. Earlier matches belong to nested composites or to
    # data that happens to spell the marker.
    address = 0
    last = len(nibbles) - 1
    for pos in range(PROLOG_NIBBLES, len(nibbles)):
        address = ((address << 4) | nibbles[pos]) & ADDRESS_MASK
        if address == SEMI_MARKER and pos >= last - 1:
            return pos + 1
    raise TruncatedObject(f"No end marker found for {prolog.name} object")


def _ascix_entry_size(nibbles) -> int:
    """Size of a directory entry: ASCIX name followed by the stored object."""
    count = _read_field(nibbles, 0, ASCIC_COUNT_NIBBLES)
    name_length = _check_bounds(nibbles, 2 * ASCIC_COUNT_NIBBLES + 2 * count)
    return name_length + decode_object_size(nibbles[name_length:])


def _entry_names(nibbles, last_name: int) -> list[int] | None:
    """Positions of every entry name, found by walking the back links.

    Each name is preceded by a 5-nibble offset back to the previous name;
    the first entry's offset is zero. Returns ``None`` when the chain does
    not end at the first entry slot.
    """
    if last_name < DIR_HEADER_NIBBLES:
        return None
    names = [last_name]
    while True:
        link_pos = names[0] - DIR_OFFSET_NIBBLES
        back = _read_field(nibbles, link_pos, DIR_OFFSET_NIBBLES)
        if not back:
            break
        if link_pos - back < DIR_HEADER_NIBBLES:
            return None
        names.insert(0, link_pos - back)
    if names[0] != DIR_HEADER_NIBBLES:
        return None
    return names


def _dir_scan(nibbles) -> int:
    index = DIR_HEADER_NIBBLES
    while index < len(nibbles) - DIR_HEADER_NIBBLES:
        index += _ascix_entry_size(nibbles[index:])
        index += DIR_OFFSET_NIBBLES
    # The last entry has no trailing offset
    return index - DIR_OFFSET_NIBBLES


def _dir_next(nibbles, prolog: Prolog) -> int:
    # An empty directory stops after its offset field
    _check_bounds(nibbles, DIR_HEADER_NIBBLES - DIR_OFFSET_NIBBLES)
    link = _read_field(nibbles, DIR_LINK_START, DIR_OFFSET_NIBBLES)
    names = _entry_names(nibbles, DIR_LINK_START + link) if link else None
    if names is None:
        if link:
            logger.debug("Directory back links are inconsistent, scanning forward")
        return _dir_scan(nibbles)

    # An entry's object ends where the back link before the next name starts
    bounds = [name - DIR_OFFSET_NIBBLES for name in names[1:]] + [len(nibbles)]
    end = DIR_HEADER_NIBBLES
    for name, bound in zip(names, bounds):
        end = name + _ascix_entry_size(nibbles[name:bound])
    return end


def _check_bounds(nibbles, length: int) -> int:
    if length > len(nibbles):
        raise TruncatedObject(
            f"Object needs {length} nibbles, only {len(nibbles)} available"
        )
    return length


_STRATEGY_HANDLERS = {
    Strategy.FIXED: _fixed_size,
    Strategy.SIZE_NEXT: _size_next,
    Strategy.ASCIC_NEXT: _ascic_next,
    Strategy.FIND_END_MARKER: _find_end_marker,
    Strategy.DIR_NEXT: _dir_next,
}


def decode_object_size(nibbles) -> int:
    """Return how many nibbles the object at the start of ``nibbles`` occupies.

    Embedded objects (tagged values, directory entries) are sized by calling
    this function again on the remaining nibbles.

    Args:
        nibbles: Sequence of 4-bit values, e.g. from :func:`to_nibbles`.

    Raises:
        TruncatedObject: The object runs past the end of ``nibbles``.
        UnrecognizedPrologue: An object (or embedded object) has an
            unknown prolog.
    """
    if isinstance(nibbles, memoryview):
        view = nibbles
    else:
        view = memoryview(bytes(nibbles))
    prolog = read_prolog(view)
    strategy = PROLOG_STRATEGIES[prolog]
    length = _STRATEGY_HANDLERS[strategy](view, prolog)
    logger.debug("%s object (%s): %d nibbles", prolog.name, strategy.value, length)
    return length


def read_object(data: bytes) -> ObjectInfo:
    """Decode an ``HPHP48`` file image and compute its object CRC.

    Raises:
        UnsupportedFormat: The signature is not ``HPHP48`` (HP 49 files
            included, whose checksums would come out wrong).
        TruncatedObject: The file or its object is cut short.
        UnrecognizedPrologue: The object type is unknown.
    """
    if data[:len(HP48_SIGNATURE)] != HP48_SIGNATURE:
        raise UnsupportedFormat(
            f"Invalid signature: {data[:len(HP48_SIGNATURE)]!r} "
            f"(expected {HP48_SIGNATURE!r})"
        )
    if len(data) <= OBJECT_OFFSET:
        raise TruncatedObject(f"File too small: {len(data)} bytes")

    rom_revision = chr(data[ROM_REVISION_OFFSET])
    nibbles = to_nibbles(data[OBJECT_OFFSET:])
    length = decode_object_size(nibbles)
    crc = object_crc(nibbles[:length])

    info = ObjectInfo(rom_revision=rom_revision, crc=crc, length=length)
    logger.info("Object info: %s", info.report())
    return info


def load_object(path: str | Path) -> ObjectInfo:
    """Read an object file from disk and return its :class:`ObjectInfo`."""
    return read_object(Path(path).read_bytes())
