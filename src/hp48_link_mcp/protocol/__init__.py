"""Protocol layer: Kermit and XModem packet codecs."""

from .kermit import KermitPacket, parse_packet
from .xmodem import ChecksumMode, build_packet
