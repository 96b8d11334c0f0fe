"""Transfer sessions driving the protocol codecs over a connection."""

from .kermit import KermitSession
from .xmodem import XModemSession
