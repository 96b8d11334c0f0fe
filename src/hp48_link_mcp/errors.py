"""Exception hierarchy shared by the object decoder, codecs, and sessions."""

from __future__ import annotations


class HP48LinkError(Exception):
    """Base class for every error raised by this package."""


# ─── OBJECT FILES ────────────────────────────────────────────────────

class ObjectError(HP48LinkError):
    """A binary object file could not be decoded."""


class TruncatedObject(ObjectError):
    """The object is shorter than the structure being decoded requires."""


class UnrecognizedPrologue(ObjectError):
    """The object starts with a prolog that is not in the known table."""

    def __init__(self, prolog: int) -> None:
        super().__init__(f"Unrecognized object prolog 0x{prolog:05X}")
        self.prolog = prolog


class UnsupportedFormat(ObjectError):
    """The file signature is not ``HPHP48``."""


# ─── PROTOCOLS ───────────────────────────────────────────────────────

class ProtocolError(HP48LinkError):
    """A transfer protocol exchange failed."""


class ChecksumMismatch(ProtocolError):
    """An inbound packet's computed check differs from its carried check."""


class ProtocolViolation(ProtocolError):
    """Unexpected packet type, missing start marker, or missing ACK."""


class RetryExhausted(ProtocolError):
    """A packet was rejected more times than the retry limit allows."""


class TransferCancelled(ProtocolError):
    """The remote end cancelled the transfer."""


# ─── TRANSPORT ───────────────────────────────────────────────────────

class TransportIOError(HP48LinkError, ConnectionError):
    """The serial port failed to read or write, or a read timed out."""
