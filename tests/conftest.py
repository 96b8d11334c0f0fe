"""Shared fixtures: a scripted stand-in for the serial connection."""

from __future__ import annotations

import pytest

from hp48_link_mcp.errors import TransportIOError


class FakeConnection:
    """Replays pre-scripted calculator bytes and records everything written.

    Each :meth:`feed` call is one burst from the calculator;
    :meth:`discard_input` drops what is left of the burst being read.
    """

    def __init__(self, incoming: bytes = b"") -> None:
        self.bursts: list[bytearray] = []
        self.writes: list[bytes] = []
        self.discarded = 0
        self.connected = True
        self.port = "/dev/fake"
        if incoming:
            self.feed(incoming)

    def feed(self, data: bytes) -> None:
        self.bursts.append(bytearray(data))

    def write(self, data: bytes) -> int:
        self.writes.append(bytes(data))
        return len(data)

    def read(self, count: int) -> bytes:
        chunk = bytearray()
        while self.bursts and len(chunk) < count:
            burst = self.bursts[0]
            if not burst:
                # Keep the spent burst in front until the next one is read
                if len(self.bursts) == 1:
                    break
                self.bursts.pop(0)
                continue
            take = count - len(chunk)
            chunk += burst[:take]
            del burst[:take]
        return bytes(chunk)

    def read_exact(self, count: int) -> bytes:
        data = self.read(count)
        if len(data) != count:
            raise TransportIOError(f"Timed out after {len(data)} of {count} bytes")
        return data

    def discard_input(self) -> int:
        if not self.bursts:
            return 0
        dropped = len(self.bursts.pop(0))
        self.discarded += dropped
        return dropped


@pytest.fixture
def fake_connection():
    return FakeConnection()
