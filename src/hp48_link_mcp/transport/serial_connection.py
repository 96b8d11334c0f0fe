"""Serial connection to the calculator.

The HP 48 talks 8N1 without flow control; 9600 baud is the calculator's
default. Reads block until the requested byte count arrives or the timeout
expires.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import serial
import serial.tools.list_ports

from ..errors import TransportIOError

logger = logging.getLogger(__name__)

DEFAULT_BAUD = 9600
DEFAULT_TIMEOUT = 4.0  # seconds


@dataclass
class PortInfo:
    """A serial port found on the host."""

    device: str
    description: str = ""
    hwid: str = ""


def list_ports() -> list[PortInfo]:
    """List serial ports available on the host."""
    return [
        PortInfo(device=p.device, description=p.description or "", hwid=p.hwid or "")
        for p in serial.tools.list_ports.comports()
    ]


def default_port() -> str:
    """First discovered port, used when no port is given.

    Raises:
        TransportIOError: If no serial port is present.
    """
    ports = list_ports()
    if not ports:
        raise TransportIOError("No port specified and no serial port found")
    return ports[0].device


class SerialConnection:
    """Manages the serial link to the calculator.

    Usage::

        conn = SerialConnection("/dev/ttyUSB0")
        conn.open()
        conn.write(packet)
        reply = conn.read_exact(1)
        conn.close()
    """

    def __init__(
        self,
        port: str | None = None,
        baud: int = DEFAULT_BAUD,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if baud < 1:
            raise ValueError(f"Baud rate must be positive, got {baud}")
        self._port = port
        self._baud = baud
        self._timeout = timeout
        self._serial: serial.Serial | None = None

    @property
    def port(self) -> str | None:
        return self._port

    @property
    def baud(self) -> int:
        return self._baud

    @property
    def connected(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> str:
        """Open the port, discovering one if none was given.

        Returns:
            The device path that was opened.

        Raises:
            TransportIOError: If the port cannot be opened.
        """
        if self._port is None:
            self._port = default_port()
        try:
            self._serial = serial.Serial(
                port=self._port,
                baudrate=self._baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._timeout,
                write_timeout=self._timeout,
            )
        except serial.SerialException as e:
            raise TransportIOError(f"Failed to open {self._port}: {e}") from e

        logger.info("Opened %s at %d baud", self._port, self._baud)
        return self._port

    def close(self) -> None:
        """Close the port."""
        if self._serial is None:
            return
        try:
            self._serial.close()
        except serial.SerialException as e:
            logger.warning("Error closing %s: %s", self._port, e)
        finally:
            self._serial = None
            logger.info("Closed %s", self._port)

    def write(self, data: bytes) -> int:
        """Write ``data`` and return the number of bytes written.

        Raises:
            TransportIOError: If not connected or the write fails.
        """
        if not self.connected:
            raise TransportIOError("Not connected to a serial port")
        try:
            written = self._serial.write(data)
            self._serial.flush()
        except serial.SerialException as e:
            raise TransportIOError(f"Write to {self._port} failed: {e}") from e
        logger.debug("TX %d bytes: %s", len(data), data[:16].hex(" "))
        return written

    def read(self, count: int) -> bytes:
        """Read up to ``count`` bytes; fewer are returned on timeout."""
        if not self.connected:
            raise TransportIOError("Not connected to a serial port")
        try:
            data = bytes(self._serial.read(count))
        except serial.SerialException as e:
            raise TransportIOError(f"Read from {self._port} failed: {e}") from e
        logger.debug("RX %d bytes: %s", len(data), data[:16].hex(" "))
        return data

    def read_exact(self, count: int) -> bytes:
        """Read exactly ``count`` bytes.

        Raises:
            TransportIOError: If the timeout expires first.
        """
        data = self.read(count)
        if len(data) != count:
            raise TransportIOError(
                f"Timed out after {len(data)} of {count} bytes from {self._port}"
            )
        return data

    def discard_input(self) -> int:
        """Drop bytes received but not yet read. Returns how many were dropped."""
        if not self.connected:
            raise TransportIOError("Not connected to a serial port")
        try:
            pending = self._serial.in_waiting
            self._serial.reset_input_buffer()
        except serial.SerialException as e:
            raise TransportIOError(f"Flush of {self._port} failed: {e}") from e
        if pending:
            logger.debug("Discarded %d pending bytes", pending)
        return pending

    def __enter__(self) -> SerialConnection:
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()
