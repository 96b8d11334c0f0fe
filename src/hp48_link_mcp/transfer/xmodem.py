"""XModem send/receive sessions, direct or through the XModem server.

Direct mode talks to the calculator's built-in XRECV/XSEND with 128-byte
packets and plain checksums. Server mode first sends a command packet
(``P`` or ``G``); puts then use Conn4x packets, gets use 128-byte packets
with plain checksums.
"""

from __future__ import annotations

import logging
import time

from ..errors import ProtocolViolation, RetryExhausted, TransferCancelled
from ..protocol.xmodem import (
    ACK,
    CAN,
    CMD_GET,
    CMD_PUT,
    EOT,
    FRAME_SIZE,
    NAK,
    SERVER_QUIT,
    SERVER_READY,
    SOH,
    ChecksumMode,
    ReceivedFrame,
    build_128_packets,
    build_command_packet,
    build_conn4x_packets,
    parse_frame,
    strip_trailing_zeros,
)
from ..transport.serial_connection import SerialConnection

logger = logging.getLogger(__name__)

RETRY_LIMIT = 3
START_DELAY = 0.5     # before the NAK that starts a receive
SETTLE_DELAY = 0.3    # before each received frame, and before Q


class XModemSession:
    """State of one XModem transfer over an open connection."""

    def __init__(
        self,
        connection: SerialConnection,
        retry_limit: int = RETRY_LIMIT,
        start_delay: float = START_DELAY,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self._conn = connection
        self.retry_limit = retry_limit
        self.start_delay = start_delay
        self.settle_delay = settle_delay
        self.packets_sent = 0
        self.packets_received = 0

    def _write_byte(self, byte: int) -> None:
        self._conn.write(bytes([byte]))

    def _wait_for(self, *expected: int) -> int:
        """Read single bytes until one of ``expected`` arrives.

        Raises:
            TransferCancelled: CAN received (unless expected).
            TransportIOError: Timed out.
        """
        while True:
            byte = self._conn.read_exact(1)[0]
            if byte in expected:
                return byte
            if byte == CAN:
                raise TransferCancelled("Transfer cancelled by calculator")
            logger.debug("Ignoring 0x%02X while waiting for %s", byte,
                         ", ".join(f"0x{b:02X}" for b in expected))

    def _send_command(self, command: str, name: str) -> None:
        self._conn.write(build_command_packet(command, name))
        if self._wait_for(ACK, NAK) != ACK:
            raise ProtocolViolation(
                f"Server rejected {command!r} command for {name!r}"
            )
        logger.debug("Server acknowledged %r command for %r", command, name)

    def send_packets(self, packets: list[bytes]) -> None:
        """Send packets one at a time, then EOT.

        Each packet gets at most ``retry_limit`` attempts.

        Raises:
            RetryExhausted: A packet (or EOT) was NAKed on every attempt.
            TransferCancelled: The receiver sent CAN.
        """
        for index, packet in enumerate(packets, 1):
            self._send_with_retries(packet, f"packet {index}/{len(packets)}")
            self.packets_sent += 1
        self._send_with_retries(bytes([EOT]), "EOT")

    def _send_with_retries(self, data: bytes, what: str) -> None:
        for attempt in range(1, self.retry_limit + 1):
            self._conn.write(data)
            if self._wait_for(ACK, NAK) == ACK:
                logger.debug("ACK for %s", what)
                return
            logger.warning("NAK for %s (attempt %d/%d)", what, attempt, self.retry_limit)
        raise RetryExhausted(
            f"Failed on {what} after {self.retry_limit} tries, giving up"
        )

    def send_direct(self, data: bytes) -> int:
        """Send to the calculator's XRECV. Returns the packet count."""
        # The receiver starts the transfer with a NAK
        self._wait_for(NAK)
        packets = build_128_packets(data, ChecksumMode.NORMAL)
        self.send_packets(packets)
        logger.info("XModem sent %d bytes in %d packets", len(data), len(packets))
        return len(packets)

    def send_to_server(self, name: str, data: bytes) -> int:
        """Put ``data`` on the XModem server as ``name``. Returns the packet count."""
        packets = build_conn4x_packets(data)
        self._send_command(CMD_PUT, name)
        self._wait_for(SERVER_READY)
        self.send_packets(packets)
        logger.info("XModem put %r: %d bytes in %d packets", name, len(data), len(packets))
        return len(packets)

    def _read_frame(self) -> ReceivedFrame | int:
        """Read one frame, or return EOT/CAN when the sender ends instead."""
        time.sleep(self.settle_delay)
        marker = self._conn.read_exact(1)[0]
        if marker in (EOT, CAN):
            return marker
        if marker != SOH:
            # Drop the rest of the garbled frame so the resend starts clean
            time.sleep(self.settle_delay)
            self._conn.discard_input()
            return ReceivedFrame(0, b"", False, f"unexpected byte 0x{marker:02X}")
        return parse_frame(bytes([marker]) + self._conn.read_exact(FRAME_SIZE - 1))

    def receive(self, name: str | None = None) -> bytes:
        """Receive one file.

        Args:
            name: Variable to request from the XModem server. ``None``
                receives directly from XSEND.

        Returns:
            The file contents with the trailing zero padding removed.

        Raises:
            TransferCancelled: The sender cancelled; nothing was kept.
            RetryExhausted: A packet failed verification too many times.
            ProtocolViolation: The server rejected the request or a packet
                arrived out of sequence.
        """
        if name is not None:
            self._send_command(CMD_GET, name)

        time.sleep(self.start_delay)
        self._write_byte(NAK)

        content = bytearray()
        expected = 1
        failures = 0
        while True:
            frame = self._read_frame()
            if frame == EOT:
                self._write_byte(ACK)
                break
            if frame == CAN:
                raise TransferCancelled("Received cancel from remote side")

            if not frame.valid:
                failures += 1
                logger.warning("Packet %d rejected: %s", expected, frame.reason)
                if failures >= self.retry_limit:
                    raise RetryExhausted(
                        f"Packet {expected} failed {failures} times, giving up"
                    )
                self._write_byte(NAK)
                continue

            if expected > 1 and frame.seq == (expected - 1) & 0xFF:
                # Our ACK was lost and the sender repeated the packet
                self._write_byte(ACK)
                continue
            if frame.seq != expected & 0xFF:
                raise ProtocolViolation(
                    f"Packet {frame.seq} out of sequence, expected {expected & 0xFF}"
                )

            failures = 0
            self._write_byte(ACK)
            content += frame.payload
            logger.debug("Read packet %d", expected)
            expected += 1
            self.packets_received += 1

        data = strip_trailing_zeros(bytes(content))
        logger.info("XModem received %d bytes in %d packets", len(data), self.packets_received)
        return data

    def finish_server(self) -> None:
        """Ask the XModem server to exit."""
        time.sleep(self.settle_delay)
        self._write_byte(SERVER_QUIT)
        logger.info("XModem server finished")
