"""Kermit send/receive sessions.

Sending a file to the calculator::

    S  -> Y      (Send-Init, parameters exchanged)
    F  -> Y      (File-Header with the variable name)
    D* -> Y      (one ACK per data packet)
    Z  -> Y      (end of file)
    B  -> Y      (end of transmission)

Receiving mirrors this, optionally preceded by an R packet when the
calculator runs its Kermit server. There are no retries: the first missing
ACK, bad check, or unexpected packet type ends the session.
"""

from __future__ import annotations

import logging
import time

from ..errors import ProtocolViolation
from ..protocol.kermit import (
    ACK,
    BREAK,
    DATA,
    END_OF_FILE,
    ERROR,
    FILE_HEADER,
    SEND_INIT,
    SEQ_MODULUS,
    SOH,
    KermitPacket,
    build_ack,
    build_data,
    build_file_header,
    build_generic,
    build_receive_init,
    build_send_init,
    build_server_finish,
    build_server_init,
    decode_data,
    parse_packet,
    segment_data,
    send_init_parameters,
    unchar,
)
from ..transport.serial_connection import SerialConnection

logger = logging.getLogger(__name__)

# The calculator needs time before its reply is readable
READ_SETTLE_DELAY = 0.3


class KermitSession:
    """State of one Kermit transfer over an open connection."""

    def __init__(
        self,
        connection: SerialConnection,
        settle_delay: float = READ_SETTLE_DELAY,
    ) -> None:
        self._conn = connection
        self.settle_delay = settle_delay
        self.seq = 0

    def _next_seq(self) -> int:
        seq = self.seq
        self.seq = (self.seq + 1) % SEQ_MODULUS
        return seq

    def _write(self, packet: KermitPacket) -> None:
        logger.debug("Kermit TX %r", packet)
        self._conn.write(packet.to_bytes())

    def read_packet(self) -> KermitPacket:
        """Read and verify one packet from the calculator.

        Raises:
            ProtocolViolation: Missing SOH, bad LEN, or a remote E packet.
            ChecksumMismatch: The block check does not match.
            TransportIOError: The port timed out or failed.
        """
        time.sleep(self.settle_delay)
        header = self._conn.read_exact(3)
        if header[0] != SOH:
            raise ProtocolViolation(f"SOH missing from packet header {header!r}")
        length = unchar(header[1])
        if length < 3:
            raise ProtocolViolation(f"Invalid packet LEN {length}")

        # LEN covers SEQ..CHECK; SEQ is already read, and EOL follows CHECK
        packet = parse_packet(header + self._conn.read_exact(length))
        logger.debug("Kermit RX %r", packet)
        if packet.ptype == ERROR:
            message = decode_data(packet.data).decode("latin-1", errors="replace")
            raise ProtocolViolation(f"Calculator reported an error: {message}")
        return packet

    def _expect(self, ptype: str, what: str) -> KermitPacket:
        packet = self.read_packet()
        if packet.ptype != ptype:
            raise ProtocolViolation(
                f"Expected {what} ({ptype!r}) packet, got {packet.ptype!r}"
            )
        return packet

    def _exchange(self, packet: KermitPacket, what: str) -> KermitPacket:
        """Send ``packet`` and require an ACK for its sequence number."""
        self._write(packet)
        reply = self.read_packet()
        if reply.ptype != ACK:
            raise ProtocolViolation(
                f"No ACK for {what} packet (got {reply.ptype!r}). Try sending again."
            )
        if reply.seq != packet.seq % SEQ_MODULUS:
            raise ProtocolViolation(
                f"ACK for {what} packet has sequence {reply.seq}, "
                f"expected {packet.seq % SEQ_MODULUS}"
            )
        return reply

    def _ack(self, packet: KermitPacket, data: bytes = b"") -> None:
        self._write(build_ack(packet.seq, data))

    def send_file(self, name: str, data: bytes) -> int:
        """Send ``data`` to the calculator as variable ``name``.

        Returns:
            The number of data packets sent.
        """
        self.seq = 0
        reply = self._exchange(build_send_init(self._next_seq()), "Send-Init")
        logger.debug("Remote Send-Init parameters: %r", reply.data)
        self._exchange(build_file_header(self._next_seq(), name), "File-Header")

        chunks = segment_data(data)
        for i, chunk in enumerate(chunks, 1):
            self._exchange(build_data(self._next_seq(), chunk), f"data {i}/{len(chunks)}")

        self._exchange(build_generic(self._next_seq(), END_OF_FILE), "end-of-file")
        self._exchange(build_generic(self._next_seq(), BREAK), "end-of-transmission")
        logger.info("Kermit sent %r: %d bytes in %d packets", name, len(data), len(chunks))
        return len(chunks)

    def _check_seq(self, packet: KermitPacket) -> None:
        expected = self._next_seq()
        if packet.seq != expected:
            raise ProtocolViolation(
                f"Packet {packet.ptype!r} has sequence {packet.seq}, expected {expected}"
            )

    def receive_file(self, name: str | None = None) -> tuple[str, bytes]:
        """Receive one file from the calculator.

        Args:
            name: If given, ask the calculator's Kermit server for this
                variable first (R packet). Otherwise wait for the calculator
                to start sending on its own.

        Returns:
            The file name announced by the calculator and the file contents.
        """
        self.seq = 0
        if name is not None:
            self._write(build_receive_init(0, name))

        packet = self._expect(SEND_INIT, "Send-Init")
        self._check_seq(packet)
        self._ack(packet, send_init_parameters())

        packet = self._expect(FILE_HEADER, "File-Header")
        self._check_seq(packet)
        remote_name = decode_data(packet.data).decode("latin-1")
        self._ack(packet)

        content = bytearray()
        while True:
            packet = self.read_packet()
            self._check_seq(packet)
            if packet.ptype == DATA:
                content += decode_data(packet.data)
                self._ack(packet)
            elif packet.ptype == END_OF_FILE:
                self._ack(packet)
                break
            else:
                raise ProtocolViolation(
                    f"Expected data or end-of-file packet, got {packet.ptype!r}"
                )

        packet = self._expect(BREAK, "end-of-transmission")
        self._check_seq(packet)
        self._ack(packet)
        logger.info("Kermit received %r: %d bytes", remote_name, len(content))
        return remote_name, bytes(content)

    def finish_server(self) -> None:
        """Tell the calculator's Kermit server to exit.

        The server finish command is its own transaction, so the sequence
        restarts at 0 after the Init exchange.
        """
        self.seq = 0
        self._exchange(build_server_init(self._next_seq()), "server Init")
        self.seq = 0
        self._exchange(build_server_finish(self._next_seq()), "server Finish")
        logger.info("Kermit server finished")
