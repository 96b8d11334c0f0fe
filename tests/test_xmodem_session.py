"""Tests for the XModem send/receive loops."""

import pytest

from hp48_link_mcp.errors import (
    ProtocolViolation,
    RetryExhausted,
    TransferCancelled,
    TransportIOError,
)
from hp48_link_mcp.protocol.xmodem import (
    ACK,
    CAN,
    EOT,
    NAK,
    ChecksumMode,
    build_command_packet,
    build_conn4x_packets,
    build_packet,
)
from hp48_link_mcp.transfer.xmodem import XModemSession


def _session(fake, **kwargs) -> XModemSession:
    return XModemSession(fake, start_delay=0, settle_delay=0, **kwargs)


def _frame(seq: int, payload: bytes) -> bytes:
    return build_packet(seq, payload.ljust(128, b"\x00"), ChecksumMode.NORMAL)


# ─── SEND ────────────────────────────────────────────────────────────

def test_send_direct(fake_connection):
    data = bytes(range(200))
    fake_connection.feed(bytes([NAK, ACK, ACK, ACK]))

    assert _session(fake_connection).send_direct(data) == 2

    writes = fake_connection.writes
    assert len(writes) == 3
    assert writes[0] == build_packet(1, data[:128], ChecksumMode.NORMAL)
    assert writes[1] == build_packet(2, data[128:], ChecksumMode.NORMAL)
    assert writes[2] == bytes([EOT])


def test_nak_triggers_retransmission(fake_connection):
    fake_connection.feed(bytes([NAK, NAK, ACK, ACK]))

    _session(fake_connection).send_direct(b"x")

    writes = fake_connection.writes
    assert writes[0] == writes[1]
    assert writes[2] == bytes([EOT])


def test_three_naks_exhaust_retries(fake_connection):
    """After three rejected attempts, no fourth write happens."""
    fake_connection.feed(bytes([NAK, NAK, NAK, NAK, ACK]))

    with pytest.raises(RetryExhausted):
        _session(fake_connection).send_direct(b"x")
    assert len(fake_connection.writes) == 3


def test_cancel_aborts_send(fake_connection):
    fake_connection.feed(bytes([NAK, CAN]))

    with pytest.raises(TransferCancelled):
        _session(fake_connection).send_direct(b"x" * 300)
    assert len(fake_connection.writes) == 1


def test_noise_is_skipped_while_waiting(fake_connection):
    fake_connection.feed(b"C" + bytes([NAK]) + b"\x00" + bytes([ACK, ACK]))

    _session(fake_connection).send_direct(b"x")
    assert len(fake_connection.writes) == 2


def test_send_times_out_without_ack(fake_connection):
    fake_connection.feed(bytes([NAK]))

    with pytest.raises(TransportIOError):
        _session(fake_connection).send_direct(b"x")


def test_send_to_server(fake_connection):
    data = bytes(1025)
    fake_connection.feed(bytes([ACK]) + b"D" + bytes([ACK, ACK, ACK]))

    assert _session(fake_connection).send_to_server("BIG", data) == 2

    writes = fake_connection.writes
    assert writes[0] == build_command_packet("P", "BIG")
    assert writes[1:3] == build_conn4x_packets(data)
    assert writes[3] == bytes([EOT])


def test_server_rejects_put(fake_connection):
    fake_connection.feed(bytes([NAK]))

    with pytest.raises(ProtocolViolation):
        _session(fake_connection).send_to_server("X", b"data")


# ─── RECEIVE ─────────────────────────────────────────────────────────

def test_receive_from_server(fake_connection):
    fake_connection.feed(
        bytes([ACK]) + _frame(1, b"A" * 128) + _frame(2, b"hello") + bytes([EOT])
    )

    data = _session(fake_connection).receive("NOTES")

    assert data == b"A" * 128 + b"hello"
    assert fake_connection.writes == [
        build_command_packet("G", "NOTES"),
        bytes([NAK]),
        bytes([ACK]),
        bytes([ACK]),
        bytes([ACK]),
    ]


def test_receive_direct_skips_command(fake_connection):
    fake_connection.feed(_frame(1, b"xyz") + bytes([EOT]))

    assert _session(fake_connection).receive() == b"xyz"
    assert fake_connection.writes[0] == bytes([NAK])


def test_receive_naks_bad_checksum(fake_connection):
    bad = bytearray(_frame(1, b"data"))
    bad[-1] ^= 0x55
    fake_connection.feed(bytes(bad) + _frame(1, b"data") + bytes([EOT]))

    assert _session(fake_connection).receive() == b"data"
    assert fake_connection.writes == [bytes([NAK]), bytes([NAK]), bytes([ACK]), bytes([ACK])]


def test_receive_gives_up_after_three_bad_frames(fake_connection):
    bad = bytearray(_frame(1, b"data"))
    bad[-1] ^= 0x55
    fake_connection.feed(bytes(bad) * 3)

    with pytest.raises(RetryExhausted):
        _session(fake_connection).receive()


def test_receive_drops_rest_of_garbled_frame(fake_connection):
    """A frame with a bad start byte is flushed before the NAK."""
    fake_connection.feed(b"\x55" + bytes(131))
    fake_connection.feed(_frame(1, b"data") + bytes([EOT]))

    assert _session(fake_connection).receive() == b"data"
    assert fake_connection.discarded == 131
    assert fake_connection.writes == [bytes([NAK]), bytes([NAK]), bytes([ACK]), bytes([ACK])]


def test_receive_cancel(fake_connection):
    fake_connection.feed(_frame(1, b"partial") + bytes([CAN]))

    with pytest.raises(TransferCancelled):
        _session(fake_connection).receive()


def test_receive_ignores_repeated_packet(fake_connection):
    fake_connection.feed(_frame(1, b"one") + _frame(1, b"one") + _frame(2, b"two") + bytes([EOT]))

    data = _session(fake_connection).receive()
    assert data == b"one".ljust(128, b"\x00") + b"two"


def test_receive_out_of_sequence(fake_connection):
    fake_connection.feed(_frame(1, b"one") + _frame(3, b"three"))

    with pytest.raises(ProtocolViolation):
        _session(fake_connection).receive()


def test_receive_trims_trailing_zeros_only(fake_connection):
    fake_connection.feed(_frame(1, b"ab\x00cd\x1a") + bytes([EOT]))

    assert _session(fake_connection).receive() == b"ab\x00cd\x1a"


def test_server_rejects_get(fake_connection):
    fake_connection.feed(bytes([NAK]))

    with pytest.raises(ProtocolViolation):
        _session(fake_connection).receive("MISSING")
    assert len(fake_connection.writes) == 1


def test_finish_server(fake_connection):
    _session(fake_connection).finish_server()
    assert fake_connection.writes == [b"Q"]
