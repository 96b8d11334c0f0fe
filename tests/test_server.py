"""Tests for the MCP tool layer."""

from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock, patch

from hp48_link_mcp.errors import ProtocolViolation, TransferCancelled, TransportIOError
from hp48_link_mcp.models.hp_object import from_nibbles


def _get_server_module():
    """Import server module with FastMCP mocked to avoid init issues."""
    mock_fastmcp_cls = MagicMock()
    mock_fastmcp_instance = MagicMock()
    # Make the @mcp.tool() decorator a no-op that returns the function unchanged
    mock_fastmcp_instance.tool.return_value = lambda fn: fn
    mock_fastmcp_instance.resource.return_value = lambda fn: fn
    mock_fastmcp_instance.prompt.return_value = lambda fn: fn
    mock_fastmcp_cls.return_value = mock_fastmcp_instance

    with patch.dict(sys.modules, {}):
        with patch("mcp.server.fastmcp.FastMCP", mock_fastmcp_cls):
            # Remove cached server module so it re-imports with our mock
            sys.modules.pop("hp48_link_mcp.server", None)
            import hp48_link_mcp.server as server_mod

    return server_mod


def test_object_info_tool(tmp_path):
    server = _get_server_module()
    path = tmp_path / "int.hp"
    # DOBINT 0x02911 followed by the value 7
    path.write_bytes(b"HPHP48-R" + from_nibbles(bytes([1, 1, 9, 2, 0, 7, 0, 0, 0, 0])))

    result = server.object_info(str(path))

    assert result["rom_revision"] == "R"
    assert result["length_nibbles"] == 10
    assert result["report"].startswith("ROM Revision: R, Object CRC: #")
    assert result["report"].endswith("Object length (bytes): 5")


def test_object_info_rejects_hp49(tmp_path):
    server = _get_server_module()
    path = tmp_path / "obj.hp"
    path.write_bytes(b"HPHP49-C" + bytes(8))

    assert "error" in server.object_info(str(path))


def test_object_info_missing_file(tmp_path):
    server = _get_server_module()
    assert "error" in server.object_info(str(tmp_path / "nope"))


def test_output_path_avoids_collisions(tmp_path):
    server = _get_server_module()
    target = tmp_path / "PRG"
    assert server._output_path(target, overwrite=False) == target

    target.write_bytes(b"old")
    (tmp_path / "PRG.1").write_bytes(b"old")
    assert server._output_path(target, overwrite=False) == tmp_path / "PRG.2"
    assert server._output_path(target, overwrite=True) == target


def test_tools_require_connection():
    server = _get_server_module()
    server._connection = None
    try:
        server.xmodem_send("whatever")
    except RuntimeError as e:
        assert "connect" in str(e)
    else:
        assert False, "Should have raised RuntimeError"


def test_xmodem_send_direct_ignores_finish(tmp_path):
    server = _get_server_module()
    path = tmp_path / "PRG"
    path.write_bytes(b"data")
    session = MagicMock()
    session.send_direct.return_value = 1

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "XModemSession", return_value=session):
        result = server.xmodem_send(str(path), direct=True, finish=True)

    assert result["sent"] is True
    assert "warning" in result
    session.send_direct.assert_called_once_with(b"data")
    session.finish_server.assert_not_called()


def test_xmodem_send_to_server_with_finish(tmp_path):
    server = _get_server_module()
    path = tmp_path / "PRG"
    path.write_bytes(b"data")
    session = MagicMock()
    session.send_to_server.return_value = 1

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "XModemSession", return_value=session):
        result = server.xmodem_send(str(path), finish=True)

    assert result == {"sent": True, "name": "PRG", "bytes": 4, "packets": 1}
    session.send_to_server.assert_called_once_with("PRG", b"data")
    session.finish_server.assert_called_once()


def test_xmodem_get_writes_new_file(tmp_path):
    server = _get_server_module()
    existing = tmp_path / "NOTES"
    existing.write_bytes(b"keep me")
    session = MagicMock()
    session.receive.return_value = b"new"

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "XModemSession", return_value=session):
        result = server.xmodem_get("NOTES", output=str(existing))

    assert result["path"] == str(tmp_path / "NOTES.1")
    assert existing.read_bytes() == b"keep me"
    assert (tmp_path / "NOTES.1").read_bytes() == b"new"
    session.receive.assert_called_once_with("NOTES")


def test_cancelled_get_writes_nothing(tmp_path):
    server = _get_server_module()
    session = MagicMock()
    session.receive.side_effect = TransferCancelled("Received cancel from remote side")

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "XModemSession", return_value=session):
        result = server.xmodem_get("X", output=str(tmp_path / "X"), direct=True)

    assert "cancel" in result["error"]
    assert not (tmp_path / "X").exists()
    session.receive.assert_called_once_with(None)


def test_kermit_send_reports_protocol_error(tmp_path):
    server = _get_server_module()
    path = tmp_path / "PRG"
    path.write_bytes(b"data")
    session = MagicMock()
    session.send_file.side_effect = ProtocolViolation("No ACK for Send-Init packet")

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "KermitSession", return_value=session):
        result = server.kermit_send(str(path))

    assert result == {"error": "Kermit send failed: No ACK for Send-Init packet"}


def test_kermit_get_with_finish(tmp_path):
    server = _get_server_module()
    session = MagicMock()
    session.receive_file.return_value = ("PRG", b"\x01\x02")

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "KermitSession", return_value=session):
        result = server.kermit_get("PRG", output=str(tmp_path / "PRG"), finish=True)

    assert result["bytes"] == 2
    assert (tmp_path / "PRG").read_bytes() == b"\x01\x02"
    session.finish_server.assert_called_once()


def test_finish_server_unknown_protocol():
    server = _get_server_module()
    with patch.object(server, "_get_connection", return_value=MagicMock()):
        assert "error" in server.finish_server("zmodem")


def test_object_types_resource():
    server = _get_server_module()
    types = json.loads(server.resource_object_types())
    assert types["DOBINT"] == {"prolog": "0x02911", "sizing": "fixed", "fixed_length": 10}
    assert types["DORRP"]["sizing"] == "dir_next"


def test_kermit_get_keeps_file_when_finish_fails(tmp_path):
    """The received file is written before the server is told to exit."""
    server = _get_server_module()
    session = MagicMock()
    session.receive_file.return_value = ("X", b"data")
    session.finish_server.side_effect = ProtocolViolation("No ACK for Init packet")

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "KermitSession", return_value=session):
        result = server.kermit_get("X", output=str(tmp_path / "X"), finish=True)

    assert result["received"] is True
    assert "finish failed" in result["warning"]
    assert (tmp_path / "X").read_bytes() == b"data"


def test_xmodem_get_keeps_file_when_finish_fails(tmp_path):
    server = _get_server_module()
    session = MagicMock()
    session.receive.return_value = b"data"
    session.finish_server.side_effect = TransportIOError("Write failed")

    with patch.object(server, "_get_connection", return_value=MagicMock()), \
         patch.object(server, "XModemSession", return_value=session):
        result = server.xmodem_get("X", output=str(tmp_path / "X"), finish=True)

    assert result["received"] is True
    assert "warning" in result
    assert (tmp_path / "X").read_bytes() == b"data"


def test_list_ports_tool():
    server = _get_server_module()
    port = MagicMock(device="/dev/ttyUSB0", description="USB Serial", hwid="USB VID:PID=0403:6001")

    with patch.object(server, "discover_ports", return_value=[port]):
        result = server.list_ports()

    assert result == {"ports": [
        {"device": "/dev/ttyUSB0", "description": "USB Serial", "hwid": "USB VID:PID=0403:6001"}
    ]}
