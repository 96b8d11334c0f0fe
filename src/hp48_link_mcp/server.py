"""MCP server entry point for HP 48 file transfer.

Exposes Kermit and XModem transfers and object inspection as tools via the
Model Context Protocol, using the official Python MCP SDK with stdio
transport.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .errors import HP48LinkError
from .models.hp_object import FIXED_LENGTHS, PROLOG_STRATEGIES, load_object
from .transfer.kermit import KermitSession
from .transfer.xmodem import XModemSession
from .transport.serial_connection import (
    DEFAULT_BAUD,
    DEFAULT_TIMEOUT,
    SerialConnection,
    list_ports as discover_ports,
)

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "hp48-link",
    instructions="MCP server for HP 48 calculator file transfer over serial",
)

# Global connection state
_connection: SerialConnection | None = None


def _get_connection() -> SerialConnection:
    """Get the active serial connection, raising if not connected."""
    if _connection is None or not _connection.connected:
        raise RuntimeError(
            "Not connected to a calculator. Use the 'connect' tool first."
        )
    return _connection


def _read_file(path: str) -> tuple[str, bytes]:
    file_path = Path(path)
    return file_path.name, file_path.read_bytes()


def _output_path(path: str | Path, overwrite: bool) -> Path:
    """Pick where to write a received file: ``path``, ``path.1``, ``path.2``..."""
    path = Path(path)
    if overwrite or not path.exists():
        return path
    counter = 1
    while True:
        candidate = path.with_name(f"{path.name}.{counter}")
        if not candidate.exists():
            return candidate
        counter += 1


def _failure(action: str, error: Exception) -> dict[str, Any]:
    logger.error("%s failed: %s", action, error)
    return {"error": f"{action} failed: {error}"}


def _finish(session, result: dict[str, Any]) -> dict[str, Any]:
    """Stop the server after a completed transfer; a failure only warns."""
    try:
        session.finish_server()
    except HP48LinkError as e:
        logger.warning("Server finish failed: %s", e)
        result["warning"] = f"transfer completed but finish failed: {e}"
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_ports() -> dict[str, Any]:
    """List serial ports available on this computer."""
    return {
        "ports": [
            {"device": p.device, "description": p.description, "hwid": p.hwid}
            for p in discover_ports()
        ]
    }


@mcp.tool()
def connect(
    port: str | None = None,
    baud: int = DEFAULT_BAUD,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict[str, Any]:
    """Open the serial port the calculator is attached to.

    Args:
        port: Serial device (default: first port found).
        baud: Baud rate; the HP 48 defaults to 9600.
        timeout: Read timeout in seconds.
    """
    global _connection
    if _connection is not None and _connection.connected:
        return {
            "connected": True,
            "message": "Already connected",
            "port": _connection.port,
        }

    try:
        connection = SerialConnection(port, baud=baud, timeout=timeout)
        device = connection.open()
    except (HP48LinkError, ValueError) as e:
        return _failure("Connect", e)

    _connection = connection
    return {"connected": True, "port": device, "baud": baud}


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Close the serial port."""
    global _connection
    if _connection is None:
        return {"disconnected": True}
    _connection.close()
    _connection = None
    return {"disconnected": True}


# ─── KERMIT TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
def kermit_send(path: str, finish: bool = False) -> dict[str, Any]:
    """Send a file to the calculator with Kermit.

    The calculator must be waiting in RECV or running its Kermit server.

    Args:
        path: File on this computer; its name becomes the variable name.
        finish: Tell the calculator's Kermit server to exit afterwards.
    """
    conn = _get_connection()
    try:
        name, data = _read_file(path)
        session = KermitSession(conn)
        packets = session.send_file(name, data)
    except (HP48LinkError, OSError) as e:
        return _failure("Kermit send", e)

    result = {"sent": True, "name": name, "bytes": len(data), "packets": packets}
    if finish:
        _finish(session, result)
    return result


@mcp.tool()
def kermit_get(
    name: str,
    output: str | None = None,
    overwrite: bool = False,
    finish: bool = False,
) -> dict[str, Any]:
    """Get a variable from the calculator's Kermit server.

    Args:
        name: Variable name on the calculator.
        output: Destination file (default: ``name`` in the working directory).
        overwrite: Replace an existing file instead of picking ``name.N``.
        finish: Tell the Kermit server to exit afterwards.
    """
    conn = _get_connection()
    try:
        session = KermitSession(conn)
        remote_name, data = session.receive_file(name)
        target = _output_path(output or name, overwrite)
        target.write_bytes(data)
    except (HP48LinkError, OSError) as e:
        return _failure("Kermit get", e)

    result = {
        "received": True,
        "name": remote_name,
        "path": str(target),
        "bytes": len(data),
    }
    if finish:
        _finish(session, result)
    return result


# ─── XMODEM TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
def xmodem_send(path: str, direct: bool = False, finish: bool = False) -> dict[str, Any]:
    """Send a file to the calculator with XModem.

    Args:
        path: File on this computer; its name becomes the variable name.
        direct: Send to XRECV instead of the XModem server (128-byte
            packets, no server command).
        finish: Tell the XModem server to exit afterwards. Ignored in
            direct mode.
    """
    conn = _get_connection()
    result: dict[str, Any] = {}
    try:
        name, data = _read_file(path)
        session = XModemSession(conn)
        if direct:
            if finish:
                logger.warning("Ignoring finish in XModem direct mode")
                result["warning"] = "finish ignored in direct mode"
            packets = session.send_direct(data)
        else:
            packets = session.send_to_server(name, data)
    except (HP48LinkError, OSError) as e:
        return _failure("XModem send", e)

    result.update({"sent": True, "name": name, "bytes": len(data), "packets": packets})
    if finish and not direct:
        _finish(session, result)
    return result


@mcp.tool()
def xmodem_get(
    name: str,
    output: str | None = None,
    overwrite: bool = False,
    direct: bool = False,
    finish: bool = False,
) -> dict[str, Any]:
    """Get a variable from the calculator with XModem.

    Args:
        name: Variable name on the calculator (also the default file name).
        output: Destination file (default: ``name`` in the working directory).
        overwrite: Replace an existing file instead of picking ``name.N``.
        direct: Receive from XSEND instead of the XModem server.
        finish: Tell the XModem server to exit afterwards. Ignored in
            direct mode.
    """
    conn = _get_connection()
    try:
        session = XModemSession(conn)
        data = session.receive(None if direct else name)
        target = _output_path(output or name, overwrite)
        target.write_bytes(data)
    except (HP48LinkError, OSError) as e:
        return _failure("XModem get", e)

    result = {"received": True, "path": str(target), "bytes": len(data)}
    if finish and not direct:
        _finish(session, result)
    return result


@mcp.tool()
def finish_server(protocol: str = "xmodem") -> dict[str, Any]:
    """Tell the calculator's Kermit or XModem server to exit.

    Args:
        protocol: ``xmodem`` or ``kermit``.
    """
    conn = _get_connection()
    try:
        if protocol == "kermit":
            KermitSession(conn).finish_server()
        elif protocol == "xmodem":
            XModemSession(conn).finish_server()
        else:
            return {"error": f"Unknown protocol '{protocol}'. Valid: kermit, xmodem"}
    except HP48LinkError as e:
        return _failure("Finish", e)
    return {"finished": True, "protocol": protocol}


# ─── OBJECT TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
def object_info(path: str) -> dict[str, Any]:
    """Report the ROM revision, CRC, and size of an HP 48 object file.

    The CRC matches what BYTES shows on the calculator.

    Args:
        path: An ``HPHP48`` binary object file.
    """
    try:
        info = load_object(path)
    except (HP48LinkError, OSError) as e:
        return _failure("Object info", e)

    result = info.to_dict()
    result["report"] = info.report()
    return result


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("hp48://objects/types")
def resource_object_types() -> str:
    """Object types whose size and CRC can be computed."""
    return json.dumps({
        prolog.name: {
            "prolog": f"0x{prolog.value:05X}",
            "sizing": strategy.value,
            "fixed_length": FIXED_LENGTHS.get(prolog),
        }
        for prolog, strategy in PROLOG_STRATEGIES.items()
    })


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
