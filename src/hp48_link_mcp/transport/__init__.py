"""Transport layer: the serial link to the calculator."""

from .serial_connection import SerialConnection, list_ports
