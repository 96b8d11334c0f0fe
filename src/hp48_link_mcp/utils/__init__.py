"""Checksum helpers shared by the object decoder and the XModem codec."""
