"""Serial file transfer and object inspection for HP 48-series calculators."""

__version__ = "0.1.0"
