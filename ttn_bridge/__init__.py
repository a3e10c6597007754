"""Bridge between a The Things Network device and a local control surface."""

__version__ = "0.1.0"
