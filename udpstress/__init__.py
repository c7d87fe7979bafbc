"""UDP socket lifecycle stress client and server."""

__version__ = "0.1.0"
