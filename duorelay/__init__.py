"""duorelay: a two-party WebSocket relay with pending delivery."""

__version__ = "0.1.0"
