from __future__ import annotations


class RelayError(Exception):
    """Base class for errors surfaced by the relay core."""


class SlotsFull(RelayError):
    """Both identities are bound; the new connection must be refused."""


class InvalidPayload(RelayError):
    """Inbound frame is not ``{"content": <non-empty text>}``."""


class StorageError(RelayError):
    """The message store could not complete an operation."""


class TransportSendFailure(RelayError):
    """An outbound frame could not be written to its connection."""


__all__ = ["RelayError", "SlotsFull", "InvalidPayload", "StorageError", "TransportSendFailure"]
