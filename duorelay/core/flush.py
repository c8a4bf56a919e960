from __future__ import annotations

import logging

from . import proto
from .errors import StorageError, TransportSendFailure
from .slots import SlotRegistry
from .store import MessageStore
from .types import Identity, Outbound, Status

log = logging.getLogger("duorelay.flush")


class Flusher:
    """Drains an identity's pending inbox right after it binds."""

    def __init__(self, registry: SlotRegistry[Outbound], store: MessageStore) -> None:
        self.registry = registry
        self.store = store

    async def flush(self, identity: Identity) -> int:
        """Deliver pending messages for ``identity`` under its delivery lock."""

        async with self.registry.delivery_lock(identity):
            return await self.drain(identity)

    async def drain(self, identity: Identity) -> int:
        """Deliver pending messages for ``identity`` in timestamp order.

        The caller must hold ``registry.delivery_lock(identity)``.

        The pending list is re-queried on every call, so anything marked
        delivered by an earlier (possibly interrupted) pass is never resent.
        The first send or storage failure ends the pass; the remaining rows
        stay pending for the next bind. Returns the number delivered.
        """

        conn = self.registry.connection_for(identity)
        if conn is None:
            return 0

        try:
            pending = await self.store.pending_for(identity)
        except StorageError:
            log.exception("Could not load pending messages for %s", identity.value)
            return 0
        if not pending:
            return 0

        log.info("Delivering %d pending messages to %s", len(pending), identity.value)
        delivered = 0
        for message in pending:
            try:
                await conn.send(proto.message_frame(message))
            except TransportSendFailure as exc:
                log.warning(
                    "Flush to %s stopped at message %d: %s", identity.value, message.id, exc
                )
                break
            try:
                await self.store.set_delivered(message.id)
            except StorageError:
                log.exception("Could not mark message %d delivered; flush to %s stopped", message.id, identity.value)
                break
            delivered += 1

            sender_conn = self.registry.connection_for(message.sender)
            if sender_conn is None:
                continue
            try:
                await sender_conn.send(proto.status_frame(message.id, Status.DELIVERED))
            except TransportSendFailure as exc:
                log.warning("Dropped delivered notice for message %d: %s", message.id, exc)

        if delivered < len(pending):
            log.info("%d messages left pending for %s", len(pending) - delivered, identity.value)
        return delivered


__all__ = ["Flusher"]
