from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from . import proto
from .errors import InvalidPayload, TransportSendFailure
from .slots import SlotRegistry
from .store import MessageStore
from .types import Identity, Message, Outbound, Status

log = logging.getLogger("duorelay.relay")

NowFn = Callable[[], int]


class RelayEngine:
    """Turns one inbound content event into a stored message plus routing."""

    def __init__(
        self,
        registry: SlotRegistry[Outbound],
        store: MessageStore,
        now: NowFn = proto.now_ms,
    ) -> None:
        self.registry = registry
        self.store = store
        self.now = now

    async def relay(self, sender: Identity, content: Any) -> Message:
        """Persist ``content`` from ``sender`` and route it to the peer.

        The status is fixed from a reachability snapshot taken just before the
        write, under the recipient's delivery lock: while the recipient is
        still draining its pending inbox the relay waits, then forwards live.
        A message written as pending just before the recipient binds is
        delivered by that join's flush or the next one.

        Raises InvalidPayload for blank or non-text content and StorageError
        when the append fails; in both cases nothing is forwarded.
        """

        if not isinstance(content, str) or not content.strip():
            raise InvalidPayload("content must be non-empty text")

        recipient = self.registry.peer_of(sender)
        async with self.registry.delivery_lock(recipient):
            recipient_conn = self.registry.connection_for(recipient)
            status = Status.DELIVERED if recipient_conn is not None else Status.PENDING
            timestamp = self.now()

            message_id = await self.store.append(sender, recipient, content, timestamp, status)
            message = Message(
                id=message_id,
                sender=sender,
                receiver=recipient,
                content=content,
                timestamp=timestamp,
                status=status,
            )
            log.info("Message %d from %s to %s stored as %s", message_id, sender.value, recipient.value, status.value)

            if recipient_conn is not None:
                # The row is already committed as delivered; a failed forward is not rolled back.
                await _send_best_effort(recipient_conn, proto.message_frame(message), "forward", message_id)

        await _send_best_effort(
            self.registry.connection_for(sender),
            proto.status_frame(message_id, status),
            "status notice",
            message_id,
        )
        return message


async def _send_best_effort(
    conn: Optional[Outbound],
    frame: Dict[str, Any],
    what: str,
    message_id: int,
) -> bool:
    if conn is None:
        return False
    try:
        await conn.send(frame)
    except TransportSendFailure as exc:
        log.warning("Dropped %s for message %d: %s", what, message_id, exc)
        return False
    return True


__all__ = ["RelayEngine"]
