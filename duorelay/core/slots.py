from __future__ import annotations

import asyncio
import logging
from typing import Dict, Generic, Iterable, List, Optional, TypeVar

from .errors import SlotsFull
from .types import Identity

log = logging.getLogger("duorelay.slots")

C = TypeVar("C")

DEFAULT_ORDER = (Identity.USER1, Identity.USER2)


class SlotRegistry(Generic[C]):
    """Binds each of the two identities to at most one live connection.

    The registry is process-local and starts empty; bind and unbind are
    serialised so two concurrent joins can never claim the same slot.
    """

    def __init__(self) -> None:
        self._bindings: Dict[Identity, Optional[C]] = {i: None for i in Identity}
        self._lock = asyncio.Lock()
        self._delivery_locks: Dict[Identity, asyncio.Lock] = {i: asyncio.Lock() for i in Identity}

    async def try_bind(self, connection: C, preferred: Iterable[Identity] = DEFAULT_ORDER) -> Identity:
        """Assign the first free identity in ``preferred`` to ``connection``."""

        async with self._lock:
            for identity in preferred:
                if self._bindings[identity] is None:
                    self._bindings[identity] = connection
                    log.debug("Bound %s", identity.value)
                    return identity
        raise SlotsFull("No slots available, please try again later")

    async def unbind(self, identity: Identity, connection: Optional[C] = None) -> bool:
        """Release ``identity``. Idempotent.

        With ``connection`` given, the slot is only released while it still
        belongs to that connection.
        """

        async with self._lock:
            current = self._bindings[identity]
            if current is None:
                return False
            if connection is not None and current is not connection:
                return False
            self._bindings[identity] = None
        log.debug("Released %s", identity.value)
        return True

    def delivery_lock(self, identity: Identity) -> asyncio.Lock:
        """Serialises everything written to ``identity``'s connection.

        Held by a join for its whole welcome-and-flush pass and by a relay
        from the reachability check through the live forward, so a live
        message can never overtake older pending ones.
        """

        return self._delivery_locks[identity]

    @staticmethod
    def peer_of(identity: Identity) -> Identity:
        return identity.peer

    def connection_for(self, identity: Identity) -> Optional[C]:
        return self._bindings[identity]

    def bound(self) -> List[Identity]:
        return [i for i, conn in self._bindings.items() if conn is not None]

    def is_full(self) -> bool:
        return all(conn is not None for conn in self._bindings.values())


__all__ = ["SlotRegistry", "DEFAULT_ORDER"]
