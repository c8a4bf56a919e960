from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Protocol


class Identity(str, Enum):
    """The two fixed participant slots."""

    USER1 = "user1"
    USER2 = "user2"

    @property
    def peer(self) -> "Identity":
        return Identity.USER2 if self is Identity.USER1 else Identity.USER1


class Status(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


@dataclass(slots=True)
class Message:
    id: int
    sender: Identity
    receiver: Identity
    content: str
    timestamp: int
    status: Status


class Outbound(Protocol):
    """Anything frames can be pushed to (a live connection, a test double)."""

    async def send(self, frame: Dict[str, Any]) -> None: ...


__all__ = ["Identity", "Status", "Message", "Outbound"]
