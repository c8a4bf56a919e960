from __future__ import annotations

import json
import time
from typing import Any, Dict, Literal, Union

from pydantic import BaseModel, ValidationError, field_validator

from .errors import InvalidPayload
from .types import Identity, Message, Status


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

class Inbound(BaseModel):
    """The only frame a bound client may send: ``{"content": "..."}``."""

    content: str

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


def parse_inbound(raw: Union[str, bytes]) -> str:
    """Return the message text carried by ``raw`` or raise InvalidPayload."""

    try:
        return Inbound.model_validate_json(raw).content
    except ValidationError as exc:
        raise InvalidPayload(str(exc)) from exc


# ---------------------------------------------------------------------------
# Outbound envelopes
# ---------------------------------------------------------------------------

class SystemFrame(BaseModel):
    type: Literal["system"] = "system"
    content: str


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    content: str


class MessageFrame(BaseModel):
    type: Literal["message"] = "message"
    id: int
    sender: Identity
    content: str
    timestamp: int


class StatusFrame(BaseModel):
    type: Literal["status"] = "status"
    messageId: int
    status: Status


def system_frame(content: str) -> Dict[str, Any]:
    return SystemFrame(content=content).model_dump(mode="json")


def error_frame(content: str) -> Dict[str, Any]:
    return ErrorFrame(content=content).model_dump(mode="json")


def message_frame(message: Message) -> Dict[str, Any]:
    """Chat payload as forwarded to the receiving identity."""

    return MessageFrame(
        id=message.id,
        sender=message.sender,
        content=message.content,
        timestamp=message.timestamp,
    ).model_dump(mode="json")


def status_frame(message_id: int, status: Status) -> Dict[str, Any]:
    return StatusFrame(messageId=message_id, status=status).model_dump(mode="json")


def encode(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


__all__ = [
    "Inbound",
    "parse_inbound",
    "SystemFrame",
    "ErrorFrame",
    "MessageFrame",
    "StatusFrame",
    "system_frame",
    "error_frame",
    "message_frame",
    "status_frame",
    "encode",
    "now_ms",
]
