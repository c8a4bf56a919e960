from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from duorelay.core.errors import TransportSendFailure
from duorelay.core.slots import SlotRegistry
from duorelay.core.store import MessageStore


class FakeConn:
    """Records frames; raises TransportSendFailure once ``fail_after`` sends have succeeded."""

    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.frames: List[Dict[str, Any]] = []
        self.fail_after = fail_after

    async def send(self, frame: Dict[str, Any]) -> None:
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise TransportSendFailure("connection dropped")
        self.frames.append(frame)

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.frames if f["type"] == type_]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true; store calls hop through a worker thread."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_conn():
    return FakeConn


@pytest_asyncio.fixture
async def store():
    s = MessageStore()
    await s.open()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def registry():
    return SlotRegistry()


@pytest.fixture
def settle():
    return wait_until
