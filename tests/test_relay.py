import pytest

from duorelay.core.errors import InvalidPayload, StorageError
from duorelay.core.relay import RelayEngine
from duorelay.core.types import Identity, Status

A, B = Identity.USER1, Identity.USER2


def clock(start=1700000000000):
    t = {"now": start}

    def now():
        t["now"] += 1
        return t["now"]

    return now


@pytest.fixture
def engine(registry, store):
    return RelayEngine(registry, store, now=clock())


@pytest.mark.asyncio
async def test_relay_to_connected_peer(engine, registry, store, fake_conn):
    alice, bob = fake_conn(), fake_conn()
    await registry.try_bind(alice)
    await registry.try_bind(bob)

    msg = await engine.relay(A, "hello bob")

    assert msg.status is Status.DELIVERED
    assert bob.frames == [
        {"type": "message", "id": msg.id, "sender": "user1", "content": "hello bob", "timestamp": msg.timestamp}
    ]
    assert alice.frames == [{"type": "status", "messageId": msg.id, "status": "delivered"}]
    assert (await store.get(msg.id)).status is Status.DELIVERED


@pytest.mark.asyncio
async def test_relay_to_absent_peer_is_pending(engine, registry, store, fake_conn):
    alice = fake_conn()
    await registry.try_bind(alice)

    msg = await engine.relay(A, "anyone there?")

    assert msg.status is Status.PENDING
    assert msg.receiver is B
    assert alice.frames == [{"type": "status", "messageId": msg.id, "status": "pending"}]
    assert [m.id for m in await store.pending_for(B)] == [msg.id]


@pytest.mark.asyncio
async def test_second_slot_relays_to_first(engine, registry, store, fake_conn):
    alice, bob = fake_conn(), fake_conn()
    await registry.try_bind(alice)
    await registry.try_bind(bob)

    msg = await engine.relay(B, "hi alice")

    assert msg.sender is B and msg.receiver is A
    assert alice.of_type("message")[0]["sender"] == "user2"
    assert bob.of_type("status") == [{"type": "status", "messageId": msg.id, "status": "delivered"}]


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   ", None, 12, ["x"]])
async def test_invalid_content_stores_nothing(engine, registry, store, fake_conn, content):
    alice, bob = fake_conn(), fake_conn()
    await registry.try_bind(alice)
    await registry.try_bind(bob)

    with pytest.raises(InvalidPayload):
        await engine.relay(A, content)

    assert alice.frames == [] and bob.frames == []
    assert await store.pending_for(B) == []
    assert await store.get(1) is None


@pytest.mark.asyncio
async def test_storage_failure_forwards_nothing(registry, store, fake_conn, monkeypatch):
    alice, bob = fake_conn(), fake_conn()
    await registry.try_bind(alice)
    await registry.try_bind(bob)

    async def broken_append(*args, **kwargs):
        raise StorageError("disk gone")

    monkeypatch.setattr(store, "append", broken_append)
    engine = RelayEngine(registry, store)

    with pytest.raises(StorageError):
        await engine.relay(A, "lost?")
    assert alice.frames == [] and bob.frames == []


@pytest.mark.asyncio
async def test_failed_forward_keeps_committed_record(engine, registry, store, fake_conn):
    alice, bob = fake_conn(), fake_conn(fail_after=0)
    await registry.try_bind(alice)
    await registry.try_bind(bob)

    msg = await engine.relay(A, "into the void")

    assert (await store.get(msg.id)).status is Status.DELIVERED
    assert alice.of_type("status") == [{"type": "status", "messageId": msg.id, "status": "delivered"}]


@pytest.mark.asyncio
async def test_failed_status_notice_is_not_retried(engine, registry, store, fake_conn):
    alice = fake_conn(fail_after=0)
    await registry.try_bind(alice)

    msg = await engine.relay(A, "still stored")

    assert alice.frames == []
    assert (await store.get(msg.id)).status is Status.PENDING


@pytest.mark.asyncio
async def test_timestamps_come_from_the_clock(engine, registry, fake_conn):
    await registry.try_bind(fake_conn())
    first = await engine.relay(A, "1")
    second = await engine.relay(A, "2")
    assert second.timestamp > first.timestamp
    assert second.id > first.id
