"""
Tests for registry.py — RoomRegistry membership, broadcast and teardown.
"""

import asyncio
import gc
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from connection import ConnectionHandle
from errors import InvalidState
from registry import RoomRegistry, close_gracefully
from conftest import settle, sent


def _ids(handles):
    return {h.connection_id for h in handles}


def test_join_creates_room(registry, make_handle):
    handle = make_handle()
    assert registry.join("lobby", handle) is True
    assert registry.rooms() == ["lobby"]
    assert registry.members_of("lobby") == (handle,)
    assert registry.room_of(handle) == "lobby"


def test_join_same_room_twice_is_noop(registry, make_handle):
    handle = make_handle()
    registry.join("lobby", handle)
    assert registry.join("lobby", handle) is False
    assert registry.member_count("lobby") == 1


def test_join_other_room_requires_leave(registry, make_handle):
    handle = make_handle()
    registry.join("lobby", handle)
    with pytest.raises(InvalidState):
        registry.join("general", handle)
    assert registry.members_of("general") == ()

    registry.leave("lobby", handle)
    registry.join("general", handle)
    assert registry.room_of(handle) == "general"


def test_join_blank_room_rejected(registry, make_handle):
    with pytest.raises(InvalidState):
        registry.join("  ", make_handle())
    assert registry.rooms() == []


def test_leave_is_idempotent_and_prunes(registry, make_handle):
    a, b = make_handle(), make_handle()
    registry.join("lobby", a)
    registry.join("lobby", b)

    assert registry.leave("lobby", a) is True
    assert registry.leave("lobby", a) is False
    assert registry.members_of("lobby") == (b,)

    registry.leave("lobby", b)
    assert registry.rooms() == []
    assert registry.leave("lobby", b) is False
    assert registry.leave("nowhere", b) is False


def test_members_of_is_a_snapshot(registry, make_handle):
    a, b = make_handle(), make_handle()
    registry.join("lobby", a)
    snapshot = registry.members_of("lobby")
    registry.join("lobby", b)
    registry.leave("lobby", a)
    assert snapshot == (a,)
    assert isinstance(snapshot, tuple)


def test_join_leave_sequences_stay_consistent(registry, make_handle):
    rng = random.Random(7)
    handles = [make_handle() for _ in range(10)]
    expected = {}
    for _ in range(500):
        handle = rng.choice(handles)
        room = rng.choice(["r1", "r2", "r3"])
        if rng.random() < 0.5:
            if expected.get(handle.connection_id) in (None, room):
                registry.join(room, handle)
                expected[handle.connection_id] = room
        else:
            registry.leave(room, handle)
            if expected.get(handle.connection_id) == room:
                del expected[handle.connection_id]

        for r in ("r1", "r2", "r3"):
            want = {cid for cid, joined in expected.items() if joined == r}
            assert _ids(registry.members_of(r)) == want


@pytest.mark.asyncio
async def test_broadcast_reaches_every_member_once(registry, make_handle):
    members = [make_handle() for _ in range(3)]
    for handle in members:
        registry.join("r1", handle)

    result = await registry.broadcast("r1", {"type": "msg", "msg": "hi"})

    assert result.attempted == 3
    assert result.ok
    for handle in members:
        handle.transport.send_json.assert_awaited_once_with({"type": "msg", "msg": "hi"})


@pytest.mark.asyncio
async def test_broadcast_is_not_retroactive(registry, make_handle):
    early, late = make_handle(), make_handle()
    registry.join("r1", early)

    pending = registry.broadcast("r1", {"n": 1})
    registry.join("r1", late)
    await pending
    await settle()

    assert sent(early) == [{"n": 1}]
    assert sent(late) == []


@pytest.mark.asyncio
async def test_broadcast_excludes_connection(registry, make_handle):
    a, b = make_handle(), make_handle()
    registry.join("r1", a)
    registry.join("r1", b)
    result = await registry.broadcast("r1", {"n": 1}, exclude=a.connection_id)
    assert result.delivered == [b.connection_id]
    assert sent(a) == []


@pytest.mark.asyncio
async def test_broadcast_to_empty_room(registry):
    result = await registry.broadcast("ghost-town", {"n": 1})
    assert result.attempted == 0
    assert result.ok


@pytest.mark.asyncio
async def test_broadcast_failure_isolated_and_evicted(registry, make_handle):
    a, b, c = make_handle(), make_handle(fail_send=True), make_handle()
    for handle in (a, b, c):
        registry.join("r1", handle)

    result = await registry.broadcast("r1", {"n": 1})

    assert result.attempted == 3
    assert set(result.delivered) == {a.connection_id, c.connection_id}
    assert list(result.failures) == [b.connection_id]
    await settle()
    assert _ids(registry.members_of("r1")) == {a.connection_id, c.connection_id}
    assert registry.room_of(b) is None
    # eviction does not close the connection
    b.transport.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_stalled_member_does_not_delay_others(registry, make_handle):
    gate = asyncio.Event()
    fast, slow, other = make_handle(), make_handle(gate=gate), make_handle()
    for handle in (fast, slow, other):
        registry.join("r1", handle)

    pending = registry.broadcast("r1", {"n": 1})
    await settle()
    assert sent(fast) == [{"n": 1}]
    assert sent(other) == [{"n": 1}]
    assert not pending.done()

    gate.set()
    assert (await pending).ok


@pytest.mark.asyncio
async def test_no_cross_room_leakage(registry, make_handle):
    lobby = [make_handle() for _ in range(20)]
    general = [make_handle() for _ in range(20)]

    async def join(room, handle):
        await asyncio.sleep(random.random() / 1000)
        registry.join(room, handle)
        registry.broadcast(room, {"room": room})

    await asyncio.gather(
        *(join("lobby", h) for h in lobby),
        *(join("general", h) for h in general),
    )
    await settle(20)

    for handle in lobby:
        assert all(p["room"] == "lobby" for p in sent(handle))
    for handle in general:
        assert all(p["room"] == "general" for p in sent(handle))


@pytest.mark.asyncio
async def test_concurrent_joins_lose_nothing(registry, make_handle):
    handles = [make_handle() for _ in range(100)]

    async def join(handle):
        await asyncio.sleep(0)
        registry.join("r1", handle)

    await asyncio.gather(*(join(h) for h in handles))

    members = registry.members_of("r1")
    assert len(members) == 100
    assert _ids(members) == _ids(handles)


def test_joins_from_many_threads(registry):
    handles = [ConnectionHandle(object()) for _ in range(100)]
    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda h: registry.join("r1", h), handles))
    assert _ids(registry.members_of("r1")) == _ids(handles)

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda h: registry.leave("r1", h), handles[:50]))
    assert _ids(registry.members_of("r1")) == _ids(handles[50:])


@pytest.mark.asyncio
async def test_closed_connection_leaves_room(registry, make_handle):
    a, b = make_handle(), make_handle()
    registry.join("r1", a)
    registry.join("r1", b)

    await a.close()

    assert registry.members_of("r1") == (b,)
    assert registry.room_of(a) is None


@pytest.mark.asyncio
async def test_closed_connection_cannot_join(registry, make_handle):
    handle = make_handle()
    await handle.close()
    with pytest.raises(InvalidState):
        registry.join("r1", handle)


def test_garbage_collected_connection_is_pruned(registry):
    handle = ConnectionHandle(object())
    registry.join("r1", handle)
    del handle
    gc.collect()
    assert registry.members_of("r1") == ()
    assert registry.rooms() == []


@pytest.mark.asyncio
async def test_close_all_flushes_and_removes_room(registry, make_handle):
    members = [make_handle() for _ in range(3)]
    for handle in members:
        registry.join("r1", handle)
    queued = members[0].send({"n": 1})

    closed = await registry.close_all("r1", {"type": "system"}, grace=1)

    assert closed == 3
    assert registry.rooms() == []
    assert (await queued).ok
    assert sent(members[0]) == [{"n": 1}, {"type": "system"}]
    for handle in members:
        assert handle.closed


@pytest.mark.asyncio
async def test_close_all_aborts_stalled_connections(registry, make_handle):
    gate = asyncio.Event()
    stuck, fine = make_handle(gate=gate), make_handle()
    registry.join("r1", stuck)
    registry.join("r1", fine)
    stuck.send({"n": 1})

    await registry.close_all("r1", grace=0.05)

    assert stuck.closed and fine.closed
    stuck.transport.close.assert_awaited_once_with(code=1001, reason="server shutdown")


@pytest.mark.asyncio
async def test_close_all_unknown_room(registry):
    assert await registry.close_all("missing") == 0


@pytest.mark.asyncio
async def test_shutdown_closes_every_room(registry, make_handle):
    handles = {room: make_handle() for room in ("r1", "r2", "r3")}
    for room, handle in handles.items():
        registry.join(room, handle)

    await registry.shutdown({"type": "system"}, grace=1)

    assert registry.rooms() == []
    assert all(h.closed for h in handles.values())


@pytest.mark.asyncio
async def test_close_gracefully_nothing_to_do():
    assert await close_gracefully([]) == 0
