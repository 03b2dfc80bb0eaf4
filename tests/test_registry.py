# tests/test_registry.py
from __future__ import annotations

import pytest

from chatline.core.registry import Connection, ConnState, SessionRegistry, deliver, group_room, user_room


# -----------------------------
# Utilities / fixtures
# -----------------------------

@pytest.fixture
def sent():
    """Collects frames per connection id."""
    return {}


@pytest.fixture
def make_conn(sent):
    def _make(cid: str, user_id: int | None = None) -> Connection:
        sent[cid] = []

        def push(frame):
            sent[cid].append(frame)
            return True

        return Connection(connection_id=cid, push=push, user_id=user_id)
    return _make


# -----------------------------
# Registration
# -----------------------------

@pytest.mark.asyncio
async def test_first_and_last_connection_edges(make_conn):
    reg = SessionRegistry()
    a1, a2 = make_conn("a1", 1), make_conn("a2", 1)

    assert await reg.register(1, a1) is True
    assert await reg.register(1, a2) is False
    assert await reg.connections_for(1) == {"a1", "a2"}
    assert await reg.is_online(1)

    assert await reg.unregister("a1") == (1, False)
    assert await reg.is_online(1)
    assert await reg.unregister("a2") == (1, True)
    assert not await reg.is_online(1)
    assert len(reg) == 0


@pytest.mark.asyncio
async def test_unregister_unknown_connection():
    reg = SessionRegistry()
    assert await reg.unregister("nope") == (None, False)


@pytest.mark.asyncio
async def test_unregister_drops_room_subscriptions(make_conn):
    reg = SessionRegistry()
    conn = make_conn("c1", 5)
    await reg.register(5, conn)
    assert await reg.join("c1", [user_room(5), group_room(9)]) == {"user:5", "group:9"}

    await reg.unregister("c1")
    assert await reg.rooms_of("c1") == set()
    assert await reg.targets([group_room(9)]) == []


# -----------------------------
# Rooms
# -----------------------------

@pytest.mark.asyncio
async def test_join_ignores_unregistered_connection(make_conn):
    reg = SessionRegistry()
    assert await reg.join("ghost", [user_room(1)]) == set()


@pytest.mark.asyncio
async def test_join_returns_only_new_rooms_and_leave(make_conn):
    reg = SessionRegistry()
    await reg.register(1, make_conn("c1", 1))
    await reg.join("c1", [user_room(1)])
    assert await reg.join("c1", [user_room(1), group_room(2)]) == {"group:2"}

    assert await reg.leave("c1", group_room(2)) is True
    assert await reg.leave("c1", group_room(2)) is False
    assert await reg.rooms_of("c1") == {"user:1"}


# -----------------------------
# Fan-out resolution
# -----------------------------

@pytest.mark.asyncio
async def test_targets_dedupes_and_filters(make_conn):
    reg = SessionRegistry()
    a, b, c = make_conn("a", 1), make_conn("b", 2), make_conn("c", 3)
    for conn in (a, b, c):
        await reg.register(conn.user_id, conn)
        await reg.join(conn.connection_id, [user_room(conn.user_id), group_room(7)])

    both = await reg.targets([group_room(7), user_room(1)])
    assert [t.connection_id for t in both] == ["a", "b", "c"]

    only = await reg.targets([group_room(7)], only_users={1, 2})
    assert [t.connection_id for t in only] == ["a", "b"]

    excl = await reg.targets([group_room(7)], exclude_user=2)
    assert [t.connection_id for t in excl] == ["a", "c"]

    by_user = await reg.targets(users=[3])
    assert [t.connection_id for t in by_user] == ["c"]


@pytest.mark.asyncio
async def test_closed_connections_are_never_targets(make_conn, sent):
    reg = SessionRegistry()
    a = make_conn("a", 1)
    await reg.register(1, a)
    await reg.join("a", [user_room(1)])
    a.state = ConnState.CLOSED

    assert await reg.targets([user_room(1)]) == []
    assert a.send({"type": "x"}) is False
    assert sent["a"] == []


def test_deliver_isolates_failing_target(make_conn, sent, caplog):
    good = make_conn("good", 1)

    def boom(frame):
        raise RuntimeError("socket gone")

    bad = Connection(connection_id="bad", push=boom, user_id=2)
    full = Connection(connection_id="full", push=lambda f: False, user_id=3)

    count = deliver([bad, full, good], {"type": "new_message"})
    assert count == 1
    assert sent["good"] == [{"type": "new_message"}]
    assert "push to bad failed" in caplog.text
