# tests/test_runtime.py
from __future__ import annotations

import asyncio

import aiosqlite
import orjson
import pytest
import pytest_asyncio
import websockets

from chatline.server.runtime import ServerRuntime, WebSocketLink


# -----------------------------
# Utilities / fixtures
# -----------------------------

@pytest_asyncio.fixture
async def runtime():
    rt = ServerRuntime({"server_id": "rt-test", "listen": "127.0.0.1:0", "db_path": ":memory:", "heartbeat_secs": 3600})
    await rt.start()
    try:
        yield rt
    finally:
        await rt.stop()


async def _send(ws, type: str, payload: dict | None = None) -> None:
    await ws.send(orjson.dumps({"type": type, "payload": payload or {}}).decode())


async def _recv(ws, type: str | None = None) -> dict:
    while True:
        frame = orjson.loads(await asyncio.wait_for(ws.recv(), timeout=5))
        if type is None or frame["type"] == type:
            return frame


# -----------------------------
# End to end over websockets
# -----------------------------

@pytest.mark.asyncio
async def test_friends_chat_over_websockets(runtime):
    alice = await runtime.store.create_user("Alice")
    bob = await runtime.store.create_user("Bob")
    await runtime.store.request_friend(alice["id"], bob["id"])
    await runtime.store.accept_friend(bob["id"], alice["id"])
    url = f"ws://127.0.0.1:{runtime.port}"

    async with websockets.connect(url) as wa, websockets.connect(url) as wb:
        await _send(wa, "authenticate", {"user_id": alice["id"]})
        assert (await _recv(wa))["type"] == "authenticated"

        await _send(wb, "authenticate", {"user_id": bob["id"]})
        assert (await _recv(wb))["type"] == "authenticated"
        online = await _recv(wa, "user_online")
        assert online["payload"]["userId"] == bob["id"]

        await _send(wa, "send_message", {"content": "hi", "receiver_id": bob["id"]})
        got = await _recv(wb, "new_message")
        assert got["payload"]["content"] == "hi"
        assert got["payload"]["sender_id"] == alice["id"]

        await wb.close()
        offline = await _recv(wa, "user_offline")
        assert offline["payload"]["userId"] == bob["id"]

    # let the server run the disconnect for alice too
    for _ in range(50):
        if len(runtime.registry) == 0:
            break
        await asyncio.sleep(0.02)
    assert len(runtime.registry) == 0
    assert await runtime.store.presence_rows() == []


@pytest.mark.asyncio
async def test_frames_are_answered_in_order(runtime):
    url = f"ws://127.0.0.1:{runtime.port}"
    async with websockets.connect(url) as ws:
        await ws.send("garbage")
        await _send(ws, "heartbeat")
        await _send(ws, "authenticate", {"user_id": 999})

        first, second, third = [await _recv(ws) for _ in range(3)]
        assert first["payload"]["code"] == "MalformedEvent"
        assert second["payload"]["code"] == "Unauthenticated"
        assert third["type"] == "auth_error"


@pytest.mark.asyncio
async def test_refresh_presence_sweeps_stale_rows(runtime):
    user = await runtime.store.create_user("Ghost")
    await runtime.store.upsert_presence("elsewhere", user["id"], "crashed-server", ts=1)

    await runtime.refresh_presence()
    assert await runtime.store.presence_rows() == []


@pytest.mark.asyncio
async def test_start_purges_rows_from_previous_run(tmp_path):
    db = str(tmp_path / "chat.db")
    first = ServerRuntime({"server_id": "same", "listen": "127.0.0.1:0", "db_path": db})
    await first.start()
    user = await first.store.create_user("Alice")
    await first.store.upsert_presence("leftover", user["id"], "same")
    await first.store.upsert_presence("foreign", user["id"], "other")
    await first.stop()

    second = ServerRuntime({"server_id": "same", "listen": "127.0.0.1:0", "db_path": db})
    await second.start()
    try:
        rows = await second.store.presence_rows()
        assert [r["connection_id"] for r in rows] == ["foreign"]
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_heartbeat_restores_presence_after_failed_write(runtime, monkeypatch):
    user = await runtime.store.create_user("Alice")
    real_upsert = runtime.store.upsert_presence
    failures = []

    async def fail_once(*args, **kwargs):
        if not failures:
            failures.append(args)
            raise aiosqlite.OperationalError("database is locked")
        return await real_upsert(*args, **kwargs)

    monkeypatch.setattr(runtime.store, "upsert_presence", fail_once)
    frames = []
    conn = runtime.lifecycle.open(lambda f: frames.append(f) or True)
    await runtime.lifecycle.authenticate(conn, user["id"])

    assert failures
    assert await runtime.registry.is_online(user["id"])
    assert await runtime.store.presence_rows(user["id"]) == []

    await runtime.refresh_presence()
    rows = await runtime.store.presence_rows(user["id"])
    assert [(r["connection_id"], r["server_id"]) for r in rows] == [(conn.connection_id, "rt-test")]

    # a sweep from elsewhere removed it; the next heartbeat puts it back
    await runtime.store.delete_presence(conn.connection_id)
    await runtime.refresh_presence()
    assert len(await runtime.store.presence_rows(user["id"])) == 1

    await runtime.lifecycle.disconnect(conn)
    await runtime.refresh_presence()
    assert await runtime.store.presence_rows(user["id"]) == []


# -----------------------------
# Outbound queue
# -----------------------------

class FakeSocket:
    remote_address = ("127.0.0.1", 5555)

    def __init__(self) -> None:
        self.sent = []

    async def send(self, text: str) -> None:
        self.sent.append(text)


@pytest.mark.asyncio
async def test_link_drops_when_queue_full(caplog):
    link = WebSocketLink(FakeSocket(), maxsize=2)
    assert link.push({"type": "a"}) is True
    assert link.push({"type": "b"}) is True
    assert link.push({"type": "c"}) is False
    assert link.dropped == 1
    assert "Outbound queue full" in caplog.text


@pytest.mark.asyncio
async def test_link_pump_writes_json_text():
    sock = FakeSocket()
    link = WebSocketLink(sock)
    link.push({"type": "new_message", "payload": {"b": 2, "a": 1}})

    task = asyncio.create_task(link.pump())
    for _ in range(20):
        if sock.sent:
            break
        await asyncio.sleep(0)
    task.cancel()

    assert sock.sent == ['{"payload":{"a":1,"b":2},"type":"new_message"}']


def test_parse_listen():
    assert ServerRuntime._parse_listen("0.0.0.0:7001") == ("0.0.0.0", 7001)
    assert ServerRuntime._parse_listen("[::1]:9000") == ("::1", 9000)
