from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from chatline.core.lifecycle import ConnectionLifecycleManager
from chatline.core.membership import MembershipResolver
from chatline.core.presence import PresenceLedger
from chatline.core.proto import Authenticate
from chatline.core.registry import Connection, SessionRegistry
from chatline.core.router import EventRouter
from chatline.core.store import ChatStore


@dataclass
class Client:
    """A connection whose outbound frames land in a list instead of a socket."""

    conn: Connection = None
    frames: List[Dict[str, Any]] = field(default_factory=list)
    accept: bool = True

    def push(self, frame: Dict[str, Any]) -> bool:
        if not self.accept:
            return False
        self.frames.append(frame)
        return True

    def of_type(self, type: str) -> List[Dict[str, Any]]:
        return [f for f in self.frames if f["type"] == type]

    def types(self) -> List[str]:
        return [f["type"] for f in self.frames]

    def clear(self) -> None:
        self.frames.clear()


@pytest_asyncio.fixture
async def store():
    s = await ChatStore(":memory:").open()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def resolver(store):
    return MembershipResolver(store, roster_ttl=30.0)


@pytest.fixture
def ledger(store):
    return PresenceLedger(store, server_id="test-server", window_secs=300.0)


@pytest.fixture
def lifecycle(store, registry, resolver, ledger):
    return ConnectionLifecycleManager(store, registry, resolver, ledger)


@pytest.fixture
def router(store, registry, resolver, ledger, lifecycle):
    return EventRouter(store, registry, resolver, ledger, lifecycle)


@pytest.fixture
def new_client(lifecycle):
    """Open an unauthenticated connection."""
    def _open(connection_id: str | None = None) -> Client:
        client = Client()
        client.conn = lifecycle.open(client.push, connection_id)
        return client
    return _open


@pytest.fixture
def connect(new_client, router):
    """Open a connection and authenticate it as user_id; frames so far are cleared."""
    async def _connect(user_id: int, connection_id: str | None = None, *, keep: bool = False) -> Client:
        client = new_client(connection_id)
        await router.dispatch(client.conn, Authenticate(user_id=user_id))
        if not keep:
            client.clear()
        return client
    return _connect


@pytest_asyncio.fixture
async def people(store):
    """Alice, Bob and Carol; Alice and Bob are accepted friends."""
    alice = await store.create_user("Alice", email="alice@example.com", avatar="a.png")
    bob = await store.create_user("Bob", email="bob@example.com", avatar="b.png")
    carol = await store.create_user("Carol", email="carol@example.com")
    await store.request_friend(alice["id"], bob["id"])
    await store.accept_friend(bob["id"], alice["id"])
    return {"alice": alice, "bob": bob, "carol": carol}
