from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

"""
Session registry
----------------
In-memory routing table for this process:
  • user_id       -> set of connection ids (multi-device)
  • connection id -> Connection (state, owning user, push primitive)
  • room          -> set of connection ids subscribed to it

Rooms are derived names, never persisted: "user:<id>" is a personal inbox,
"group:<id>" a group room.

All mutations happen under one asyncio.Lock. The lock is never held across
I/O; callers take a snapshot of the targets and push outside of it.
"""

log = logging.getLogger("chatline.registry")

PushFn = Callable[[Dict[str, Any]], bool]   # non-blocking hand-off to the transport queue


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def group_room(group_id: int) -> str:
    return f"group:{group_id}"


class ConnState(str, enum.Enum):
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


@dataclass(slots=True, eq=False)
class Connection:
    connection_id: str
    push: PushFn
    user_id: Optional[int] = None
    state: ConnState = ConnState.CONNECTED
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def closed(self) -> bool:
        return self.state is ConnState.CLOSED

    def send(self, frame: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        return self.push(frame)


class SessionRegistry:
    """Bidirectional user <-> connection map plus the room index."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[int, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._rooms_of: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, user_id: int, conn: Connection) -> bool:
        """Bind conn to user_id. Returns True if this is the user's first live connection."""
        async with self._lock:
            owned = self._by_user.setdefault(user_id, set())
            first = not owned
            owned.add(conn.connection_id)
            self._connections[conn.connection_id] = conn
            self._rooms_of.setdefault(conn.connection_id, set())
            return first

    async def unregister(self, connection_id: str) -> Tuple[Optional[int], bool]:
        """Drop a connection and all its room subscriptions.

        Returns (user_id, was_last); user_id is None if the connection was unknown.
        """
        async with self._lock:
            conn = self._connections.pop(connection_id, None)
            for room in self._rooms_of.pop(connection_id, set()):
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
            if conn is None or conn.user_id is None:
                return None, False
            owned = self._by_user.get(conn.user_id)
            if owned is None:
                return conn.user_id, False
            owned.discard(connection_id)
            if owned:
                return conn.user_id, False
            del self._by_user[conn.user_id]
            return conn.user_id, True

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join(self, connection_id: str, rooms: Iterable[str]) -> Set[str]:
        """Subscribe a registered connection; returns the rooms newly joined."""
        async with self._lock:
            if connection_id not in self._connections:
                return set()
            subscribed = self._rooms_of[connection_id]
            added = set()
            for room in rooms:
                if room in subscribed:
                    continue
                subscribed.add(room)
                self._rooms.setdefault(room, set()).add(connection_id)
                added.add(room)
            return added

    async def leave(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            subscribed = self._rooms_of.get(connection_id)
            if not subscribed or room not in subscribed:
                return False
            subscribed.discard(room)
            members = self._rooms.get(room, set())
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room, None)
            return True

    async def rooms_of(self, connection_id: str) -> Set[str]:
        async with self._lock:
            return set(self._rooms_of.get(connection_id, ()))

    # ------------------------------------------------------------------
    # Lookups (snapshots)
    # ------------------------------------------------------------------

    async def connections_for(self, user_id: int) -> Set[str]:
        async with self._lock:
            return set(self._by_user.get(user_id, ()))

    async def is_online(self, user_id: int) -> bool:
        async with self._lock:
            return bool(self._by_user.get(user_id))

    async def online_among(self, user_ids: Iterable[int]) -> Set[int]:
        async with self._lock:
            return {uid for uid in user_ids if self._by_user.get(uid)}

    async def get(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            return self._connections.get(connection_id)

    async def targets(
        self,
        rooms: Iterable[str] = (),
        *,
        users: Iterable[int] = (),
        only_users: Optional[Set[int]] = None,
        exclude_user: Optional[int] = None,
    ) -> List[Connection]:
        """Resolve a fan-out set to live connections, each at most once."""
        async with self._lock:
            ids: Set[str] = set()
            for room in rooms:
                ids.update(self._rooms.get(room, ()))
            for uid in users:
                ids.update(self._by_user.get(uid, ()))
            out = []
            for cid in sorted(ids):
                conn = self._connections.get(cid)
                if conn is None or conn.closed:
                    continue
                if only_users is not None and conn.user_id not in only_users:
                    continue
                if exclude_user is not None and conn.user_id == exclude_user:
                    continue
                out.append(conn)
            return out

    async def live_connections(self) -> List[Connection]:
        async with self._lock:
            return [c for c in self._connections.values() if not c.closed]

    def __len__(self) -> int:
        return len(self._connections)


def deliver(targets: Iterable[Connection], frame: Dict[str, Any]) -> int:
    """Hand frame to each target's queue independently; returns how many accepted it."""
    delivered = 0
    for conn in targets:
        try:
            if conn.send(frame):
                delivered += 1
        except Exception:
            log.exception("push to %s failed", conn.connection_id)
    return delivered


__all__ = [
    "ConnState",
    "Connection",
    "SessionRegistry",
    "PushFn",
    "user_room",
    "group_room",
    "deliver",
]
