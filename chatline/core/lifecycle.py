from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from typing import Any, Awaitable, Dict, Optional

import aiosqlite

from chatline.core.errors import Forbidden, IdentityConflict, IdentityNotFound, PersistenceFailure, PresenceReconciliationFailure
from chatline.core.membership import MembershipResolver
from chatline.core.presence import PresenceLedger, announce_offline, announce_online
from chatline.core.proto import build_frame
from chatline.core.registry import Connection, ConnState, PushFn, SessionRegistry, group_room, user_room
from chatline.core.store import ChatStore

log = logging.getLogger("chatline.lifecycle")


class ConnectionLifecycleManager:
    """Owns the per-connection state machine.

    CONNECTED -> AUTHENTICATING -> AUTHENTICATED -> SUBSCRIBED -> CLOSED

    Registry and ledger updates for one user are serialised through a per-user
    lock, so a connect racing a disconnect for the same identity always leaves
    the two views agreeing. Different users never contend.
    """

    def __init__(
        self,
        store: ChatStore,
        registry: SessionRegistry,
        resolver: MembershipResolver,
        ledger: PresenceLedger,
    ) -> None:
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.ledger = ledger
        self._user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def _reconcile(self, op: Awaitable[Any], what: str) -> None:
        try:
            await op
        except PresenceReconciliationFailure:
            log.warning("Presence %s failed; keeping in-memory state", what, exc_info=True)

    # ------------------------------------------------------------------
    # Transport connect
    # ------------------------------------------------------------------

    def open(self, push: PushFn, connection_id: Optional[str] = None) -> Connection:
        conn = Connection(connection_id=connection_id or uuid.uuid4().hex, push=push)
        log.debug("Connection %s opened", conn.connection_id)
        return conn

    # ------------------------------------------------------------------
    # CONNECTED -> AUTHENTICATING -> AUTHENTICATED -> SUBSCRIBED
    # ------------------------------------------------------------------

    async def authenticate(self, conn: Connection, user_id: int) -> Optional[Dict[str, Any]]:
        """Bind conn to user_id, reconcile presence and subscribe its rooms.

        Re-sending the identity the connection already holds only refreshes the
        presence row; it never adds a row or repeats the online broadcast.
        """
        if conn.closed:
            return None
        if conn.user_id is not None:
            if conn.user_id != user_id:
                raise IdentityConflict(f"connection already bound to user {conn.user_id}")
            await self._reconcile(self.ledger.record(conn.connection_id, user_id), "upsert")
            conn.send(self._authenticated_frame(conn, await self.registry.rooms_of(conn.connection_id)))
            return conn.profile

        conn.state = ConnState.AUTHENTICATING
        try:
            user = await self.store.get_user(user_id)
        except aiosqlite.Error as exc:
            if not conn.closed:
                conn.state = ConnState.CONNECTED
            raise PersistenceFailure("authentication failed", frame_type="auth_error") from exc
        if conn.closed:
            return None
        if user is None:
            conn.state = ConnState.CONNECTED
            raise IdentityNotFound(f"user {user_id} not found")

        async with self._user_lock(user_id):
            if conn.closed:
                return None
            conn.user_id = user_id
            conn.profile = user
            first = await self.registry.register(user_id, conn)
            if conn.closed:
                # disconnected while register waited on the registry lock
                await self.registry.unregister(conn.connection_id)
                return None
            conn.state = ConnState.AUTHENTICATED
            await self._reconcile(self.ledger.record(conn.connection_id, user_id), "upsert")
            if first:
                await self._broadcast_presence(user, online=True)

        rooms = await self.subscribe(conn)
        conn.send(self._authenticated_frame(conn, rooms))
        log.info("User %s authenticated on %s", user_id, conn.connection_id)
        return user

    async def subscribe(self, conn: Connection) -> set:
        if conn.state is not ConnState.AUTHENTICATED:
            return set()
        rooms = {user_room(conn.user_id)}
        try:
            rooms.update(group_room(gid) for gid in await self.resolver.groups_of(conn.user_id))
        except aiosqlite.Error:
            log.warning("Group lookup failed for %s; inbox only", conn.user_id, exc_info=True)
        if conn.closed:
            return set()
        await self.registry.join(conn.connection_id, rooms)
        conn.state = ConnState.SUBSCRIBED
        log.debug("Connection %s subscribed to %d room(s)", conn.connection_id, len(rooms))
        return rooms

    def _authenticated_frame(self, conn: Connection, rooms) -> Dict[str, Any]:
        return build_frame("authenticated", {"user_id": conn.user_id, "rooms": sorted(rooms)})

    # ------------------------------------------------------------------
    # SUBSCRIBED --group_joined / group_left--> SUBSCRIBED
    # ------------------------------------------------------------------

    async def group_joined(self, conn: Connection, group_id: int) -> bool:
        if not await self.resolver.is_group_member(conn.user_id, group_id):
            raise Forbidden(f"not a member of group {group_id}")
        self.resolver.invalidate_group(group_id)
        added = await self.registry.join(conn.connection_id, [group_room(group_id)])
        conn.send(build_frame("group_joined", {"group_id": group_id}))
        return bool(added)

    async def group_left(self, conn: Connection, group_id: int) -> bool:
        left = await self.registry.leave(conn.connection_id, group_room(group_id))
        conn.send(build_frame("group_left", {"group_id": group_id}))
        return left

    async def membership_changed(self, user_id: int, group_id: int, joined: bool) -> int:
        """Apply a roster change made elsewhere to every live connection of user_id."""
        self.resolver.invalidate_group(group_id)
        room = group_room(group_id)
        changed = 0
        for cid in await self.registry.connections_for(user_id):
            conn = await self.registry.get(cid)
            if conn is None or conn.state is not ConnState.SUBSCRIBED:
                continue
            if joined:
                changed += len(await self.registry.join(cid, [room]))
            elif await self.registry.leave(cid, room):
                changed += 1
        return changed

    async def touch(self, conn: Connection) -> None:
        await self._reconcile(self.ledger.refresh([(conn.connection_id, conn.user_id)]), "refresh")

    # ------------------------------------------------------------------
    # any --disconnect--> CLOSED
    # ------------------------------------------------------------------

    async def disconnect(self, conn: Connection) -> None:
        """Tear down immediately; reconcile registry and ledger for the owning user."""
        if conn.closed:
            return
        conn.state = ConnState.CLOSED
        user_id = conn.user_id
        if user_id is None:
            await self.registry.unregister(conn.connection_id)
            log.debug("Connection %s closed before authenticating", conn.connection_id)
            return

        async with self._user_lock(user_id):
            _, last = await self.registry.unregister(conn.connection_id)
            await self._reconcile(self.ledger.drop(conn.connection_id), "delete")
            if last:
                await self._broadcast_presence(conn.profile or {"id": user_id}, online=False)
        log.info("User %s disconnected from %s%s", user_id, conn.connection_id, " (offline)" if last else "")

    async def _broadcast_presence(self, user: Dict[str, Any], *, online: bool) -> None:
        try:
            friends = await self.resolver.friends_of(user["id"])
        except aiosqlite.Error:
            log.warning("Friend lookup failed for %s; skipping presence broadcast", user["id"], exc_info=True)
            return
        online_friends = await self.registry.online_among(friends)
        if online:
            await announce_online(user, friends=online_friends, registry=self.registry)
        else:
            await announce_offline(user, friends=online_friends, registry=self.registry)


__all__ = ["ConnectionLifecycleManager"]
