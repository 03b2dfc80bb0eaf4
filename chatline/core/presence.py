from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from chatline.core.errors import PresenceReconciliationFailure
from chatline.core.proto import build_frame, now_ms
from chatline.core.registry import SessionRegistry, deliver, user_room
from chatline.core.store import ChatStore


"""
Presence
--------
Two views of the same fact (liveness):
  • SessionRegistry   - in-process routing table, authoritative for delivery
  • PresenceLedger    - online_users rows, consulted by everything outside this process

Rules:
  1) one ledger row per live connection, keyed by connection id (atomic upsert)
  2) a row is deleted when its connection closes
  3) rows carry last_seen; anything older than the liveness window is "assume offline";
     the heartbeat rewrites a row for every registered connection, so a lost write heals
  4) a ledger failure never aborts the transition that triggered it; the caller logs
     PresenceReconciliationFailure and trusts the registry

Online/offline signals go to each online accepted friend's personal room, and only on
the user's first-connection / last-connection edges.
"""


log = logging.getLogger("chatline.presence")


class PresenceLedger:
    """Persisted record of live connections for this server."""

    def __init__(self, store: ChatStore, *, server_id: str, window_secs: float = 300.0) -> None:
        self.store = store
        self.server_id = server_id
        self.window_ms = int(window_secs * 1000)

    def cutoff(self, now: Optional[int] = None) -> int:
        return (now_ms() if now is None else now) - self.window_ms

    async def record(self, connection_id: str, user_id: int) -> None:
        try:
            await self.store.upsert_presence(connection_id, user_id, self.server_id)
        except aiosqlite.Error as exc:
            raise PresenceReconciliationFailure(f"upsert {connection_id}: {exc}") from exc

    async def drop(self, connection_id: str) -> bool:
        try:
            return await self.store.delete_presence(connection_id)
        except aiosqlite.Error as exc:
            raise PresenceReconciliationFailure(f"delete {connection_id}: {exc}") from exc

    async def refresh(self, entries: Iterable[Tuple[str, int]]) -> int:
        """Re-assert a row for each live (connection_id, user_id) and bump its last_seen."""
        try:
            return await self.store.refresh_presence(entries, self.server_id)
        except aiosqlite.Error as exc:
            raise PresenceReconciliationFailure(f"refresh: {exc}") from exc

    async def sweep(self, now: Optional[int] = None) -> int:
        """Delete rows nobody refreshed within the window (crashed peers, lost disconnects)."""
        try:
            removed = await self.store.purge_stale_presence(self.cutoff(now))
        except aiosqlite.Error as exc:
            raise PresenceReconciliationFailure(f"sweep: {exc}") from exc
        if removed:
            log.info("Swept %d stale presence row(s)", removed)
        return removed

    async def purge_own(self) -> int:
        """Remove rows left behind by a previous run of this server id."""
        try:
            removed = await self.store.purge_presence_server(self.server_id)
        except aiosqlite.Error as exc:
            raise PresenceReconciliationFailure(f"purge {self.server_id}: {exc}") from exc
        if removed:
            log.warning("Purged %d presence row(s) left by server %s", removed, self.server_id)
        return removed

    async def online_friends(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.store.online_friends(user_id, self.cutoff())


# -------------------------------
# Presence-change fan-out
# -------------------------------

def _presence_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"userId": user["id"], "name": user.get("name"), "avatar": user.get("avatar")}


async def announce_online(user: Dict[str, Any], *, friends: Iterable[int], registry: SessionRegistry) -> int:
    """Send user_online to every connection of every online friend. Returns deliveries."""
    frame = build_frame("user_online", _presence_payload(user))
    targets = await registry.targets([user_room(fid) for fid in friends], exclude_user=user["id"])
    count = deliver(targets, frame)
    log.debug("Announced %s online to %d connection(s)", user["id"], count)
    return count


async def announce_offline(user: Dict[str, Any], *, friends: Iterable[int], registry: SessionRegistry) -> int:
    frame = build_frame("user_offline", _presence_payload(user))
    targets = await registry.targets([user_room(fid) for fid in friends], exclude_user=user["id"])
    count = deliver(targets, frame)
    log.debug("Announced %s offline to %d connection(s)", user["id"], count)
    return count


__all__ = ["PresenceLedger", "announce_online", "announce_offline"]
