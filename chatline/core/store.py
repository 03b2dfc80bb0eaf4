from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

import aiosqlite

from chatline.core.errors import Forbidden
from chatline.core.proto import now_ms

"""
ChatStore - aiosqlite-backed relational store
---------------------------------------------
Tables:
1. users          → identities and display attributes (name, avatar).
2. friends        → one edge per pair (either direction), pending or accepted.
3. chat_groups    → group metadata; created_by is NULL while a group is ownerless.
4. group_members  → rosters; the creator is always inserted as first member.
5. messages       → immutable rows, exactly one of receiver_id / group_id.
6. online_users   → presence ledger, one row per live connection.

Every write runs under a single asyncio.Lock so a failing statement can be
rolled back without touching another task's pending work.
"""

log = logging.getLogger("chatline.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT NOT NULL,
    email      TEXT UNIQUE,
    avatar     TEXT,
    created_at INT  NOT NULL
);

CREATE TABLE IF NOT EXISTS friends(
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id    INT  NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    friend_id  INT  NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    status     TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'accepted')),
    created_at INT  NOT NULL,
    CHECK (user_id <> friend_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS friends_pair
    ON friends(MIN(user_id, friend_id), MAX(user_id, friend_id));

CREATE TABLE IF NOT EXISTS chat_groups(
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    description TEXT DEFAULT '',
    image       TEXT DEFAULT '',
    created_by  INT REFERENCES users(id) ON DELETE SET NULL,
    created_at  INT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_members(
    group_id  INT NOT NULL REFERENCES chat_groups(id) ON DELETE CASCADE,
    user_id   INT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    joined_at INT NOT NULL,
    PRIMARY KEY (group_id, user_id)
);
CREATE INDEX IF NOT EXISTS group_members_user ON group_members(user_id);

CREATE TABLE IF NOT EXISTS messages(
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    sender_id    INT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    receiver_id  INT REFERENCES users(id) ON DELETE CASCADE,
    group_id     INT REFERENCES chat_groups(id) ON DELETE CASCADE,
    content      TEXT NOT NULL DEFAULT '',
    media_url    TEXT,
    voice_url    TEXT,
    media_type   TEXT CHECK (media_type IN ('image', 'video', 'document', 'voice')),
    is_anonymous INT NOT NULL DEFAULT 0,
    is_read      INT NOT NULL DEFAULT 0,
    timestamp    INT NOT NULL,
    CHECK ((receiver_id IS NOT NULL AND group_id IS NULL) OR (receiver_id IS NULL AND group_id IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS messages_receiver ON messages(receiver_id);
CREATE INDEX IF NOT EXISTS messages_group ON messages(group_id);

CREATE TABLE IF NOT EXISTS online_users(
    connection_id TEXT PRIMARY KEY,
    user_id       INT  NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    server_id     TEXT NOT NULL,
    last_seen     INT  NOT NULL
);
CREATE INDEX IF NOT EXISTS online_users_user ON online_users(user_id);
"""

_MESSAGE_SELECT = """
SELECT m.*, u.name AS sender_name, u.avatar AS sender_avatar
FROM messages m
JOIN users u ON u.id = m.sender_id
WHERE m.id = ?
"""


_PRESENCE_UPSERT = """
INSERT INTO online_users(connection_id, user_id, server_id, last_seen) VALUES(?,?,?,?)
ON CONFLICT(connection_id) DO UPDATE SET
    user_id = excluded.user_id,
    server_id = excluded.server_id,
    last_seen = excluded.last_seen
"""


def _message_row(row: aiosqlite.Row) -> Dict[str, Any]:
    msg = dict(row)
    msg["is_anonymous"] = bool(msg["is_anonymous"])
    msg["is_read"] = bool(msg["is_read"])
    return msg


class ChatStore:
    """Persistent SQLite store for users, relationships, messages and presence."""

    def __init__(self, path: str = "chatline.db") -> None:
        self.path = path
        self.db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> "ChatStore":
        self.db = await aiosqlite.connect(self.path)
        self.db.row_factory = aiosqlite.Row
        await self.db.execute("PRAGMA foreign_keys=ON")
        await self.db.executescript(SCHEMA)
        await self.db.commit()
        log.debug("store opened at %s", self.path)
        return self

    async def close(self) -> None:
        if self.db is not None:
            await self.db.close()
            self.db = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._write_lock:
            try:
                yield self.db
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    async def _one(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self.db.execute(sql, tuple(params)) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def _all(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        async with self.db.execute(sql, tuple(params)) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def _ids(self, sql: str, params: Iterable[Any] = ()) -> Set[int]:
        async with self.db.execute(sql, tuple(params)) as cur:
            rows = await cur.fetchall()
        return {r[0] for r in rows}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, name: str, email: Optional[str] = None, avatar: Optional[str] = None) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValueError("name is required")
        async with self.transaction() as db:
            cur = await db.execute(
                "INSERT INTO users(name, email, avatar, created_at) VALUES(?,?,?,?)",
                (name.strip(), email, avatar, now_ms()),
            )
            user_id = cur.lastrowid
        return await self.get_user(user_id)

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self._one("SELECT id, name, email, avatar, created_at FROM users WHERE id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Friendships
    # ------------------------------------------------------------------

    async def friendship(self, a: int, b: int) -> Optional[Dict[str, Any]]:
        return await self._one(
            "SELECT * FROM friends WHERE (user_id = ? AND friend_id = ?) OR (user_id = ? AND friend_id = ?)",
            (a, b, b, a),
        )

    async def request_friend(self, requester_id: int, addressee_id: int) -> Dict[str, Any]:
        if requester_id == addressee_id:
            raise ValueError("cannot send friend request to yourself")
        for uid in (requester_id, addressee_id):
            if await self.get_user(uid) is None:
                raise LookupError(f"user {uid} not found")
        existing = await self.friendship(requester_id, addressee_id)
        if existing:
            if existing["status"] == "accepted":
                raise ValueError("already friends")
            raise ValueError("friend request already sent")
        try:
            async with self.transaction() as db:
                cur = await db.execute(
                    "INSERT INTO friends(user_id, friend_id, status, created_at) VALUES(?,?,?,?)",
                    (requester_id, addressee_id, "pending", now_ms()),
                )
                edge_id = cur.lastrowid
        except aiosqlite.IntegrityError as exc:
            # a crossing request from the other side landed first
            raise ValueError("friend request already exists") from exc
        return await self._one("SELECT * FROM friends WHERE id = ?", (edge_id,))

    async def accept_friend(self, accepter_id: int, requester_id: int) -> bool:
        """Only the addressee of a pending edge may accept it."""
        async with self.transaction() as db:
            cur = await db.execute(
                "UPDATE friends SET status = 'accepted' WHERE user_id = ? AND friend_id = ? AND status = 'pending'",
                (requester_id, accepter_id),
            )
            return cur.rowcount > 0

    async def reject_friend(self, rejecter_id: int, requester_id: int) -> bool:
        # rejection removes the edge entirely
        async with self.transaction() as db:
            cur = await db.execute(
                "DELETE FROM friends WHERE user_id = ? AND friend_id = ? AND status = 'pending'",
                (requester_id, rejecter_id),
            )
            return cur.rowcount > 0

    async def remove_friend(self, a: int, b: int) -> bool:
        async with self.transaction() as db:
            cur = await db.execute(
                "DELETE FROM friends WHERE (user_id = ? AND friend_id = ?) OR (user_id = ? AND friend_id = ?)",
                (a, b, b, a),
            )
            return cur.rowcount > 0

    async def are_friends(self, a: int, b: int) -> bool:
        edge = await self.friendship(a, b)
        return bool(edge and edge["status"] == "accepted")

    async def friend_ids(self, user_id: int) -> Set[int]:
        return await self._ids(
            """
            SELECT CASE WHEN f.user_id = ? THEN f.friend_id ELSE f.user_id END
            FROM friends f
            WHERE (f.user_id = ? OR f.friend_id = ?) AND f.status = 'accepted'
            """,
            (user_id, user_id, user_id),
        )

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def create_group(self, creator_id: int, name: str, description: str = "", image: str = "") -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValueError("group name is required")
        if await self.get_user(creator_id) is None:
            raise LookupError(f"user {creator_id} not found")
        now = now_ms()
        async with self.transaction() as db:
            cur = await db.execute(
                "INSERT INTO chat_groups(name, description, image, created_by, created_at) VALUES(?,?,?,?,?)",
                (name.strip(), description or "", image or "", creator_id, now),
            )
            group_id = cur.lastrowid
            await db.execute(
                "INSERT INTO group_members(group_id, user_id, joined_at) VALUES(?,?,?)",
                (group_id, creator_id, now),
            )
        return await self.get_group(group_id)

    async def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        return await self._one("SELECT * FROM chat_groups WHERE id = ?", (group_id,))

    async def add_group_member(self, group_id: int, user_id: int) -> bool:
        group = await self.get_group(group_id)
        if group is None:
            raise LookupError(f"group {group_id} not found")
        if group["created_by"] is None:
            raise Forbidden(f"group {group_id} is ownerless")
        async with self.transaction() as db:
            cur = await db.execute(
                "INSERT OR IGNORE INTO group_members(group_id, user_id, joined_at) VALUES(?,?,?)",
                (group_id, user_id, now_ms()),
            )
            return cur.rowcount > 0

    async def remove_group_member(self, group_id: int, user_id: int) -> Tuple[bool, Optional[int]]:
        """Remove a member; returns (removed, owner_after).

        A departing owner hands the group to the longest-standing remaining member;
        with nobody left the group becomes ownerless (created_by NULL).
        """
        async with self.transaction() as db:
            cur = await db.execute(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            )
            async with db.execute("SELECT created_by FROM chat_groups WHERE id = ?", (group_id,)) as c:
                row = await c.fetchone()
            owner = row[0] if row else None
            if cur.rowcount == 0:
                return False, owner
            if owner == user_id:
                async with db.execute(
                    "SELECT user_id FROM group_members WHERE group_id = ? ORDER BY joined_at, rowid LIMIT 1",
                    (group_id,),
                ) as c:
                    nxt = await c.fetchone()
                owner = nxt[0] if nxt else None
                await db.execute("UPDATE chat_groups SET created_by = ? WHERE id = ?", (owner, group_id))
                if owner is None:
                    log.info("group %s is now ownerless", group_id)
            return True, owner

    async def assign_group_owner(self, group_id: int, user_id: int) -> None:
        if await self.get_group(group_id) is None:
            raise LookupError(f"group {group_id} not found")
        if await self.get_user(user_id) is None:
            raise LookupError(f"user {user_id} not found")
        async with self.transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO group_members(group_id, user_id, joined_at) VALUES(?,?,?)",
                (group_id, user_id, now_ms()),
            )
            await db.execute("UPDATE chat_groups SET created_by = ? WHERE id = ?", (user_id, group_id))

    async def group_ids(self, user_id: int) -> Set[int]:
        return await self._ids("SELECT group_id FROM group_members WHERE user_id = ?", (user_id,))

    async def group_member_ids(self, group_id: int) -> Set[int]:
        return await self._ids("SELECT user_id FROM group_members WHERE group_id = ?", (group_id,))

    async def is_group_member(self, group_id: int, user_id: int) -> bool:
        row = await self._one(
            "SELECT 1 AS member FROM group_members WHERE group_id = ? AND user_id = ?", (group_id, user_id)
        )
        return row is not None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def insert_message(
        self,
        sender_id: int,
        *,
        receiver_id: Optional[int] = None,
        group_id: Optional[int] = None,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        voice_url: Optional[str] = None,
        media_type: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> Dict[str, Any]:
        """Persist a message and return it hydrated with sender display attributes."""
        async with self.transaction() as db:
            cur = await db.execute(
                """
                INSERT INTO messages
                    (sender_id, receiver_id, group_id, content, media_url, voice_url, media_type, is_anonymous, timestamp)
                VALUES (?,?,?,?,?,?,?,?,?)
                """,
                (
                    sender_id,
                    receiver_id,
                    group_id,
                    content or "",
                    media_url,
                    voice_url,
                    media_type,
                    int(bool(is_anonymous)),
                    now_ms(),
                ),
            )
            message_id = cur.lastrowid
            async with db.execute(_MESSAGE_SELECT, (message_id,)) as c:
                row = await c.fetchone()
        return _message_row(row)

    async def get_message(self, message_id: int) -> Optional[Dict[str, Any]]:
        async with self.db.execute(_MESSAGE_SELECT, (message_id,)) as cur:
            row = await cur.fetchone()
        return _message_row(row) if row else None

    async def mark_read(self, message_id: int, reader_id: int) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Flip is_read false→true for a direct message addressed to reader_id.

        Returns (message, changed); message is None if it does not exist or is not
        addressed to the reader.
        """
        async with self.transaction() as db:
            cur = await db.execute(
                "UPDATE messages SET is_read = 1 WHERE id = ? AND receiver_id = ? AND is_read = 0",
                (message_id, reader_id),
            )
            changed = cur.rowcount > 0
            async with db.execute(_MESSAGE_SELECT, (message_id,)) as c:
                row = await c.fetchone()
        if row is None or row["receiver_id"] != reader_id:
            return None, False
        return _message_row(row), changed

    # ------------------------------------------------------------------
    # Presence ledger rows
    # ------------------------------------------------------------------

    async def upsert_presence(self, connection_id: str, user_id: int, server_id: str, ts: Optional[int] = None) -> None:
        async with self.transaction() as db:
            await db.execute(_PRESENCE_UPSERT, (connection_id, user_id, server_id, now_ms() if ts is None else ts))

    async def refresh_presence(
        self, entries: Iterable[Tuple[str, int]], server_id: str, ts: Optional[int] = None
    ) -> int:
        """Upsert a row for every (connection_id, user_id); rows lost to a failed write or a sweep come back."""
        stamp = now_ms() if ts is None else ts
        rows = [(cid, uid, server_id, stamp) for cid, uid in entries]
        if not rows:
            return 0
        async with self.transaction() as db:
            await db.executemany(_PRESENCE_UPSERT, rows)
        return len(rows)

    async def delete_presence(self, connection_id: str) -> bool:
        async with self.transaction() as db:
            cur = await db.execute("DELETE FROM online_users WHERE connection_id = ?", (connection_id,))
            return cur.rowcount > 0

    async def purge_presence_server(self, server_id: str) -> int:
        async with self.transaction() as db:
            cur = await db.execute("DELETE FROM online_users WHERE server_id = ?", (server_id,))
            return cur.rowcount

    async def purge_stale_presence(self, cutoff_ms: int) -> int:
        async with self.transaction() as db:
            cur = await db.execute("DELETE FROM online_users WHERE last_seen < ?", (cutoff_ms,))
            return cur.rowcount

    async def presence_rows(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        if user_id is None:
            return await self._all("SELECT * FROM online_users ORDER BY user_id, connection_id")
        return await self._all(
            "SELECT * FROM online_users WHERE user_id = ? ORDER BY connection_id", (user_id,)
        )

    async def online_friends(self, user_id: int, since_ms: int) -> List[Dict[str, Any]]:
        return await self._all(
            """
            SELECT u.id, u.name, u.avatar, MAX(o.last_seen) AS last_seen
            FROM friends f
            JOIN users u ON u.id = CASE WHEN f.user_id = ? THEN f.friend_id ELSE f.user_id END
            JOIN online_users o ON o.user_id = u.id
            WHERE (f.user_id = ? OR f.friend_id = ?) AND f.status = 'accepted' AND o.last_seen >= ?
            GROUP BY u.id, u.name, u.avatar
            ORDER BY u.name
            """,
            (user_id, user_id, user_id, since_ms),
        )


__all__ = ["ChatStore", "SCHEMA"]
