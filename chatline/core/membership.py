from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Set, Tuple

from chatline.core.store import ChatStore

log = logging.getLogger("chatline.membership")

ClockFn = Callable[[], float]


class MembershipResolver:
    """Read-through access to the friend graph and group rosters.

    Every answer is an authorization check the router consults before it
    persists or delivers anything, and those checks always hit the store.
    Group rosters used to narrow fan-out are cached for at most roster_ttl
    seconds and dropped on any join/leave seen by this process.
    """

    def __init__(self, store: ChatStore, *, roster_ttl: float = 30.0, clock: ClockFn = time.monotonic) -> None:
        self.store = store
        self.roster_ttl = roster_ttl
        self.clock = clock
        self._rosters: Dict[int, Tuple[float, frozenset]] = {}

    def addressees_for_direct(self, user_id: int) -> Set[int]:
        return {user_id}

    async def addressees_for_group(self, group_id: int) -> Set[int]:
        cached = self._rosters.get(group_id)
        if cached is not None and self.clock() - cached[0] < self.roster_ttl:
            return set(cached[1])
        members = await self.store.group_member_ids(group_id)
        log.debug("Roster for group %s reloaded (%d members)", group_id, len(members))
        self._rosters[group_id] = (self.clock(), frozenset(members))
        return set(members)

    async def are_friends(self, a: int, b: int) -> bool:
        if a == b:
            return False
        return await self.store.are_friends(a, b)

    async def is_group_member(self, user_id: int, group_id: int) -> bool:
        # authorization reads the store; the cached roster only shapes fan-out
        return await self.store.is_group_member(group_id, user_id)

    async def group_is_writable(self, group_id: int) -> bool:
        group = await self.store.get_group(group_id)
        return bool(group and group["created_by"] is not None)

    async def friends_of(self, user_id: int) -> Set[int]:
        return await self.store.friend_ids(user_id)

    async def groups_of(self, user_id: int) -> Set[int]:
        return await self.store.group_ids(user_id)

    def invalidate_group(self, group_id: Optional[int] = None) -> None:
        if group_id is None:
            self._rosters.clear()
        else:
            self._rosters.pop(group_id, None)


__all__ = ["MembershipResolver"]
