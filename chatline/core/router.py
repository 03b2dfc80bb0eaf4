from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

import aiosqlite

from chatline.core.errors import (
    AmbiguousOrMissingTarget,
    ChatError,
    EmptyMessage,
    Forbidden,
    MalformedEvent,
    PersistenceFailure,
    Unauthenticated,
)
from chatline.core.lifecycle import ConnectionLifecycleManager
from chatline.core.membership import MembershipResolver
from chatline.core.presence import PresenceLedger
from chatline.core.proto import (
    Authenticate,
    GetOnlineUsers,
    Heartbeat,
    InboundEvent,
    JoinGroup,
    LeaveGroup,
    MessageRead,
    SendMessage,
    TypingStart,
    TypingStop,
    build_frame,
    error_frame,
    now_ms,
    parse_event,
)
from chatline.core.registry import Connection, ConnState, SessionRegistry, deliver, group_room, user_room
from chatline.core.store import ChatStore

log = logging.getLogger("chatline.router")


def _single_target(receiver_id: Optional[int], group_id: Optional[int]) -> None:
    if (receiver_id is None) == (group_id is None):
        raise AmbiguousOrMissingTarget("exactly one of receiver_id or group_id is required")


class EventRouter:
    """Validates, authorises, persists and fans out inbound events.

    Events from one connection are handled one at a time by that connection's
    task, so per-connection order is preserved. Delivery is a non-blocking
    hand-off to each target's own queue.
    """

    def __init__(
        self,
        store: ChatStore,
        registry: SessionRegistry,
        resolver: MembershipResolver,
        ledger: PresenceLedger,
        lifecycle: ConnectionLifecycleManager,
    ) -> None:
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.ledger = ledger
        self.lifecycle = lifecycle

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_raw(self, conn: Connection, raw: Union[str, bytes]) -> None:
        try:
            event = parse_event(raw)
        except MalformedEvent as err:
            log.debug("Malformed frame on %s: %s", conn.connection_id, err.detail)
            conn.send(error_frame(err))
            return
        await self.dispatch(conn, event)

    async def dispatch(self, conn: Connection, event: InboundEvent) -> None:
        """Route one event; validation errors go back to conn only."""
        if conn.closed:
            return
        try:
            await self._route(conn, event)
        except ChatError as err:
            err.ref = err.ref or event.type
            log.debug("Rejected %s on %s: %s (%s)", event.type, conn.connection_id, err.code, err.detail)
            conn.send(error_frame(err))
        except aiosqlite.Error:
            log.exception("Store failure handling %s on %s", event.type, conn.connection_id)
            conn.send(error_frame(PersistenceFailure(f"failed to handle {event.type}", ref=event.type)))

    async def _route(self, conn: Connection, event: InboundEvent) -> None:
        if not isinstance(event, Authenticate) and conn.state is not ConnState.SUBSCRIBED:
            raise Unauthenticated("not authenticated")

        match event:
            case Authenticate(user_id=user_id):
                await self.lifecycle.authenticate(conn, user_id)
            case SendMessage():
                await self.send_message(conn, event)
            case TypingStart() | TypingStop():
                await self.typing(conn, event)
            case MessageRead(message_id=message_id):
                await self.read_receipt(conn, message_id)
            case JoinGroup(group_id=group_id):
                await self.lifecycle.group_joined(conn, group_id)
            case LeaveGroup(group_id=group_id):
                await self.lifecycle.group_left(conn, group_id)
            case GetOnlineUsers():
                users = await self.ledger.online_friends(conn.user_id)
                conn.send(build_frame("online_users", {"users": users}))
            case Heartbeat():
                await self.lifecycle.touch(conn)
            case _:
                raise MalformedEvent(f"unsupported type {event.type}")

    # ------------------------------------------------------------------
    # send_message
    # ------------------------------------------------------------------

    async def send_message(self, conn: Connection, event: SendMessage) -> Dict[str, Any]:
        sender = conn.user_id
        if not event.has_body:
            raise EmptyMessage("message content or media is required")
        _single_target(event.receiver_id, event.group_id)

        if event.receiver_id is not None:
            if not await self.resolver.are_friends(sender, event.receiver_id):
                raise Forbidden(f"user {event.receiver_id} is not an accepted friend")
        else:
            if not await self.resolver.is_group_member(sender, event.group_id):
                raise Forbidden(f"not a member of group {event.group_id}")
            if not await self.resolver.group_is_writable(event.group_id):
                raise Forbidden(f"group {event.group_id} has no owner")

        try:
            message = await self.store.insert_message(
                sender,
                receiver_id=event.receiver_id,
                group_id=event.group_id,
                content=event.content,
                media_url=event.media_url,
                voice_url=event.voice_url,
                media_type=event.media_type,
                is_anonymous=event.is_anonymous,
            )
        except aiosqlite.Error as exc:
            log.exception("Message insert failed for sender %s", sender)
            raise PersistenceFailure("failed to send message") from exc

        # persisted: deliver to whoever is reachable now, even if conn has dropped meanwhile
        if event.receiver_id is not None:
            rooms = [user_room(event.receiver_id), user_room(sender)]
            only_users = {event.receiver_id, sender}
        else:
            rooms = [group_room(event.group_id), user_room(sender)]
            only_users = await self.resolver.addressees_for_group(event.group_id)
            only_users.add(sender)
        targets = await self.registry.targets(rooms, only_users=only_users)
        count = deliver(targets, build_frame("new_message", message))
        log.debug("Message %s delivered to %d connection(s)", message["id"], count)
        return message

    # ------------------------------------------------------------------
    # typing_start / typing_stop (ephemeral)
    # ------------------------------------------------------------------

    async def typing(self, conn: Connection, event: Union[TypingStart, TypingStop]) -> int:
        sender = conn.user_id
        _single_target(event.receiver_id, event.group_id)
        payload: Dict[str, Any] = {"userId": sender}
        if isinstance(event, TypingStart):
            payload["name"] = conn.profile.get("name")
            payload["avatar"] = conn.profile.get("avatar")

        if event.receiver_id is not None:
            if not await self.resolver.are_friends(sender, event.receiver_id):
                raise Forbidden(f"user {event.receiver_id} is not an accepted friend")
            room = user_room(event.receiver_id)
        else:
            if not await self.resolver.is_group_member(sender, event.group_id):
                raise Forbidden(f"not a member of group {event.group_id}")
            payload["groupId"] = event.group_id
            room = group_room(event.group_id)

        targets = await self.registry.targets([room], exclude_user=sender)
        return deliver(targets, build_frame(event.type, payload))

    # ------------------------------------------------------------------
    # message_read
    # ------------------------------------------------------------------

    async def read_receipt(self, conn: Connection, message_id: int) -> bool:
        """Mark a direct message read; the sender is notified only on the first flip."""
        message, changed = await self.store.mark_read(message_id, conn.user_id)
        if message is None:
            raise Forbidden(f"message {message_id} is not addressed to you")
        if not changed:
            return False
        frame = build_frame(
            "message_read",
            {"message_id": message_id, "reader_id": conn.user_id, "read_at": now_ms()},
        )
        targets = await self.registry.targets([user_room(message["sender_id"])])
        deliver(targets, frame)
        return True


__all__ = ["EventRouter"]
