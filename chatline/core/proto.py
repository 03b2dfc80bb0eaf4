from __future__ import annotations

import time
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from chatline.core.errors import MalformedEvent
from chatline.utils.canonical import loads


# ---------------------------------------------------------------------------
# Envelope model (transport framing)
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """JSON frame carried over the websocket: {type, ts, payload}."""

    type: str
    ts: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


# ---------------------------------------------------------------------------
# Inbound events: closed set, discriminated on "type"
# ---------------------------------------------------------------------------

class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class Authenticate(_Event):
    type: Literal["authenticate"] = "authenticate"
    user_id: int


class SendMessage(_Event):
    type: Literal["send_message"] = "send_message"
    content: Optional[str] = None
    media_url: Optional[str] = None
    voice_url: Optional[str] = None
    media_type: Optional[Literal["image", "video", "document", "voice"]] = None
    receiver_id: Optional[int] = None
    group_id: Optional[int] = None
    is_anonymous: bool = False

    @property
    def has_body(self) -> bool:
        return bool(self.content or self.media_url or self.voice_url)


class TypingStart(_Event):
    type: Literal["typing_start"] = "typing_start"
    receiver_id: Optional[int] = None
    group_id: Optional[int] = None


class TypingStop(_Event):
    type: Literal["typing_stop"] = "typing_stop"
    receiver_id: Optional[int] = None
    group_id: Optional[int] = None


class MessageRead(_Event):
    type: Literal["message_read"] = "message_read"
    message_id: int


class JoinGroup(_Event):
    type: Literal["join_group"] = "join_group"
    group_id: int


class LeaveGroup(_Event):
    type: Literal["leave_group"] = "leave_group"
    group_id: int


class GetOnlineUsers(_Event):
    type: Literal["get_online_users"] = "get_online_users"


class Heartbeat(_Event):
    type: Literal["heartbeat"] = "heartbeat"


InboundEvent = Annotated[
    Union[
        Authenticate,
        SendMessage,
        TypingStart,
        TypingStop,
        MessageRead,
        JoinGroup,
        LeaveGroup,
        GetOnlineUsers,
        Heartbeat,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)

EVENT_TYPES = frozenset(
    {
        "authenticate",
        "send_message",
        "typing_start",
        "typing_stop",
        "message_read",
        "join_group",
        "leave_group",
        "get_online_users",
        "heartbeat",
    }
)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def parse_event(raw: Union[str, bytes, Dict[str, Any]]) -> InboundEvent:
    """Decode one inbound frame into its typed event, or raise MalformedEvent."""

    try:
        obj = raw if isinstance(raw, dict) else loads(raw)
    except ValueError as exc:
        raise MalformedEvent(f"invalid json: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedEvent("frame must be an object")

    try:
        env = Envelope(**obj)
    except (TypeError, ValidationError) as exc:
        raise MalformedEvent("invalid envelope") from exc

    if env.type not in EVENT_TYPES:
        raise MalformedEvent(f"unsupported type {env.type}", ref=env.type)

    try:
        return EVENT_ADAPTER.validate_python({**env.payload, "type": env.type})
    except ValidationError as exc:
        fields = ",".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedEvent(f"invalid payload: {fields}", ref=env.type) from exc


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------

def build_frame(type: str, payload: Dict[str, Any], *, ts: int | None = None) -> Dict[str, Any]:
    return {
        "type": type,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def error_frame(err) -> Dict[str, Any]:
    return build_frame(err.frame_type, err.to_payload())


__all__ = [
    "Envelope",
    "Authenticate",
    "SendMessage",
    "TypingStart",
    "TypingStop",
    "MessageRead",
    "JoinGroup",
    "LeaveGroup",
    "GetOnlineUsers",
    "Heartbeat",
    "InboundEvent",
    "EVENT_ADAPTER",
    "EVENT_TYPES",
    "now_ms",
    "parse_event",
    "build_frame",
    "error_frame",
]
