from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """Base for every error reported back to the originating connection."""

    code = "ERROR"
    frame_type = "error"

    def __init__(self, detail: str = "", *, ref: Optional[str] = None, frame_type: Optional[str] = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.ref = ref
        if frame_type is not None:
            self.frame_type = frame_type

    def to_payload(self) -> dict:
        payload = {"code": self.code, "detail": self.detail}
        if self.ref:
            payload["ref"] = self.ref
        return payload


class Unauthenticated(ChatError):
    code = "Unauthenticated"


class IdentityNotFound(ChatError):
    code = "IdentityNotFound"
    frame_type = "auth_error"


class IdentityConflict(ChatError):
    code = "IdentityConflict"
    frame_type = "auth_error"


class EmptyMessage(ChatError):
    code = "EmptyMessage"


class AmbiguousOrMissingTarget(ChatError):
    code = "AmbiguousOrMissingTarget"


class Forbidden(ChatError):
    code = "Forbidden"


class MalformedEvent(ChatError):
    code = "MalformedEvent"


class PersistenceFailure(ChatError):
    code = "PersistenceFailure"


class PresenceReconciliationFailure(ChatError):
    # logged only, never sent to a client
    code = "PresenceReconciliationFailure"


__all__ = [
    "ChatError",
    "Unauthenticated",
    "IdentityNotFound",
    "IdentityConflict",
    "EmptyMessage",
    "AmbiguousOrMissingTarget",
    "Forbidden",
    "MalformedEvent",
    "PersistenceFailure",
    "PresenceReconciliationFailure",
]
