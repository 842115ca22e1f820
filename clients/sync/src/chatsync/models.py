"""Conversation, message and partner records plus their wire parsers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .roles import Role

PHASE_DISCONNECTED = "disconnected"
PHASE_CONNECTING = "connecting"
PHASE_CONNECTED = "connected"
PHASE_ERROR = "error"


class PayloadError(ValueError):
    """Raised when a REST or realtime payload does not have the expected shape."""


@dataclass(frozen=True)
class Identity:
    user_id: int
    name: str
    role: Role


@dataclass(frozen=True)
class ChatPartner:
    user_id: int
    name: str
    role: Role


@dataclass(frozen=True)
class LastMessage:
    text: str
    created_at: datetime
    is_sender: bool


@dataclass(frozen=True)
class Message:
    """A delivered message; only the read flag and read time ever change."""

    message_id: int
    sender_id: int
    receiver_id: int
    body: str
    created_at: datetime
    is_read: bool = False
    read_at: Optional[datetime] = None

    def partner_of(self, self_id: int) -> int:
        """Return the id of the other party as seen by ``self_id``."""

        return self.receiver_id if self.sender_id == self_id else self.sender_id

    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.message_id)


@dataclass
class Conversation:
    partner_id: int
    partner_name: str
    partner_role: Role
    last_message: Optional[LastMessage] = None
    unread_count: int = 0

    def last_activity(self) -> Optional[datetime]:
        if self.last_message is None:
            return None
        return self.last_message.created_at


@dataclass
class ConnectionState:
    phase: str = PHASE_DISCONNECTED
    last_error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.phase == PHASE_CONNECTED


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""

    if isinstance(value, bool):
        raise PayloadError("timestamp must be a string or number")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str) or not value:
        raise PayloadError("timestamp must be a string or number")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise PayloadError(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise PayloadError(f"{key} must be an integer")
    return value


def _require_dict(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise PayloadError(f"{what} must be a JSON object")
    return payload


def message_from_payload(payload: Any) -> Message:
    data = _require_dict(payload, "message")
    body = data.get("message", data.get("body"))
    if not isinstance(body, str):
        raise PayloadError("message text must be a string")
    created_raw = data.get("createdAt", data.get("created_at"))
    read_raw = data.get("read_at")
    return Message(
        message_id=_require_int(data, "message_id"),
        sender_id=_require_int(data, "sender_id"),
        receiver_id=_require_int(data, "receiver_id"),
        body=body,
        created_at=parse_timestamp(created_raw),
        is_read=bool(data.get("is_read", False)),
        read_at=parse_timestamp(read_raw) if read_raw is not None else None,
    )


def partner_from_payload(payload: Any) -> ChatPartner:
    data = _require_dict(payload, "partner")
    return ChatPartner(
        user_id=_require_int(data, "user_id"),
        name=str(data.get("name") or ""),
        role=Role.from_tag(data.get("role")),
    )


def conversation_from_payload(payload: Any) -> Conversation:
    data = _require_dict(payload, "conversation")
    last_raw = data.get("last_message")
    last_message = None
    if last_raw is not None:
        last = _require_dict(last_raw, "last_message")
        text = last.get("message")
        if not isinstance(text, str):
            raise PayloadError("last_message.message must be a string")
        last_message = LastMessage(
            text=text,
            created_at=parse_timestamp(last.get("created_at", last.get("createdAt"))),
            is_sender=bool(last.get("is_sender", False)),
        )
    unread = data.get("unread_count", 0)
    if isinstance(unread, bool) or not isinstance(unread, int):
        raise PayloadError("unread_count must be an integer")
    return Conversation(
        partner_id=_require_int(data, "partner_id"),
        partner_name=str(data.get("partner_name") or ""),
        partner_role=Role.from_tag(data.get("partner_role")),
        last_message=last_message,
        unread_count=max(unread, 0),
    )


def message_to_payload(message: Message) -> Dict[str, Any]:
    """Render a message in the backend's JSON shape."""

    return {
        "message_id": message.message_id,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "message": message.body,
        "is_read": message.is_read,
        "read_at": message.read_at.isoformat() if message.read_at else None,
        "createdAt": message.created_at.isoformat(),
    }
