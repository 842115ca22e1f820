"""Events consumed by the reducer, follow-up effects, and the realtime frame codec."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .models import (
    ChatPartner,
    Conversation,
    Message,
    PayloadError,
    message_from_payload,
)

FRAME_VERSION = 1


@dataclass(frozen=True)
class NewMessage:
    message: Message


@dataclass(frozen=True)
class MessageSent:
    message: Message


@dataclass(frozen=True)
class MessagesRead:
    reader_id: int
    read_at: datetime


@dataclass(frozen=True)
class ChannelError:
    message: str


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class Disconnected:
    reason: Optional[str] = None


@dataclass(frozen=True)
class ConversationsLoaded:
    conversations: List[Conversation]


@dataclass(frozen=True)
class PartnersLoaded:
    partners: List[ChatPartner]


@dataclass(frozen=True)
class ConversationOpened:
    partner_id: int
    history: List[Message] = field(default_factory=list)


@dataclass(frozen=True)
class ConversationClosed:
    pass


@dataclass(frozen=True)
class MarkedRead:
    """A mark-read round finished.

    ``watermark`` is the partner's inbound count when the round was requested;
    messages that arrived after it stay unread. ``None`` clears unconditionally.
    """

    partner_id: int
    watermark: Optional[int] = None


InboundEvent = Union[NewMessage, MessageSent, MessagesRead, ChannelError, Connected, Disconnected]
Event = Union[
    InboundEvent,
    ConversationsLoaded,
    PartnersLoaded,
    ConversationOpened,
    ConversationClosed,
    MarkedRead,
]


@dataclass(frozen=True)
class RequestMarkRead:
    """Effect: run a mark-read round for ``partner_id`` covering inbound messages up to ``watermark``."""

    partner_id: int
    watermark: int


Effect = RequestMarkRead


def encode_frame(frame_type: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"v": FRAME_VERSION, "t": frame_type, "body": body or {}}


def send_message_frame(receiver_id: int, text: str) -> Dict[str, Any]:
    return encode_frame("send_message", {"receiver_id": receiver_id, "message": text})


def mark_read_frame(partner_id: int) -> Dict[str, Any]:
    return encode_frame("mark_read", {"partner_id": partner_id})


def decode_frame(raw: Union[str, Dict[str, Any]], received_at: datetime) -> Optional[InboundEvent]:
    """Turn one inbound frame into an event.

    Returns ``None`` for frames that carry no state (``ping``/``pong``) and
    raises ``PayloadError`` for anything malformed or unknown.
    """

    if isinstance(raw, str):
        try:
            frame = json.loads(raw)
        except ValueError as exc:
            raise PayloadError("malformed json frame") from exc
    else:
        frame = raw
    if not isinstance(frame, dict):
        raise PayloadError("frame must be a JSON object")
    if frame.get("v", FRAME_VERSION) != FRAME_VERSION:
        raise PayloadError(f"unsupported frame version: {frame.get('v')!r}")

    frame_type = frame.get("t")
    body = frame.get("body") or {}
    if frame_type in ("ping", "pong"):
        return None
    if frame_type == "new_message":
        return NewMessage(message_from_payload(body))
    if frame_type == "message_sent":
        return MessageSent(message_from_payload(body))
    if frame_type == "messages_read":
        reader_id = body.get("reader_id") if isinstance(body, dict) else None
        if isinstance(reader_id, bool) or not isinstance(reader_id, int):
            raise PayloadError("messages_read requires an integer reader_id")
        return MessagesRead(reader_id=reader_id, read_at=received_at)
    if frame_type == "error":
        message = body.get("message") if isinstance(body, dict) else None
        return ChannelError(str(message or "An error occurred"))
    raise PayloadError(f"unknown frame type: {frame_type!r}")
