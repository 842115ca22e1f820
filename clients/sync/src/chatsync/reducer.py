"""State transitions for the conversation store.

``reduce`` is applied to one event at a time, in arrival order, by the session's
single consumer. It never reads the clock or touches the network; work that
needs I/O is returned as effects for the caller to schedule.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List

from .events import (
    ChannelError,
    Connected,
    ConversationClosed,
    ConversationOpened,
    ConversationsLoaded,
    Disconnected,
    Effect,
    Event,
    MarkedRead,
    MessageSent,
    MessagesRead,
    NewMessage,
    PartnersLoaded,
    RequestMarkRead,
)
from .models import (
    PHASE_CONNECTED,
    PHASE_DISCONNECTED,
    PHASE_ERROR,
    LastMessage,
    Message,
)
from .roles import Role
from .store import ConversationStore

logger = logging.getLogger(__name__)


def reduce(store: ConversationStore, event: Event) -> List[Effect]:
    if isinstance(event, NewMessage):
        return _apply_message(store, event.message, count_unread=True)
    if isinstance(event, MessageSent):
        return _apply_message(store, event.message, count_unread=False)
    if isinstance(event, MessagesRead):
        _apply_read_receipt(store, event)
        return []
    if isinstance(event, ChannelError):
        store.connection.last_error = event.message
        if not store.connection.connected:
            store.connection.phase = PHASE_ERROR
        return []
    if isinstance(event, Disconnected):
        store.connection.phase = PHASE_DISCONNECTED
        if event.reason:
            store.connection.last_error = event.reason
        return []
    if isinstance(event, Connected):
        store.connection.phase = PHASE_CONNECTED
        store.connection.last_error = None
        if store.open_partner_id is not None:
            return [_request_mark_read(store, store.open_partner_id)]
        return []
    if isinstance(event, ConversationsLoaded):
        _apply_conversations(store, event)
        return []
    if isinstance(event, PartnersLoaded):
        _apply_partners(store, event)
        return []
    if isinstance(event, ConversationOpened):
        return _apply_open(store, event)
    if isinstance(event, ConversationClosed):
        store.open_partner_id = None
        return []
    if isinstance(event, MarkedRead):
        _apply_marked_read(store, event)
        return []
    raise TypeError(f"unsupported event: {type(event).__name__}")


def _refresh_preview(store: ConversationStore, message: Message) -> None:
    conversation = store.ensure_conversation(message.partner_of(store.self_id))
    current = conversation.last_message
    if current is not None and current.created_at > message.created_at:
        return
    conversation.last_message = LastMessage(
        text=message.body,
        created_at=message.created_at,
        is_sender=message.sender_id == store.self_id,
    )


def _request_mark_read(store: ConversationStore, partner_id: int) -> RequestMarkRead:
    return RequestMarkRead(partner_id, store.inbound_count(partner_id))


def _apply_marked_read(store: ConversationStore, event: MarkedRead) -> None:
    conversation = store.conversation(event.partner_id)
    if conversation is None:
        return
    if event.watermark is None:
        conversation.unread_count = 0
        return
    # Messages received after the round was requested were not covered by it.
    arrived_since = max(store.inbound_count(event.partner_id) - event.watermark, 0)
    conversation.unread_count = min(conversation.unread_count, arrived_since)


def _apply_message(store: ConversationStore, message: Message, *, count_unread: bool) -> List[Effect]:
    partner_id = message.partner_of(store.self_id)
    if not store.log_for(partner_id).insert(message):
        logger.debug("dropping duplicate message %s", message.message_id)
        return []

    conversation = store.ensure_conversation(partner_id)
    _refresh_preview(store, message)
    addressed_to_self = message.receiver_id == store.self_id and message.sender_id != store.self_id
    if not (count_unread and addressed_to_self):
        return []
    conversation.unread_count += 1
    store.note_inbound(partner_id)
    if store.open_partner_id == partner_id:
        return [_request_mark_read(store, partner_id)]
    return []


def _apply_read_receipt(store: ConversationStore, event: MessagesRead) -> None:
    log = store.log_for(event.reader_id)
    for message in log.snapshot():
        if message.sender_id != store.self_id or message.receiver_id != event.reader_id:
            continue
        if message.is_read:
            continue
        log.replace(dataclasses.replace(message, is_read=True, read_at=event.read_at))


def _merge_history(store: ConversationStore, partner_id: int, history: List[Message]) -> None:
    log = store.log_for(partner_id)
    for message in history:
        if message.partner_of(store.self_id) != partner_id:
            logger.warning("history for %s contains message %s of another partner", partner_id, message.message_id)
            continue
        if log.insert(message):
            continue
        known = log.get(message.message_id)
        if known is not None and message.is_read and not known.is_read:
            log.replace(dataclasses.replace(known, is_read=True, read_at=message.read_at))
    newest = log.newest()
    if newest is not None:
        _refresh_preview(store, newest)


def _apply_open(store: ConversationStore, event: ConversationOpened) -> List[Effect]:
    store.ensure_conversation(event.partner_id)
    _merge_history(store, event.partner_id, event.history)
    store.open_partner_id = event.partner_id
    return [_request_mark_read(store, event.partner_id)]


def _apply_conversations(store: ConversationStore, event: ConversationsLoaded) -> None:
    for incoming in event.conversations:
        local = store.conversation(incoming.partner_id)
        if local is None:
            store.put_conversation(dataclasses.replace(incoming))
            continue
        local.partner_name = incoming.partner_name or local.partner_name
        if incoming.partner_role is not Role.UNKNOWN:
            local.partner_role = incoming.partner_role
        current = local.last_message is None or (
            incoming.last_message is not None
            and incoming.last_message.created_at >= local.last_message.created_at
        )
        if not current:
            # Snapshot predates a message already applied here; its count is stale too.
            logger.debug("keeping local state of %s over an older snapshot", incoming.partner_id)
            continue
        local.last_message = incoming.last_message or local.last_message
        if store.open_partner_id != incoming.partner_id:
            local.unread_count = incoming.unread_count


def _apply_partners(store: ConversationStore, event: PartnersLoaded) -> None:
    store.set_partners(event.partners)
    for partner in event.partners:
        conversation = store.conversation(partner.user_id)
        if conversation is None:
            continue
        if not conversation.partner_name:
            conversation.partner_name = partner.name
        if conversation.partner_role is Role.UNKNOWN:
            conversation.partner_role = partner.role
