from __future__ import annotations

import bisect
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .models import ChatPartner, ConnectionState, Conversation, Identity, Message
from .roles import Role

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class MessageLog:
    """Per-partner message log, kept sorted by creation time, one entry per id."""

    def __init__(self) -> None:
        self._messages: List[Message] = []
        self._by_id: Dict[int, Message] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def insert(self, message: Message) -> bool:
        """Insert ``message`` in order; returns ``False`` when the id is already present."""

        if message.message_id in self._by_id:
            return False
        bisect.insort(self._messages, message, key=Message.sort_key)
        self._by_id[message.message_id] = message
        return True

    def replace(self, message: Message) -> None:
        """Swap in an updated copy of a message already in the log."""

        current = self._by_id[message.message_id]
        index = bisect.bisect_left(self._messages, current.sort_key(), key=Message.sort_key)
        self._messages[index] = message
        self._by_id[message.message_id] = message

    def get(self, message_id: int) -> Optional[Message]:
        return self._by_id.get(message_id)

    def newest(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def snapshot(self) -> List[Message]:
        return list(self._messages)


class ConversationStore:
    """In-memory model of the current user's conversations.

    Only the reducer mutates it; everything public here is a read.
    """

    def __init__(self, identity: Identity) -> None:
        self.identity = identity
        self.connection = ConnectionState()
        self.open_partner_id: Optional[int] = None
        self._conversations: Dict[int, Conversation] = {}
        self._logs: Dict[int, MessageLog] = {}
        self._partners: Dict[int, ChatPartner] = {}
        self._inbound: Dict[int, int] = {}

    @property
    def self_id(self) -> int:
        return self.identity.user_id

    def conversations(self) -> List[Conversation]:
        """Most recently active first; conversations without messages last."""

        return sorted(
            self._conversations.values(),
            key=lambda conv: (conv.last_activity() or _EPOCH, conv.partner_id),
            reverse=True,
        )

    def conversation(self, partner_id: int) -> Optional[Conversation]:
        return self._conversations.get(partner_id)

    def messages(self, partner_id: int) -> List[Message]:
        log = self._logs.get(partner_id)
        return log.snapshot() if log is not None else []

    def partners(self) -> List[ChatPartner]:
        return sorted(self._partners.values(), key=lambda partner: partner.name.lower())

    def partner(self, partner_id: int) -> Optional[ChatPartner]:
        return self._partners.get(partner_id)

    def available_partners(self) -> List[ChatPartner]:
        """Partners that have no conversation yet."""

        return [partner for partner in self.partners() if partner.user_id not in self._conversations]

    def search_conversations(self, term: str) -> List[Conversation]:
        needle = term.strip().lower()
        return [conv for conv in self.conversations() if needle in conv.partner_name.lower()]

    def search_partners(self, term: str) -> List[ChatPartner]:
        needle = term.strip().lower()
        return [partner for partner in self.available_partners() if needle in partner.name.lower()]

    def total_unread(self) -> int:
        return sum(conv.unread_count for conv in self._conversations.values())

    def inbound_count(self, partner_id: int) -> int:
        """Number of distinct messages received from ``partner_id`` so far."""

        return self._inbound.get(partner_id, 0)

    # Reducer-side accessors.

    def log_for(self, partner_id: int) -> MessageLog:
        log = self._logs.get(partner_id)
        if log is None:
            log = MessageLog()
            self._logs[partner_id] = log
        return log

    def ensure_conversation(self, partner_id: int) -> Conversation:
        conversation = self._conversations.get(partner_id)
        if conversation is None:
            partner = self._partners.get(partner_id)
            conversation = Conversation(
                partner_id=partner_id,
                partner_name=partner.name if partner else "",
                partner_role=partner.role if partner else Role.UNKNOWN,
            )
            self._conversations[partner_id] = conversation
        return conversation

    def note_inbound(self, partner_id: int) -> None:
        self._inbound[partner_id] = self._inbound.get(partner_id, 0) + 1

    def put_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.partner_id] = conversation

    def set_partners(self, partners: List[ChatPartner]) -> None:
        self._partners = {partner.user_id: partner for partner in partners}
