from __future__ import annotations

import logging
from typing import Callable, Optional

from .directory import DirectoryClient
from .events import ConversationOpened, Event, MarkedRead
from .transport import RealtimeTransport, TransportError

logger = logging.getLogger(__name__)


class ReadReceiptCoordinator:
    """Runs conversation-open and mark-read rounds.

    Results are never written to the store directly; they are submitted as
    events so that the session's consumer stays the only writer.
    """

    def __init__(
        self,
        directory: DirectoryClient,
        transport: RealtimeTransport,
        submit: Callable[[Event], None],
    ) -> None:
        self._directory = directory
        self._transport = transport
        self._submit = submit

    async def open_conversation(self, partner_id: int) -> None:
        """Seed the log from history, then mark the partner's messages read.

        A failed fetch raises ``DirectoryError`` before anything is submitted.
        """

        history = await self._directory.fetch_history(partner_id)
        self._submit(ConversationOpened(partner_id=partner_id, history=history))

    async def mark_read(self, partner_id: int, watermark: Optional[int] = None) -> bool:
        try:
            sent = await self._transport.mark_read(partner_id)
        except TransportError as exc:
            logger.warning("mark_read for %s not delivered: %s", partner_id, exc)
            sent = False
        self._submit(MarkedRead(partner_id, watermark))
        return sent
