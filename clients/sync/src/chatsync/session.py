"""Single-owner session wiring the directory, transport, coordinator and store."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Set

import aiohttp

from .config import SyncConfig
from .directory import DirectoryClient
from .events import (
    ChannelError,
    ConversationClosed,
    ConversationsLoaded,
    Effect,
    Event,
    PartnersLoaded,
    RequestMarkRead,
)
from .identity import CredentialSource, IdentityResolver
from .models import Message
from .receipts import ReadReceiptCoordinator
from .reducer import reduce
from .store import ConversationStore
from .transport import RealtimeTransport, TransportError

logger = logging.getLogger(__name__)


class SessionNotStartedError(RuntimeError):
    pass


class MessagingSession:
    """Owns the conversation store and the one queue that feeds it.

    Transport events and completed REST fetches are queued and reduced one at
    a time by a single consumer task. Follow-up effects run as their own tasks
    so the consumer never waits on the network. ``on_change`` is called with
    each event after it has been applied, for read-only observers.
    """

    def __init__(
        self,
        credential: CredentialSource,
        config: Optional[SyncConfig] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        on_change: Optional[Callable[[Event], None]] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._on_change = on_change
        self.resolver = IdentityResolver(credential)
        self._http = http
        self._owns_http = http is None
        self._store: Optional[ConversationStore] = None
        self._queue: Optional[asyncio.Queue[Event]] = None
        self._consumer: Optional[asyncio.Task] = None
        self._effects: Set[asyncio.Task] = set()
        self.directory: Optional[DirectoryClient] = None
        self.transport: Optional[RealtimeTransport] = None
        self.receipts: Optional[ReadReceiptCoordinator] = None

    async def __aenter__(self) -> "MessagingSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def store(self) -> ConversationStore:
        if self._store is None:
            raise SessionNotStartedError("session has not been started")
        return self._store

    @property
    def started(self) -> bool:
        return self._consumer is not None

    async def start(self, *, connect: bool = True, load: bool = True) -> None:
        """Resolve the identity, start consuming events, connect and load.

        ``AuthError`` is fatal and propagates. A failed connect is ambient: it
        is logged and recorded while the store keeps serving REST data.
        ``DirectoryError`` from the initial load propagates to the caller.
        """

        if self.started:
            return
        identity = self.resolver.current_identity()
        self._store = ConversationStore(identity)
        if self._http is None:
            self._http = aiohttp.ClientSession()
        self.directory = DirectoryClient(
            self.config.api_base_url,
            self.resolver,
            session=self._http,
            timeout_s=self.config.request_timeout_s,
        )
        self.transport = RealtimeTransport(
            self.config.ws_url,
            self.resolver,
            self.submit,
            session=self._http,
            policy=self.config.reconnect,
            heartbeat_s=self.config.heartbeat_s,
        )
        self.receipts = ReadReceiptCoordinator(self.directory, self.transport, self.submit)
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        logger.info("messaging session started for user %s", identity.user_id)

        if connect:
            await self.connect()
        if load:
            await self.refresh()

    async def connect(self) -> bool:
        transport = self._require(self.transport)
        try:
            await transport.connect()
        except TransportError as exc:
            logger.warning("realtime channel unavailable: %s", exc)
            self.submit(ChannelError(str(exc)))
            return False
        return True

    def submit(self, event: Event) -> None:
        """Queue an event for the consumer; safe to call from any callback on the loop."""

        self._require(self._queue).put_nowait(event)

    async def _consume(self) -> None:
        queue = self._require(self._queue)
        while True:
            event = await queue.get()
            try:
                for effect in reduce(self.store, event):
                    self._schedule(effect)
                if self._on_change is not None:
                    self._on_change(event)
            except Exception:
                logger.exception("failed to apply %s", type(event).__name__)
            finally:
                queue.task_done()

    def _schedule(self, effect: Effect) -> None:
        if isinstance(effect, RequestMarkRead):
            receipts = self._require(self.receipts)
            task = asyncio.create_task(receipts.mark_read(effect.partner_id, effect.watermark))
            self._effects.add(task)
            task.add_done_callback(self._effects.discard)

    async def drain(self) -> None:
        """Wait until every queued event and scheduled effect has been processed."""

        queue = self._require(self._queue)
        consumer = self._require(self._consumer)
        while True:
            joined = asyncio.ensure_future(queue.join())
            done, _ = await asyncio.wait({joined, consumer}, return_when=asyncio.FIRST_COMPLETED)
            if consumer in done:
                joined.cancel()
                consumer.result()
                raise RuntimeError("event consumer stopped")
            if self._effects:
                await asyncio.gather(*list(self._effects), return_exceptions=True)
                continue
            if queue.empty():
                return

    async def refresh(self) -> None:
        """Full resynchronization of conversation summaries and chat partners.

        Both requests must succeed before either result is applied.
        """

        directory = self._require(self.directory)
        results = await asyncio.gather(
            directory.list_conversations(),
            directory.list_partners(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        conversations, partners = results
        self.submit(PartnersLoaded(partners))
        self.submit(ConversationsLoaded(conversations))

    async def refresh_conversations(self) -> None:
        conversations = await self._require(self.directory).list_conversations()
        self.submit(ConversationsLoaded(conversations))

    async def refresh_partners(self) -> None:
        partners = await self._require(self.directory).list_partners()
        self.submit(PartnersLoaded(partners))

    async def open_conversation(self, partner_id: int) -> None:
        await self._require(self.receipts).open_conversation(partner_id)

    def close_conversation(self) -> None:
        self.submit(ConversationClosed())

    async def send_message(self, partner_id: int, text: str) -> Message:
        """Send ``text`` and return the acknowledged message.

        The message reaches the store through the ``message_sent`` event, not
        through this return value.
        """

        body = text.strip()
        if not body:
            raise ValueError("message text must not be empty")
        transport = self._require(self.transport)
        return await transport.send_message(partner_id, body, timeout_s=self.config.send_timeout_s)

    async def close(self) -> None:
        try:
            if self.transport is not None:
                await self.transport.disconnect()
            if self._consumer is not None and not self._consumer.done():
                await self.drain()
        finally:
            if self._consumer is not None:
                self._consumer.cancel()
                await asyncio.gather(self._consumer, return_exceptions=True)
                self._consumer = None
            effects = list(self._effects)
            for task in effects:
                task.cancel()
            await asyncio.gather(*effects, return_exceptions=True)
            if self._owns_http and self._http is not None:
                await self._http.close()
                self._http = None

    @staticmethod
    def _require(value):
        if value is None:
            raise SessionNotStartedError("session has not been started")
        return value
