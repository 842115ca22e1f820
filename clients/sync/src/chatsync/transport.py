"""The one live realtime channel of a session.

A ``RealtimeTransport`` owns a single authenticated websocket, decodes inbound
frames into events for its ``on_event`` callback, reconnects transparently
after transient loss and correlates outbound sends with their acknowledgements.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

import aiohttp
from aiohttp import WSMsgType

from .config import ReconnectPolicy
from .events import (
    ChannelError,
    Connected,
    Disconnected,
    InboundEvent,
    MessageSent,
    decode_frame,
    encode_frame,
    mark_read_frame,
    send_message_frame,
)
from .identity import AuthError, IdentityResolver
from .models import (
    PHASE_CONNECTED,
    PHASE_CONNECTING,
    PHASE_DISCONNECTED,
    ConnectionState,
    Message,
    PayloadError,
)

logger = logging.getLogger(__name__)


class TransportError(Exception):
    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class NotConnectedError(TransportError):
    def __init__(self, message: str = "Socket not connected") -> None:
        super().__init__(message, retryable=False)


class SendTimeoutError(TransportError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class _PendingSend:
    receiver_id: int
    body: str
    future: "asyncio.Future[Message]"


class RealtimeTransport:
    def __init__(
        self,
        url: str,
        resolver: IdentityResolver,
        on_event: Callable[[InboundEvent], None],
        *,
        session: Optional[aiohttp.ClientSession] = None,
        policy: ReconnectPolicy = ReconnectPolicy(),
        heartbeat_s: Optional[float] = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.url = url
        self.policy = policy
        self._resolver = resolver
        self._on_event = on_event
        self._session = session
        self._owns_session = session is None
        self._heartbeat_s = heartbeat_s
        self._clock = clock
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._phase = PHASE_DISCONNECTED
        self._last_error: Optional[str] = None
        self._pending: Deque[_PendingSend] = deque()

    @property
    def connected(self) -> bool:
        return self._phase == PHASE_CONNECTED and self._ws is not None and not self._ws.closed

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState(phase=self._phase, last_error=self._last_error)

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def connect(self) -> None:
        """Open the channel unless a live one already exists."""

        async with self._connect_lock:
            if self.connected:
                return
            if self._reader_task is not None and not self._reader_task.done():
                # The reader is already re-establishing the channel.
                return
            self._closing = False
            self._phase = PHASE_CONNECTING
            try:
                self._ws = await self._open()
            except TransportError as exc:
                self._phase = PHASE_DISCONNECTED
                self._last_error = str(exc)
                raise
            self._phase = PHASE_CONNECTED
            self._last_error = None
            logger.info("realtime channel connected to %s", self.url)
            self._on_event(Connected())
            self._reader_task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        task, self._reader_task = self._reader_task, None
        if ws is not None and not ws.closed:
            await ws.close()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        was_live = self._phase != PHASE_DISCONNECTED
        self._phase = PHASE_DISCONNECTED
        self._fail_pending(NotConnectedError("channel closed"))
        if was_live:
            logger.info("realtime channel disconnected")
            self._on_event(Disconnected("closed by client"))

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _open(self) -> aiohttp.ClientWebSocketResponse:
        try:
            headers = self._resolver.auth_headers()
        except AuthError as exc:
            raise TransportError(str(exc), retryable=False) from exc
        try:
            return await self._http().ws_connect(self.url, headers=headers, heartbeat=self._heartbeat_s)
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in (401, 403):
                raise TransportError("handshake rejected: unauthorized", retryable=False) from exc
            raise TransportError(f"handshake failed with status {exc.status}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(f"connect failed: {exc or type(exc).__name__}") from exc

    async def _run(self) -> None:
        while True:
            ws = self._ws
            if ws is not None:
                await self._read(ws)
            if self._closing:
                return
            logger.warning("realtime channel lost; reconnecting")
            if await self._reconnect():
                continue
            self._ws = None
            self._phase = PHASE_DISCONNECTED
            self._fail_pending(NotConnectedError("channel lost"))
            self._on_event(Disconnected(self._last_error or "reconnect attempts exhausted"))
            return

    async def _reconnect(self) -> bool:
        for attempt in range(1, self.policy.max_attempts + 1):
            self._phase = PHASE_CONNECTING
            await asyncio.sleep(self.policy.delay_for(attempt))
            if self._closing:
                return False
            try:
                self._ws = await self._open()
            except TransportError as exc:
                self._last_error = str(exc)
                logger.warning(
                    "reconnect attempt %s/%s failed: %s", attempt, self.policy.max_attempts, exc
                )
                if not exc.retryable:
                    return False
                continue
            self._phase = PHASE_CONNECTED
            self._last_error = None
            logger.info("realtime channel re-established after %s attempt(s)", attempt)
            self._on_event(Connected())
            return True
        return False

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await self._handle_text(msg.data)
            elif msg.type == WSMsgType.ERROR:
                self._last_error = str(ws.exception() or "websocket error")
                break
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break

    async def _handle_text(self, data: str) -> None:
        try:
            frame: Any = json.loads(data)
        except ValueError:
            frame = data
        if isinstance(frame, dict) and frame.get("t") == "ping":
            try:
                await self._send(encode_frame("pong"))
            except TransportError as exc:
                logger.debug("could not answer ping: %s", exc)
            return
        try:
            event = decode_frame(frame, self._clock())
        except PayloadError as exc:
            logger.warning("dropping undecodable frame: %s", exc)
            self._on_event(ChannelError(str(exc)))
            return
        if event is None:
            return
        if isinstance(event, MessageSent):
            self._resolve_pending(event.message)
        elif isinstance(event, ChannelError):
            if not self._fail_latest_pending(TransportError(event.message)):
                logger.warning("realtime channel error: %s", event.message)
        self._on_event(event)

    def _resolve_pending(self, message: Message) -> None:
        match = next(
            (p for p in self._pending if p.receiver_id == message.receiver_id and p.body == message.body),
            None,
        )
        if match is None:
            logger.debug("message_sent %s matches no pending send", message.message_id)
            return
        self._pending.remove(match)
        if not match.future.done():
            match.future.set_result(message)

    def _fail_latest_pending(self, exc: TransportError) -> bool:
        while self._pending:
            pending = self._pending.pop()
            if not pending.future.done():
                pending.future.set_exception(exc)
                return True
        return False

    def _fail_pending(self, exc: TransportError) -> None:
        while self._pending:
            pending = self._pending.popleft()
            if not pending.future.done():
                pending.future.set_exception(exc)

    async def _send(self, frame: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise NotConnectedError()
        try:
            await ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def send_message(self, receiver_id: int, body: str, *, timeout_s: Optional[float] = None) -> Message:
        """Send a message and wait for the server's ``message_sent`` echo.

        Nothing is inserted locally; the echo is what makes the message
        visible. Raises ``NotConnectedError`` immediately when offline,
        ``TransportError`` when the server answers with ``error`` and
        ``SendTimeoutError`` when neither arrives within ``timeout_s``.
        """

        if not self.connected:
            raise NotConnectedError()
        future: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        pending = _PendingSend(receiver_id=receiver_id, body=body, future=future)
        self._pending.append(pending)
        try:
            await self._send(send_message_frame(receiver_id, body))
            return await asyncio.wait_for(future, timeout_s)
        except asyncio.TimeoutError as exc:
            raise SendTimeoutError(f"Failed to send message: no acknowledgement within {timeout_s}s") from exc
        finally:
            if pending in self._pending:
                self._pending.remove(pending)

    async def mark_read(self, partner_id: int) -> bool:
        if not self.connected:
            logger.debug("skipping mark_read for %s: not connected", partner_id)
            return False
        await self._send(mark_read_frame(partner_id))
        return True
