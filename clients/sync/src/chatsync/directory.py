"""REST accessor for conversation summaries, chat partners and message history."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, TypeVar

import aiohttp

from .identity import AuthError, IdentityResolver
from .models import (
    ChatPartner,
    Conversation,
    Message,
    PayloadError,
    conversation_from_payload,
    message_from_payload,
    partner_from_payload,
)

logger = logging.getLogger(__name__)

KIND_NETWORK = "network"
KIND_UNAUTHORIZED = "unauthorized"
KIND_SERVER = "server"

T = TypeVar("T")


class DirectoryError(Exception):
    def __init__(self, kind: str, detail: str, *, status: Optional[int] = None) -> None:
        self.kind = kind
        self.detail = detail
        self.status = status
        super().__init__(f"{kind}: {detail}")


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _activity_key(conversation: Conversation) -> float:
    activity = conversation.last_activity()
    return activity.timestamp() if activity is not None else float("-inf")


class DirectoryClient:
    def __init__(
        self,
        base_url: str,
        resolver: IdentityResolver,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self._resolver = resolver
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _get_data(self, path: str) -> Any:
        try:
            headers = self._resolver.auth_headers()
        except AuthError as exc:
            raise DirectoryError(KIND_UNAUTHORIZED, str(exc)) from exc

        url = _build_url(self.base_url, path)
        try:
            async with self._http().get(url, headers=headers, timeout=self._timeout) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("GET %s failed: %s", path, exc)
            raise DirectoryError(KIND_NETWORK, str(exc) or type(exc).__name__) from exc

        detail = payload.get("message") if isinstance(payload, dict) else None
        if status in (401, 403):
            raise DirectoryError(KIND_UNAUTHORIZED, str(detail or "API request failed"), status=status)
        if not 200 <= status < 300:
            raise DirectoryError(KIND_SERVER, str(detail or "API request failed"), status=status)
        if not isinstance(payload, dict):
            raise DirectoryError(KIND_SERVER, "response is not a JSON object", status=status)
        return payload.get("data") or []

    async def _get_list(self, path: str, parse: Callable[[Any], T]) -> List[T]:
        data = await self._get_data(path)
        if not isinstance(data, list):
            raise DirectoryError(KIND_SERVER, f"{path} did not return a list")
        try:
            return [parse(entry) for entry in data]
        except PayloadError as exc:
            raise DirectoryError(KIND_SERVER, f"malformed entry from {path}: {exc}") from exc

    async def list_conversations(self) -> List[Conversation]:
        conversations = await self._get_list("/conversations", conversation_from_payload)
        return sorted(conversations, key=_activity_key, reverse=True)

    async def list_partners(self) -> List[ChatPartner]:
        return await self._get_list("/partners", partner_from_payload)

    async def fetch_history(self, partner_id: int) -> List[Message]:
        messages = await self._get_list(f"/messages/{int(partner_id)}", message_from_payload)
        return sorted(messages, key=Message.sort_key)
