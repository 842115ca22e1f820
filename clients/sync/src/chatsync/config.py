from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_API_BASE_URL = "http://localhost:3000/api/messages"
DEFAULT_WS_URL = "ws://localhost:3000/ws"


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 5
    initial_delay_s: float = 0.5
    max_delay_s: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before reconnect ``attempt`` (1-based); doubles each time."""

        return min(self.initial_delay_s * (2 ** max(attempt - 1, 0)), self.max_delay_s)


@dataclass(frozen=True)
class SyncConfig:
    api_base_url: str = DEFAULT_API_BASE_URL
    ws_url: str = DEFAULT_WS_URL
    request_timeout_s: float = 10.0
    send_timeout_s: float = 15.0
    heartbeat_s: float = 30.0
    reconnect: ReconnectPolicy = ReconnectPolicy()


def _parse_url(name: str, default: str, schemes: tuple[str, ...]) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if not raw.startswith(tuple(f"{scheme}://" for scheme in schemes)):
        raise ValueError(f"{name} must start with one of: {', '.join(s + '://' for s in schemes)}")
    return raw.rstrip("/")


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def load_config_from_env() -> SyncConfig:
    reconnect = ReconnectPolicy(
        max_attempts=_parse_non_negative_int("CHATSYNC_RECONNECT_MAX_ATTEMPTS", 5),
        initial_delay_s=_parse_positive_float("CHATSYNC_RECONNECT_INITIAL_DELAY_S", 0.5),
        max_delay_s=_parse_positive_float("CHATSYNC_RECONNECT_MAX_DELAY_S", 8.0),
    )
    return SyncConfig(
        api_base_url=_parse_url("CHATSYNC_API_BASE_URL", DEFAULT_API_BASE_URL, ("http", "https")),
        ws_url=_parse_url("CHATSYNC_WS_URL", DEFAULT_WS_URL, ("ws", "wss", "http", "https")),
        request_timeout_s=_parse_positive_float("CHATSYNC_REQUEST_TIMEOUT_S", 10.0),
        send_timeout_s=_parse_positive_float("CHATSYNC_SEND_TIMEOUT_S", 15.0),
        heartbeat_s=_parse_positive_float("CHATSYNC_HEARTBEAT_S", 30.0),
        reconnect=reconnect,
    )
