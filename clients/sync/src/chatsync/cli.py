"""Command line front end for the messaging client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, TextIO

from .config import SyncConfig, load_config_from_env
from .directory import DirectoryClient, DirectoryError
from .events import Event
from .identity import AuthError, IdentityResolver
from .models import ChatPartner, Conversation, Message, message_to_payload
from .session import MessagingSession
from .transport import TransportError


def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    last = conversation.last_message
    return {
        "partner_id": conversation.partner_id,
        "partner_name": conversation.partner_name,
        "partner_role": conversation.partner_role.label,
        "unread_count": conversation.unread_count,
        "last_message": None
        if last is None
        else {"message": last.text, "created_at": last.created_at.isoformat(), "is_sender": last.is_sender},
    }


def partner_to_dict(partner: ChatPartner) -> Dict[str, Any]:
    return {"user_id": partner.user_id, "name": partner.name, "role": partner.role.label}


def _emit(output: TextIO, payload: Dict[str, Any]) -> None:
    output.write(json.dumps(payload, sort_keys=True) + "\n")
    output.flush()


def _event_to_dict(event: Event) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"t": type(event).__name__}
    message: Optional[Message] = getattr(event, "message", None)
    if isinstance(message, Message):
        payload["message"] = message_to_payload(message)
    elif isinstance(message, str):
        payload["error"] = message
    for attr in ("reader_id", "partner_id", "reason"):
        value = getattr(event, attr, None)
        if value is not None:
            payload[attr] = value
    return payload


async def _list(config: SyncConfig, resolver: IdentityResolver, what: str, output: TextIO) -> int:
    directory = DirectoryClient(config.api_base_url, resolver, timeout_s=config.request_timeout_s)
    try:
        if what == "conversations":
            for conversation in await directory.list_conversations():
                _emit(output, conversation_to_dict(conversation))
        else:
            for partner in await directory.list_partners():
                _emit(output, partner_to_dict(partner))
    finally:
        await directory.close()
    return 0


async def _history(config: SyncConfig, resolver: IdentityResolver, partner_id: int, output: TextIO) -> int:
    directory = DirectoryClient(config.api_base_url, resolver, timeout_s=config.request_timeout_s)
    try:
        for message in await directory.fetch_history(partner_id):
            _emit(output, message_to_payload(message))
    finally:
        await directory.close()
    return 0


async def _send(config: SyncConfig, token: str, partner_id: int, text: str, output: TextIO) -> int:
    async with MessagingSession(token, config) as session:
        if not session.transport.connected:
            raise TransportError(session.store.connection.last_error or "Socket not connected")
        message = await session.send_message(partner_id, text)
        _emit(output, message_to_payload(message))
    return 0


async def _watch(
    config: SyncConfig,
    token: str,
    open_partner: Optional[int],
    duration_s: Optional[float],
    output: TextIO,
) -> int:
    session = MessagingSession(token, config, on_change=lambda event: _emit(output, _event_to_dict(event)))
    try:
        await session.start()
        if open_partner is not None:
            await session.open_conversation(open_partner)
        if duration_s is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_s)
        await session.drain()
        for conversation in session.store.conversations():
            _emit(output, {"t": "summary", **conversation_to_dict(conversation)})
    finally:
        await session.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatsync", description="Realtime messaging client")
    parser.add_argument(
        "--token",
        default=None,
        help="Bearer credential; defaults to $CHATSYNC_TOKEN",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("whoami", help="Print the identity carried by the credential")
    subparsers.add_parser("conversations", help="List conversation summaries")
    subparsers.add_parser("partners", help="List available chat partners")

    history_parser = subparsers.add_parser("history", help="Print the message history with one partner")
    history_parser.add_argument("partner_id", type=int)

    send_parser = subparsers.add_parser("send", help="Send a message and wait for the acknowledgement")
    send_parser.add_argument("partner_id", type=int)
    send_parser.add_argument("text")

    watch_parser = subparsers.add_parser("watch", help="Stream events as they are applied")
    watch_parser.add_argument("--open", dest="open_partner", type=int, default=None, help="Open this conversation")
    watch_parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    return parser


def main(argv: Optional[List[str]] = None, output: Optional[TextIO] = None) -> int:
    """Entry point for CLI commands."""

    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    stream = output or sys.stdout
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    token = args.token or os.environ.get("CHATSYNC_TOKEN")
    resolver = IdentityResolver(token)
    try:
        config = load_config_from_env()
        identity = resolver.current_identity()
        if args.command == "whoami":
            _emit(
                stream,
                {
                    "user_id": identity.user_id,
                    "name": identity.name,
                    "role": identity.role.tag,
                    "role_label": identity.role.label,
                },
            )
            return 0
        if args.command in ("conversations", "partners"):
            return asyncio.run(_list(config, resolver, args.command, stream))
        if args.command == "history":
            return asyncio.run(_history(config, resolver, args.partner_id, stream))
        if args.command == "send":
            return asyncio.run(_send(config, token, args.partner_id, args.text, stream))
        if args.command == "watch":
            return asyncio.run(_watch(config, token, args.open_partner, args.duration, stream))
    except AuthError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except (DirectoryError, TransportError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
