"""Realtime conversation synchronization client."""

from .config import ReconnectPolicy, SyncConfig, load_config_from_env
from .directory import DirectoryClient, DirectoryError
from .identity import AuthError, IdentityResolver, InvalidCredentialError, MissingCredentialError
from .models import ChatPartner, ConnectionState, Conversation, Identity, LastMessage, Message
from .roles import Role
from .session import MessagingSession
from .store import ConversationStore
from .transport import NotConnectedError, RealtimeTransport, SendTimeoutError, TransportError

__all__ = [
    "AuthError",
    "ChatPartner",
    "ConnectionState",
    "Conversation",
    "ConversationStore",
    "DirectoryClient",
    "DirectoryError",
    "Identity",
    "IdentityResolver",
    "InvalidCredentialError",
    "LastMessage",
    "Message",
    "MessagingSession",
    "MissingCredentialError",
    "NotConnectedError",
    "RealtimeTransport",
    "ReconnectPolicy",
    "Role",
    "SendTimeoutError",
    "SyncConfig",
    "TransportError",
    "load_config_from_env",
]
