"""Offline identity resolution from the held bearer credential."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Callable, Dict, Optional, Union

from .models import Identity
from .roles import Role

CredentialSource = Union[str, None, Callable[[], Optional[str]]]


class AuthError(Exception):
    """No message can be attributed to the current user."""


class MissingCredentialError(AuthError):
    pass


class InvalidCredentialError(AuthError):
    pass


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def decode_token(token: str) -> Dict[str, Any]:
    """Decode the payload segment of a JWT-shaped token without verifying it.

    The backend verifies the signature; this only reads the claims so that
    message direction can be attributed locally.
    """

    if token.startswith("Bearer "):
        token = token[len("Bearer ") :]
    parts = token.strip().split(".")
    if len(parts) < 2 or not parts[1]:
        raise InvalidCredentialError("credential has no payload segment")
    try:
        claims = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCredentialError("credential payload is not valid base64url JSON") from exc
    if not isinstance(claims, dict):
        raise InvalidCredentialError("credential payload must be a JSON object")
    return claims


def identity_from_claims(claims: Dict[str, Any]) -> Identity:
    user_id = claims.get("user_id")
    if isinstance(user_id, str) and user_id.isdigit():
        user_id = int(user_id)
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise InvalidCredentialError("credential does not carry an integer user_id")
    name = claims.get("name") or claims.get("email") or f"user {user_id}"
    return Identity(user_id=user_id, name=str(name), role=Role.from_tag(claims.get("role")))


class IdentityResolver:
    """Resolves the current user from whatever credential is held right now."""

    def __init__(self, credential: CredentialSource) -> None:
        if callable(credential):
            self._source: Callable[[], Optional[str]] = credential
        else:
            self._source = lambda: credential

    def bearer_token(self) -> str:
        token = self._source()
        if not token:
            raise MissingCredentialError("no authentication token found")
        return token

    def current_identity(self) -> Identity:
        return identity_from_claims(decode_token(self.bearer_token()))

    def is_authenticated(self) -> bool:
        try:
            self.current_identity()
        except AuthError:
            return False
        return True

    def auth_headers(self) -> Dict[str, str]:
        token = self.bearer_token()
        if token.startswith("Bearer "):
            return {"Authorization": token}
        return {"Authorization": f"Bearer {token}"}
