"""Password hashing and signed bearer tokens."""

import base64
import hmac
import json
import time
from hashlib import sha256
from typing import Callable, Optional

import bcrypt
from pydantic import ValidationError

from .models import AuthenticatedIdentity

_DELIMITER = "."
# bcrypt only looks at the first 72 bytes of a password
_BCRYPT_MAX_BYTES = 72


class AuthenticationError(Exception):
    pass


def _password_bytes(raw: str) -> bytes:
    return raw.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(raw: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(_password_bytes(raw), bcrypt.gensalt(rounds)).decode("ascii")


def verify_password(raw: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(raw), hashed.encode("ascii"))
    except ValueError:
        return False


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class TokenService:
    """
    Issues and checks HMAC-SHA256 signed tokens.

    A token is ``<base64url claims>.<base64url signature>`` where the claims
    carry the identity plus ``iat``/``exp`` in epoch seconds. Missing,
    malformed, tampered and expired tokens all raise ``AuthenticationError``.
    """

    def __init__(self, secret: str, ttl_seconds: int = 7 * 24 * 60 * 60,
                 clock: Optional[Callable[[], float]] = None):
        if not secret:
            raise ValueError("Token secret is not configured")
        if ttl_seconds <= 0:
            raise ValueError("TTL must be a positive integer")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._secret, payload.encode("ascii"), sha256).digest()
        return _b64encode(digest)

    def issue(self, identity: AuthenticatedIdentity) -> str:
        issued_at = int(self._clock())
        claims = {
            "id": str(identity.id),
            "email": identity.email,
            "name": identity.name,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
        return f"{payload}{_DELIMITER}{self._sign(payload)}"

    def authenticate(self, token: Optional[str]) -> AuthenticatedIdentity:
        if not token:
            raise AuthenticationError("Missing token")

        try:
            payload, signature = token.split(_DELIMITER)
            expected = self._sign(payload)
        except ValueError:
            raise AuthenticationError("Invalid token")

        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
            raise AuthenticationError("Invalid token")

        try:
            claims = json.loads(_b64decode(payload))
            expires_at = int(claims["exp"])
            identity = AuthenticatedIdentity(
                id=claims["id"], email=claims["email"], name=claims["name"]
            )
        except (ValueError, KeyError, TypeError, ValidationError):
            raise AuthenticationError("Invalid token")

        if self._clock() >= expires_at:
            raise AuthenticationError("Invalid token")

        return identity
