from __future__ import annotations

"""
Session tokens, payload validation, identifier sanitizing and download tokens.

Session token format (string)
    v1.<hex(HMAC_SHA256(secret, "v1|<sessionId>|<connectionId>"))>

- Deterministic: the same (secret, sessionId, connectionId) always yields the
  same token, so nothing has to be stored server-side.
- Bound to one connection: a reconnect gets a new connectionId and therefore a
  new token; the old token stops verifying.
- Verification recomputes the digest and compares with hmac.compare_digest.

Download tokens are the opposite trade-off: random, stored in memory with a
short TTL and consumed exactly once by the HTTP download endpoint.
"""

import hashlib
import hmac
import re
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ds_server.app.errors import PayloadValidationError


_TOKEN_VERSION = "v1"
_USERNAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")
_USERNAME_MAX = 32

M = TypeVar("M", bound=BaseModel)


# -----------------------
# Session tokens
# -----------------------

def _sign(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def derive_token(secret: str, session_id: str, connection_id: str) -> str:
    """
    Derive the authorization token for one (session, connection) pairing.
    """
    digest = _sign(secret, f"{_TOKEN_VERSION}|{session_id}|{connection_id}")
    return f"{_TOKEN_VERSION}.{digest}"


def verify_token(secret: str, token: Any, session_id: str, connection_id: Optional[str]) -> bool:
    """
    Check a presented token against the pairing it claims to belong to.

    Malformed tokens, unknown versions and missing connection ids are rejected
    without computing anything.
    """
    if not isinstance(token, str) or not connection_id:
        return False
    version, sep, digest = token.partition(".")
    if version != _TOKEN_VERSION or not sep or not digest:
        return False
    expected = derive_token(secret, session_id, connection_id)
    return hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8"))


# -----------------------
# Identifiers
# -----------------------

def sanitize_username(raw: Optional[str]) -> str:
    """
    Replace characters outside ``[A-Za-z0-9._-]`` with ``_`` and bound the
    length; empty input falls back to ``"user"``.
    """
    cleaned = _USERNAME_UNSAFE_RE.sub("_", raw or "user")[:_USERNAME_MAX]
    return cleaned or "user"


def random_token(nbytes: int = 24) -> str:
    return secrets.token_urlsafe(nbytes)


# -----------------------
# Payload validation
# -----------------------

def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid payload"


def validate(model: Type[M], payload: Any) -> M:
    """
    Validate an inbound payload against ``model``.

    Unknown fields are dropped by the models themselves. All field errors are
    reported together in one message.

    Raises:
        PayloadValidationError: when the payload is missing or malformed.
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError("Payload missing")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise PayloadValidationError(_format_errors(exc)) from exc


# -----------------------
# Download tokens
# -----------------------

@dataclass(frozen=True)
class DownloadGrant:
    """
    What a download token unlocks: one path inside one session's sandbox.
    """
    session_id: str
    rel_path: str
    expires_at: float
    target: Any


class DownloadTokenStore:
    """
    In-memory, single-use download tokens with a fixed TTL.

    ``consume`` returns the grant and forgets the token; an expired token is
    also forgotten but reported through ``expired=True`` so the HTTP layer can
    answer 410 instead of 404.
    """

    def __init__(self, ttl_seconds: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._grants: Dict[str, DownloadGrant] = {}

    def issue(self, *, session_id: str, rel_path: str, target: Any) -> str:
        token = random_token()
        grant = DownloadGrant(
            session_id=session_id,
            rel_path=rel_path,
            expires_at=self._clock() + self.ttl_seconds,
            target=target,
        )
        with self._lock:
            self._purge_locked()
            self._grants[token] = grant
        return token

    def consume(self, token: str) -> tuple[Optional[DownloadGrant], bool]:
        """
        Returns (grant, expired). ``(None, False)`` means the token is unknown.
        """
        with self._lock:
            grant = self._grants.pop(token, None)
        if grant is None:
            return None, False
        if self._clock() > grant.expires_at:
            return None, True
        return grant, False

    def revoke_session(self, session_id: str) -> None:
        with self._lock:
            for tok in [t for t, g in self._grants.items() if g.session_id == session_id]:
                del self._grants[tok]

    def _purge_locked(self) -> None:
        now = self._clock()
        for tok in [t for t, g in self._grants.items() if now > g.expires_at]:
            del self._grants[tok]

    def __len__(self) -> int:
        with self._lock:
            return len(self._grants)


__all__ = [
    "derive_token",
    "verify_token",
    "sanitize_username",
    "random_token",
    "validate",
    "DownloadGrant",
    "DownloadTokenStore",
]
