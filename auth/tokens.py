"""
auth/tokens.py -- Session tokens, password hashing, and cookie utilities.

Security design decisions:
  Session token: a compact stateless token, not a JWT.
       base64url(json({"uid", "exp"})) + "." + base64url(HMAC-SHA256(secret, payload))
       Both segments are unpadded. exp is epoch milliseconds. There is no
       server-side session store: validity is recomputed on every request.
       Verification returns None on any failure -- the gate turns that into a
       redirect or a 401.

  Signature check: hmac.compare_digest so the comparison time does not depend
       on how many leading characters of a forged signature are correct.

  Expiry: strictly exp > now. A token is already invalid at the exact
       millisecond it expires. The gate and the tenancy resolver share
       SessionTokenCodec.verify(), so there is one definition of "valid".

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  Invitations: 32 random bytes, base64url. Only SHA-256(token) is stored;
       the raw token is shown once in the invitation link.

Layer rule: no imports from api/, web/, or projects/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt

from auth.models import SessionPayload
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("pmtracker.auth")

AUTH_COOKIE_NAME = "pm_auth"
USER_COOKIE_NAME = "pm_user_id"
PROJECT_COOKIE_NAME = "pm_project_id"

SESSION_LIFETIME_SECONDS = 60 * 60 * 24 * 7


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# base64url without padding
# ---------------------------------------------------------------------------


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


# ---------------------------------------------------------------------------
# Session token codec
# ---------------------------------------------------------------------------


class SessionTokenCodec:
    """Creates and verifies signed session tokens for one secret.

    The secret is fixed at construction. Build one codec per process (see
    get_session_codec()) and share it; instances hold no mutable state.

    Usage:
        codec = SessionTokenCodec(secret)
        token = codec.create(user_id=42)
        codec.verify(token)          # -> 42, or None if invalid/expired
    """

    def __init__(self, secret: str, lifetime_seconds: int = SESSION_LIFETIME_SECONDS) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty.")
        self._key = secret.encode("utf-8")
        self.lifetime_ms = lifetime_seconds * 1000

    def _sign(self, encoded_payload: str) -> str:
        digest = hmac.new(self._key, encoded_payload.encode("utf-8"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def create(self, user_id: int, now: int | None = None) -> str:
        """Return a token for user_id valid until now + lifetime.

        Args:
            user_id: Positive integer ID of an existing user. Existence is the
                     caller's responsibility.
            now:     Issue time in epoch milliseconds. Defaults to the clock.
        """
        issued = now_ms() if now is None else now
        payload = {"uid": user_id, "exp": issued + self.lifetime_ms}
        encoded_payload = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{encoded_payload}.{self._sign(encoded_payload)}"

    def decode(self, token: str | None, now: int | None = None) -> SessionPayload | None:
        """Verify a token and return its payload, or None if it is not valid at `now`.

        Malformed, tampered and expired tokens are indistinguishable to the
        caller. Never raises.
        """
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        encoded_payload, signature = parts

        expected = self._sign(encoded_payload).encode("utf-8")
        if not hmac.compare_digest(expected, signature.encode("utf-8")):
            return None

        try:
            data = json.loads(_b64url_decode(encoded_payload).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None

        uid = data.get("uid")
        exp = data.get("exp")
        # bool is a subclass of int; a payload of {"uid": true} is not a user id.
        if isinstance(uid, bool) or not isinstance(uid, int) or uid <= 0:
            return None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None

        current = now_ms() if now is None else now
        if exp <= current:
            return None
        return SessionPayload(uid=uid, exp=exp)

    def verify(self, token: str | None, now: int | None = None) -> int | None:
        """Return the user id carried by a valid token, or None."""
        payload = self.decode(token, now)
        return payload.uid if payload is not None else None


@lru_cache
def get_session_codec() -> SessionTokenCodec:
    """Return the process-wide codec keyed by Settings.auth_secret."""
    return SessionTokenCodec(get_settings().auth_secret)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("pmtracker_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists, so an attacker cannot
    enumerate registered emails by measuring response time [C1].
    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.password_hash is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# Invitation tokens
# ---------------------------------------------------------------------------


def generate_invitation_token() -> str:
    """Return a fresh invitation token (256 bits of entropy, base64url)."""
    return secrets.token_urlsafe(32)


def hash_invitation_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _cookie(response, name: str, value: str, *, httponly: bool, max_age: int) -> None:
    response.set_cookie(
        name,
        value=value,
        httponly=httponly,
        samesite="lax",
        secure=get_settings().secure_cookies,
        path="/",
        max_age=max_age,
    )


def set_session_cookies(response, user_id: int, token: str, project_id: int | None = None) -> None:
    """Write the session cookies on a response after a successful sign-in.

    pm_auth:       the signed token. httpOnly so scripts cannot read it.
    pm_user_id:    plain user id for client-side display. Never trusted for
                   authorization.
    pm_project_id: last selected project, written only when known. A hint that
                   the resolver re-validates on every request.
    """
    _cookie(response, AUTH_COOKIE_NAME, token, httponly=True, max_age=SESSION_LIFETIME_SECONDS)
    _cookie(response, USER_COOKIE_NAME, str(user_id), httponly=False, max_age=SESSION_LIFETIME_SECONDS)
    if project_id is not None:
        set_project_cookie(response, project_id)


def set_project_cookie(response, project_id: int) -> None:
    _cookie(response, PROJECT_COOKIE_NAME, str(project_id), httponly=False, max_age=SESSION_LIFETIME_SECONDS)


def clear_session_cookies(response) -> None:
    """Expire all three session cookies."""
    _cookie(response, AUTH_COOKIE_NAME, "", httponly=True, max_age=0)
    _cookie(response, USER_COOKIE_NAME, "", httponly=False, max_age=0)
    _cookie(response, PROJECT_COOKIE_NAME, "", httponly=False, max_age=0)
