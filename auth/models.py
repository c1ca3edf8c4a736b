"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work.

Layer rule: no imports from api/, web/, or projects/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A person who can sign in and act within projects.

    email is stored lowercased; lookups are case-insensitive.
    password_hash is None for invited users who have not accepted yet.
    """

    name: str
    email: str
    id: int | None = None
    password_hash: str | None = None
    is_admin: bool = False
    created_at: str | None = None


@dataclass
class Invitation:
    """A one-time link letting an admin-created user choose a password.

    Only the SHA-256 of the raw token is persisted. expires_at and used_at are
    epoch seconds.
    """

    user_id: int
    token_hash: str
    expires_at: int
    id: int | None = None
    used_at: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionPayload:
    """Decoded body of a verified session token. exp is epoch milliseconds."""

    uid: int
    exp: int | float
