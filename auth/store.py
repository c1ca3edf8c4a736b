"""
auth/store.py -- SQLAlchemy Core persistence layer for users and invitations.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_invitation are the mappers.
Route, gate and resolver code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are normalized (trimmed, lowercased) before every write and lookup,
  so the UNIQUE index on users.email is effectively case-insensitive.

Invariant:
  At least one user must always exist once setup is complete. delete_user()
  does not enforce this; the DELETE /api/users route checks count_users()
  first.

Layer rule: no imports from api/, web/, or projects/.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import Invitation, User
from core.config import get_settings

# Largest value a SQLite INTEGER id column can hold. Larger ids are never
# stored, and the sqlite3 driver raises OverflowError if one is bound.
MAX_ROW_ID = 2**63 - 1

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),  # always lowercased
    Column("password_hash", Text),  # NULL until an invitation is accepted
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_invitations = Table(
    "user_invitations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", Integer, nullable=False),  # epoch seconds
    Column("used_at", Integer),  # epoch seconds
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine, enabling cross-thread use and WAL for SQLite URLs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Invitation entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(name="Ada", email="ada@example.com", password_hash=hash_password("secret")))
        user = store.get_by_email("ADA@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists (first-run detection)."""
        return self.count_users() > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the name or email already
        exists. Callers turn that into a 409.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    name=user.name.strip(),
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    is_admin=1 if user.is_admin else 0,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, ignoring case. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.email) == normalize_email(email))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_name(self, name: str) -> User | None:
        """Look up a user by display name, ignoring case."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.name) == name.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def user_exists(self, user_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone()
        return row is not None

    def earliest_user_id(self) -> int | None:
        """Return the id of the earliest-created user, or None if there are no users."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id).order_by(_users.c.created_at.asc(), _users.c.id.asc()).limit(1)
            ).fetchone()
        return row.id if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at, _users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, email, is_admin. Returns True if a row was
        updated, False if user_id was not found.
        """
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "name" in fields:
            fields["name"] = fields["name"].strip()
        if "is_admin" in fields:
            fields["is_admin"] = 1 if fields["is_admin"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def set_password(self, user_id: int, password_hash: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and any pending invitations. Returns True if a user was deleted."""
        with self.engine.begin() as conn:
            conn.execute(_invitations.delete().where(_invitations.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, user_id: int, token_hash: str, expires_at: int) -> int:
        """Store a new invitation, replacing any earlier one for the same user."""
        with self.engine.begin() as conn:
            conn.execute(_invitations.delete().where(_invitations.c.user_id == user_id))
            result = conn.execute(
                _invitations.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def find_valid_invitation(self, token_hash: str, now: int | None = None) -> Invitation | None:
        """Return the unused, unexpired invitation for token_hash, or None."""
        current = int(time.time()) if now is None else now
        with self.engine.connect() as conn:
            row = conn.execute(
                _invitations.select().where(
                    (_invitations.c.token_hash == token_hash)
                    & (_invitations.c.used_at.is_(None))
                    & (_invitations.c.expires_at > current)
                )
            ).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def accept_invitation(self, invitation: Invitation, password_hash: str) -> None:
        """Set the user's password and consume the invitation in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update().where(_users.c.id == invitation.user_id).values(password_hash=password_hash)
            )
            conn.execute(
                _invitations.update()
                .where(_invitations.c.id == invitation.id)
                .values(used_at=int(time.time()))
            )
            conn.execute(
                _invitations.delete().where(
                    (_invitations.c.user_id == invitation.user_id) & (_invitations.c.id != invitation.id)
                )
            )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        is_admin=bool(row.is_admin),
        created_at=row.created_at,
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )
