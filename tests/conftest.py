"""
tests/conftest.py -- Shared test fixtures for the project tracker.

This module provides:
  - _make_test_stores(): isolated in-memory DB shared by the user + project stores
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - app_env / empty_env: TestClient (follow_redirects=False) plus stores,
    with or without a seeded admin
  - AppEnv.login(): signs the client in by setting a freshly minted pm_auth cookie
  - file_stores: both stores on a real SQLite file (thread tests)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

AUTH_SECRET and ALLOWED_HOSTS must be set before any auth/core import:
get_settings() is cached on first use, and TestClient sends Host: testserver.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any core/auth import so the cached Settings see them.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AUTH_SECRET", "test-secret-for-the-pytest-suite-0123456789")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import AUTH_COOKIE_NAME, get_session_codec, hash_password
from projects.store import ProjectStore

ADMIN_PASSWORD = "adminpass123"
MEMBER_PASSWORD = "memberpass123"

# bcrypt is slow on purpose; hash the fixture passwords once per session.
_ADMIN_HASH = hash_password(ADMIN_PASSWORD)
_MEMBER_HASH = hash_password(MEMBER_PASSWORD)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, ProjectStore]:
    """Create both stores on one named shared-memory SQLite database.

    Args:
        db_suffix: Unique string appended to the DB name so tests never share
                   state.
    """
    url = f"sqlite:///file:test_pm_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), ProjectStore(db_url=url)


def _patch_lifespan(user_store: UserStore, project_store: ProjectStore):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.project_store = project_store
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppEnv:
    client: TestClient
    users: UserStore
    projects: ProjectStore
    admin_id: int
    admin_email: str = "admin@example.com"
    admin_password: str = ADMIN_PASSWORD
    member_password: str = MEMBER_PASSWORD

    def add_user(self, name: str, email: str, is_admin: bool = False) -> int:
        """Create a user whose password is member_password."""
        return self.users.create_user(User(name=name, email=email, password_hash=_MEMBER_HASH, is_admin=is_admin))

    def login(self, user_id: int) -> str:
        """Sign the client in as user_id by setting a valid pm_auth cookie.

        The cookie is set without a domain, so a Set-Cookie from the app does
        not replace it. Use POST /api/auth/login when a test needs logout to
        clear the session.
        """
        token = get_session_codec().create(user_id)
        self.client.cookies.set(AUTH_COOKIE_NAME, token)
        return token


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters live in process memory; start every test from zero."""
    limiter.reset()


@pytest.fixture
def empty_env() -> Generator[AppEnv, None, None]:
    """App with no users at all (first-run state). admin_id is 0."""
    user_store, project_store = _make_test_stores(uuid.uuid4().hex)
    app.router.lifespan_context = _patch_lifespan(user_store, project_store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppEnv(client=client, users=user_store, projects=project_store, admin_id=0)

    project_store.close()
    user_store.close()


@pytest.fixture
def app_env() -> Generator[AppEnv, None, None]:
    """App with one admin (admin@example.com / ADMIN_PASSWORD). Not signed in.

    follow_redirects=False is essential: gate tests assert on redirect
    locations, which are invisible once the client follows them.
    """
    user_store, project_store = _make_test_stores(uuid.uuid4().hex)
    admin_id = user_store.create_user(
        User(name="Admin", email="admin@example.com", password_hash=_ADMIN_HASH, is_admin=True)
    )
    app.router.lifespan_context = _patch_lifespan(user_store, project_store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppEnv(client=client, users=user_store, projects=project_store, admin_id=admin_id)

    project_store.close()
    user_store.close()


@pytest.fixture
def file_stores(tmp_path) -> Generator[tuple[UserStore, ProjectStore], None, None]:
    """Both stores on a real SQLite file, for unit tests that use threads."""
    url = f"sqlite:///{tmp_path / 'pm.db'}"
    user_store, project_store = UserStore(db_url=url), ProjectStore(db_url=url)
    yield user_store, project_store
    project_store.close()
    user_store.close()
