"""
projects/context.py -- Identity & tenancy resolver.

Every handler that touches project data calls get_request_context() once to
obtain the (user_id, project_id) pair that scopes its queries.

User resolution (first present candidate wins):
  1. verified session token (gate result, or verified here)
  2. x-user-id header        -- trusted internal escape hatch
  3. userId query parameter
  4. pm_user_id cookie       -- plain, unsigned hint
The chosen candidate must exist in the user store. Otherwise, or when no
candidate is present, the result falls back to DEFAULT_USER_ID if that user
exists, then to the earliest-created user, then to DEFAULT_USER_ID itself when
the store is empty (callers at bootstrap time never reach this code).

Project resolution:
  x-project-id header -> projectId query -> pm_project_id cookie. A candidate
  is usable only if the project exists and the user is a member; otherwise it
  is skipped and the next one is tried. With no usable candidate the user's
  earliest project is returned, and a "Default" project is provisioned if they
  have none. resolve_project_id() can therefore WRITE to the store.

Neither resolver raises for client input. Store failures propagate.

The x-user-id / x-project-id headers must be stripped by the reverse proxy in
any deployment exposed to untrusted clients.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from fastapi import Request

from auth.dependencies import session_user_id
from auth.store import MAX_ROW_ID, UserStore
from auth.tokens import PROJECT_COOKIE_NAME, USER_COOKIE_NAME, SessionTokenCodec
from projects.store import ProjectStore

logger = logging.getLogger("pmtracker.context")

DEFAULT_USER_ID = 1

USER_HEADER = "x-user-id"
PROJECT_HEADER = "x-project-id"
USER_QUERY_PARAM = "userId"
PROJECT_QUERY_PARAM = "projectId"

_POSITIVE_INT_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class RequestContext:
    user_id: int
    project_id: int


def parse_positive_id(value: str | None) -> int | None:
    """Parse a decimal id string. Returns None unless it is in 1..MAX_ROW_ID."""
    if value is None:
        return None
    value = value.strip()
    if not _POSITIVE_INT_RE.match(value):
        return None
    parsed = int(value)
    return parsed if 0 < parsed <= MAX_ROW_ID else None


def fallback_user_id(users: UserStore) -> int:
    if users.user_exists(DEFAULT_USER_ID):
        return DEFAULT_USER_ID
    earliest = users.earliest_user_id()
    return earliest if earliest is not None else DEFAULT_USER_ID


def resolve_user_id(request: Request, users: UserStore, codec: SessionTokenCodec | None = None) -> int:
    """Return the acting user id for this request. Always returns an int."""
    candidate = session_user_id(request, codec)
    if candidate is None:
        candidate = parse_positive_id(request.headers.get(USER_HEADER))
    if candidate is None:
        candidate = parse_positive_id(request.query_params.get(USER_QUERY_PARAM))
    if candidate is None:
        candidate = parse_positive_id(request.cookies.get(USER_COOKIE_NAME))

    if candidate is not None and users.user_exists(candidate):
        return candidate
    resolved = fallback_user_id(users)
    if candidate is not None:
        logger.debug("Unknown user id %d replaced by fallback %d", candidate, resolved)
    return resolved


def resolve_project_id(request: Request, user_id: int, projects: ProjectStore) -> int:
    """Return the acting project id for user_id. May provision a default project."""
    candidates = (
        request.headers.get(PROJECT_HEADER),
        request.query_params.get(PROJECT_QUERY_PARAM),
        request.cookies.get(PROJECT_COOKIE_NAME),
    )
    for raw in candidates:
        project_id = parse_positive_id(raw)
        if project_id is None:
            continue
        if projects.is_member(project_id, user_id):
            return project_id
        logger.debug("Rejected project %d for user %d: no membership", project_id, user_id)
    return projects.ensure_default_project(user_id)


def get_request_context(request: Request) -> RequestContext:
    """FastAPI dependency: resolve (user_id, project_id) once for this request."""
    user_id = resolve_user_id(request, request.app.state.user_store)
    project_id = resolve_project_id(request, user_id, request.app.state.project_store)
    return RequestContext(user_id=user_id, project_id=project_id)
