"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only the signed pm_auth cookie authenticates a request here. The plain
pm_user_id cookie, x-user-id header and userId query parameter are tenancy
hints for the resolver (projects/context.py) and never prove identity.

session_user_id() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: no imports from api/, web/, or projects/.
  auth/dependencies.py may import from fastapi because this module is part
  of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import AUTH_COOKIE_NAME, SessionTokenCodec, get_session_codec


def session_user_id(request: Request, codec: SessionTokenCodec | None = None) -> int | None:
    """Return the user id proven by the session cookie, or None.

    Reuses the result the gate stored on request.state when present. Routes
    that the gate does not cover (public paths) still get the same check,
    run through the same codec.
    """
    state_uid = getattr(request.state, "session_user_id", None)
    if state_uid is not None:
        return state_uid
    return (codec or get_session_codec()).verify(request.cookies.get(AUTH_COOKIE_NAME))


def try_get_current_user(request: Request) -> User | None:
    """Return the signed-in User, or None. Never raises."""
    uid = session_user_id(request)
    if uid is None:
        return None
    return request.app.state.user_store.get_by_id(uid)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    A valid token whose user has since been deleted is treated as
    unauthenticated.
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(request: Request) -> User:
    """Require the admin flag. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
