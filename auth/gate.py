"""
auth/gate.py -- Request gate: authentication check before every route.

Every inbound request passes through SessionGateMiddleware before route
dispatch. The middleware verifies the pm_auth cookie once, then applies a
fixed decision table:

  | Path class              | Authenticated | Action                                 |
  |-------------------------|---------------|----------------------------------------|
  | public, /login          | yes           | redirect to /                          |
  | public                  | any           | allow                                  |
  | protected               | yes           | allow                                  |
  | protected, /api/...     | no            | 401 {"error": "Unauthorized"}          |
  | protected, page         | no            | redirect /login?next=<path+query>      |

A malformed or expired token counts as "no token". The gate never raises; it
only allows, redirects, or denies.

The verified user id is stored on request.state.session_user_id so the tenancy
resolver does not verify the same cookie twice.

Layer rule: no imports from api/, web/, or projects/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from auth.tokens import AUTH_COOKIE_NAME, SessionTokenCodec

logger = logging.getLogger("pmtracker.gate")

LOGIN_PATH = "/login"
HOME_PATH = "/"

PUBLIC_PATHS = frozenset(
    {
        LOGIN_PATH,
        "/api/auth/login",
        "/api/auth/logout",
        "/api/auth/session",
        "/api/auth/bootstrap",
        # Invitees are by definition not signed in yet.
        "/invite",
        "/api/auth/invite",
        # Load balancer probe.
        "/api/health",
    }
)

PUBLIC_PREFIXES = ("/static/", "/favicon", "/icons/")


class GateAction(str, Enum):
    allow = "allow"
    redirect = "redirect"
    deny = "deny"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    location: str | None = None


_ALLOW = GateDecision(GateAction.allow)


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def login_redirect_location(path: str, query: str = "") -> str:
    """Build /login?next=... preserving the original path and query string.

    next carries only the path (never scheme or host), so a post-login
    redirect cannot leave the site.
    """
    next_path = f"{path}?{query}" if query else path
    return f"{LOGIN_PATH}?{urlencode({'next': next_path})}"


def decide(path: str, query: str, user_id: int | None) -> GateDecision:
    """Apply the gate decision table to one request. Pure function."""
    authenticated = user_id is not None
    if is_public_path(path):
        if path == LOGIN_PATH and authenticated:
            return GateDecision(GateAction.redirect, HOME_PATH)
        return _ALLOW
    if authenticated:
        return _ALLOW
    if is_api_path(path):
        return GateDecision(GateAction.deny)
    return GateDecision(GateAction.redirect, login_redirect_location(path, query))


class SessionGateMiddleware(BaseHTTPMiddleware):
    """Enforce authentication on every non-public route.

    Register once on the app:
        app.add_middleware(SessionGateMiddleware, codec=get_session_codec())
    """

    def __init__(self, app, codec: SessionTokenCodec) -> None:
        super().__init__(app)
        self.codec = codec

    async def dispatch(self, request: Request, call_next) -> Response:
        user_id = self.codec.verify(request.cookies.get(AUTH_COOKIE_NAME))
        request.state.session_user_id = user_id

        path = request.url.path
        decision = decide(path, request.url.query, user_id)
        if decision.action is GateAction.allow:
            return await call_next(request)
        if decision.action is GateAction.deny:
            logger.debug("Unauthenticated API request denied: %s %s", request.method, path)
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        logger.debug("Redirecting %s to %s", path, decision.location)
        return RedirectResponse(decision.location, status_code=302)
