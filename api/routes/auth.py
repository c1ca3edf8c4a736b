"""
api/routes/auth.py -- Sign-in, first-run setup, and session endpoints.

Routes:
  GET  /api/auth/bootstrap        -- {"requiresSetup": bool} (public)
  POST /api/auth/bootstrap        -- create the first admin + Default project (public)
  POST /api/auth/login            -- email/password login; sets session cookies (public)
  POST /api/auth/logout           -- clears session cookies (public)
  GET  /api/auth/session          -- who am I; 401 {"authenticated": false} (public)
  POST /api/auth/change-password  -- requires auth
  GET  /api/auth/invite           -- look up an invitation by token (public)
  POST /api/auth/invite           -- accept an invitation, set password, sign in (public)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M1] Bootstrap re-checks has_users() and catches IntegrityError, so two
       concurrent first-run requests cannot both succeed with the same email.
  [M5] Cache-Control: no-store on responses that carry a fresh token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    AcceptInvitationRequest,
    BootstrapRequest,
    BootstrapStatus,
    ChangePasswordRequest,
    InvitationInfo,
    LoginRequest,
    SessionResponse,
    SessionUser,
    SuccessResponse,
    UserEnvelope,
)
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    clear_session_cookies,
    get_session_codec,
    hash_invitation_token,
    hash_password,
    set_session_cookies,
    verify_password,
)
from core.config import get_settings
from projects.store import ProjectStore

logger = logging.getLogger("pmtracker.api.auth")

router = APIRouter()


def _signed_in_response(user: User, project_id: int | None = None) -> JSONResponse:
    """Build the {"user": ...} response and attach fresh session cookies."""
    token = get_session_codec().create(user.id)
    resp = JSONResponse(content=UserEnvelope(user=SessionUser.from_user(user)).model_dump())
    set_session_cookies(resp, user.id, token, project_id=project_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@router.get("/auth/bootstrap", response_model=BootstrapStatus)
def bootstrap_status(request: Request) -> BootstrapStatus:
    user_store: UserStore = request.app.state.user_store
    return BootstrapStatus(requiresSetup=not user_store.has_users())


@router.post("/auth/bootstrap", response_model=UserEnvelope)
def bootstrap(request: Request, body: BootstrapRequest) -> JSONResponse:
    """Create the first admin user, their Default project, and sign them in."""
    user_store: UserStore = request.app.state.user_store
    project_store: ProjectStore = request.app.state.project_store

    if user_store.has_users():  # [M1]
        raise HTTPException(status_code=409, detail="Initial setup has already been completed")

    try:
        user_id = user_store.create_user(
            User(name=body.name, email=body.email, password_hash=hash_password(body.password), is_admin=True)
        )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Initial setup has already been completed") from exc

    project_id = project_store.ensure_default_project(user_id)
    logger.info("Bootstrap complete: admin user %d, project %d", user_id, project_id)
    return _signed_in_response(user_store.get_by_id(user_id), project_id=project_id)


# ---------------------------------------------------------------------------
# Login / logout / session
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=UserEnvelope)
@limiter.limit(get_settings().login_rate_limit)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set session cookies.

    Returns the same error for an unknown email and a wrong password.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)  # [C1]
    if user is None:
        resp = JSONResponse(status_code=401, content={"error": "Invalid email or password"})
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _signed_in_response(user)


@router.post("/auth/logout", response_model=SuccessResponse)
async def logout() -> JSONResponse:
    resp = JSONResponse(content=SuccessResponse().model_dump())
    clear_session_cookies(resp)
    return resp


@router.get("/auth/session", response_model=SessionResponse)
def session(request: Request) -> JSONResponse:
    """Report whether the pm_auth cookie identifies an existing user.

    Public so the login page can ask without being redirected; an invalid
    session is a 401 body rather than a gate response.
    """
    user = try_get_current_user(request)
    if user is None:
        return JSONResponse(status_code=401, content=SessionResponse(authenticated=False).model_dump())
    return JSONResponse(content=SessionResponse(authenticated=True, user=SessionUser.from_user(user)).model_dump())


@router.post("/auth/change-password", response_model=SuccessResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse:
    user_store: UserStore = request.app.state.user_store
    if not verify_password(body.currentPassword, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    user_store.set_password(current_user.id, hash_password(body.newPassword))
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.get("/auth/invite", response_model=InvitationInfo)
def invitation_info(request: Request, token: str = "") -> InvitationInfo:
    user_store: UserStore = request.app.state.user_store
    token = token.strip()
    if not token:
        raise HTTPException(status_code=400, detail="Invitation token is required")
    invitation = user_store.find_valid_invitation(hash_invitation_token(token))
    user = user_store.get_by_id(invitation.user_id) if invitation is not None else None
    if invitation is None or user is None:
        raise HTTPException(status_code=404, detail="Invitation is invalid or expired")
    return InvitationInfo(
        user=SessionUser.from_user(user),
        expires_at=datetime.fromtimestamp(invitation.expires_at, tz=timezone.utc).isoformat(),
    )


@router.post("/auth/invite", response_model=UserEnvelope)
def accept_invitation(request: Request, body: AcceptInvitationRequest) -> JSONResponse:
    """Set the invited user's password, consume the invitation, and sign them in."""
    user_store: UserStore = request.app.state.user_store
    project_store: ProjectStore = request.app.state.project_store

    invitation = user_store.find_valid_invitation(hash_invitation_token(body.token))
    if invitation is None:
        raise HTTPException(status_code=404, detail="Invitation is invalid or expired")
    user_store.accept_invitation(invitation, hash_password(body.password))

    user = user_store.get_by_id(invitation.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="Invitation is invalid or expired")
    logger.info("User %d accepted their invitation", user.id)
    return _signed_in_response(user, project_id=project_store.first_project_for_member(user.id))
