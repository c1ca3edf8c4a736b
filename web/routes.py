"""
web/routes.py -- Jinja2 template routes for the project tracker web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same user and project stores) but return HTML instead of JSON.
Authentication is enforced by the session gate before any handler here runs:
protected pages never see an anonymous request.

Routes:
  GET  /         -- home: resolved user, active project, project switcher
  GET  /login    -- login form, or the first-run setup form when no users exist
  POST /login    -- handle password login (or first-run setup)
  POST /logout   -- clear session cookies, redirect /login
  GET  /invite   -- invitation acceptance page (password is set via the API)
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError

from auth.dependencies import try_get_current_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    clear_session_cookies,
    get_session_codec,
    hash_password,
    set_project_cookie,
    set_session_cookies,
)
from projects.context import RequestContext, get_request_context
from projects.store import ProjectStore

logger = logging.getLogger("pmtracker.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_MIN_PASSWORD_LENGTH = 8

# Whitelist mapping for ?error= query params on /login [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
    "setup_complete": "Setup already complete. Please log in.",
    "setup_invalid": "Name, a valid email, and a password of at least 8 characters are required.",
    "password_mismatch": "Passwords do not match.",
}


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative "//host" targets, which would
    send the user off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def _login_error(code: str, next_url: Optional[str]) -> RedirectResponse:
    params = {"error": code}
    if next_url:
        params["next"] = next_url
    return RedirectResponse(f"/login?{urlencode(params)}", status_code=302)


def _signed_in_redirect(user_id: int, next_url: Optional[str], project_id: Optional[int] = None) -> RedirectResponse:
    resp = RedirectResponse(_safe_next(next_url), status_code=302)  # [C2]
    set_session_cookies(resp, user_id, get_session_codec().create(user_id), project_id=project_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# GET / -- home
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request, ctx: RequestContext = Depends(get_request_context)) -> HTMLResponse:
    """Show who the request resolves to and which project it acts in.

    The resolved project is written back to pm_project_id so a project picked
    with ?projectId= sticks for later requests.
    """
    user_store: UserStore = request.app.state.user_store
    project_store: ProjectStore = request.app.state.project_store
    projects = project_store.list_projects_for_member(ctx.user_id)
    active = next((p for p in projects if p.id == ctx.project_id), None)
    resp = templates.TemplateResponse(
        request,
        "home.html",
        {
            "user": user_store.get_by_id(ctx.user_id),
            "projects": projects,
            "active_project": active,
        },
    )
    set_project_cookie(resp, ctx.project_id)
    return resp


# ---------------------------------------------------------------------------
# Login / logout / first-run setup
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page, or the setup form while no user exists.

    Signed-in visitors never get here: the gate redirects them to /.
    """
    user_store: UserStore = request.app.state.user_store
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    next_url = _safe_next(request.query_params.get("next"))
    template = "login.html" if user_store.has_users() else "setup.html"
    return templates.TemplateResponse(request, template, {"error_msg": error_msg, "next_url": next_url})


@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    name: Optional[str] = Form(None),
    confirm_password: Optional[str] = Form(None),
) -> RedirectResponse:
    """Handle the login form, or the setup form when no users exist yet."""
    user_store: UserStore = request.app.state.user_store
    next_url = request.query_params.get("next")

    if name is not None:
        return _setup_post(request, user_store, name, email, password, confirm_password, next_url)

    user = authenticate_user(user_store, email, password)  # [C1] timing equalization
    if user is None:
        return _login_error("bad_credentials", next_url)
    logger.info("User %d signed in via login form", user.id)
    return _signed_in_redirect(user.id, next_url)


def _setup_post(
    request: Request,
    user_store: UserStore,
    name: str,
    email: str,
    password: str,
    confirm_password: Optional[str],
    next_url: Optional[str],
) -> RedirectResponse:
    """Create the first admin and sign them in.

    [M1] Re-checks has_users() and catches IntegrityError: two concurrent
    setup submissions cannot both create an admin.
    """
    if user_store.has_users():
        return _login_error("setup_complete", next_url)
    if password != confirm_password:
        return _login_error("password_mismatch", next_url)
    if not name.strip() or "@" not in email or len(password) < _MIN_PASSWORD_LENGTH:
        return _login_error("setup_invalid", next_url)

    try:
        user_id = user_store.create_user(
            User(name=name, email=email, password_hash=hash_password(password), is_admin=True)
        )
    except IntegrityError:
        return _login_error("setup_complete", next_url)

    project_store: ProjectStore = request.app.state.project_store
    project_id = project_store.ensure_default_project(user_id)
    logger.info("First-run setup complete: admin user %d", user_id)
    return _signed_in_redirect(user_id, next_url, project_id=project_id)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session cookies and redirect to the login page."""
    resp = RedirectResponse("/login", status_code=302)
    clear_session_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# GET /invite -- invitation acceptance page
# ---------------------------------------------------------------------------


@router.get("/invite", response_class=HTMLResponse)
def invite_page(request: Request, token: str = "") -> HTMLResponse:
    """Render the set-your-password form for an invitation link.

    The token is validated by GET /api/auth/invite from the page script, so
    this handler does not touch the store. A visitor who is already signed in
    sees the page anyway and is switched to the invited account on success.
    """
    return templates.TemplateResponse(
        request,
        "invite.html",
        {"token": token, "signed_in": try_get_current_user(request) is not None},
    )
