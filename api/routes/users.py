"""
api/routes/users.py -- User directory and administration.

Routes:
  GET    /api/users        -- list all users (any signed-in user)
  POST   /api/users        -- admin: create a user and issue an invitation link
  PATCH  /api/users/{id}   -- self or admin: rename / change email
  DELETE /api/users/{id}   -- admin: delete a user and their memberships

New users have no password. They choose one by opening the invitation link,
which is returned once in the POST response and stored only as a SHA-256 hash.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from sqlalchemy.exc import IntegrityError

from api.models import SuccessResponse, UserCreate, UserCreatedResponse, UserPatch, UserResponse
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from auth.store import MAX_ROW_ID, UserStore
from auth.tokens import generate_invitation_token, hash_invitation_token
from core.config import get_settings
from projects.store import ProjectStore

logger = logging.getLogger("pmtracker.api.users")

router = APIRouter()


def _invitation_link(request: Request, token: str) -> str:
    return str(request.base_url).rstrip("/") + "/invite?token=" + quote(token)


def _check_unique(store: UserStore, name: str | None, email: str | None, user_id: int | None = None) -> None:
    """Raise 409 if another user already holds name or email."""
    if name is not None:
        other = store.get_by_name(name)
        if other is not None and other.id != user_id:
            raise HTTPException(status_code=409, detail="A user with that name already exists")
    if email is not None:
        other = store.get_by_email(email)
        if other is not None and other.id != user_id:
            raise HTTPException(status_code=409, detail="A user with that email already exists")


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, _: User = Depends(get_current_user)) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.post("/users", response_model=UserCreatedResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    admin: User = Depends(require_admin),
) -> UserCreatedResponse:
    """Create a user without a password and return a one-time invitation link.

    The display name defaults to the local part of the email address.
    """
    user_store: UserStore = request.app.state.user_store
    name = body.name or body.email.split("@", 1)[0]
    _check_unique(user_store, name, body.email)

    try:
        user_id = user_store.create_user(User(name=name, email=body.email))
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A user with that name or email already exists") from exc

    token = generate_invitation_token()
    expires_at = int(time.time()) + get_settings().invitation_expire_seconds
    user_store.create_invitation(user_id, hash_invitation_token(token), expires_at)
    logger.info("Admin %d created user %d", admin.id, user_id)

    created = UserResponse.from_user(user_store.get_by_id(user_id))
    return UserCreatedResponse(
        **created.model_dump(),
        invitation_link=_invitation_link(request, token),
        invitation_expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
    )


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    body: UserPatch,
    user_id: int = Path(gt=0, le=MAX_ROW_ID),
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    if current_user.id != user_id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="You can only edit your own profile")
    if user_store.get_by_id(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    _check_unique(user_store, body.name, body.email, user_id=user_id)
    fields = {"name": body.name}
    if body.email is not None:
        fields["email"] = body.email
    try:
        user_store.update_user(user_id, **fields)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A user with that name or email already exists") from exc
    return UserResponse.from_user(user_store.get_by_id(user_id))


@router.delete("/users/{user_id}", response_model=SuccessResponse)
def delete_user(
    request: Request,
    user_id: int = Path(gt=0, le=MAX_ROW_ID),
    admin: User = Depends(require_admin),
) -> SuccessResponse:
    user_store: UserStore = request.app.state.user_store
    project_store: ProjectStore = request.app.state.project_store

    if user_store.get_by_id(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    if user_store.count_users() <= 1:
        raise HTTPException(status_code=400, detail="Cannot delete the last user")

    project_store.remove_user_memberships(user_id)
    user_store.delete_user(user_id)
    logger.info("Admin %d deleted user %d", admin.id, user_id)
    return SuccessResponse()
