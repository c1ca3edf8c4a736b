"""
API request and response models for the tracker REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
projects/models.py, which own the internal domain representation. Route
handlers map between the two.

Field names follow the JSON the browser client already sends (camelCase for
auth request bodies, snake_case elsewhere).
"""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User
from auth.store import MAX_ROW_ID
from projects.models import Project

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MIN_PASSWORD_LENGTH = 8


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValueError("Valid email is required")
    return normalized


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Envelope for every error body: {"error": "<message>"}."""

    error: str
    detail: Optional[str] = None


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class BootstrapRequest(BaseModel):
    """First-run admin creation. Only accepted while the user table is empty."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(max_length=320)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=255)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _validate_email(value)


class ChangePasswordRequest(BaseModel):
    currentPassword: str = Field(min_length=1, max_length=255)
    newPassword: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=255)


class AcceptInvitationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=255)


class SessionUser(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    is_admin: bool = False

    @classmethod
    def from_user(cls, user: User) -> "SessionUser":
        return cls(id=user.id, name=user.name, email=user.email, is_admin=user.is_admin)


class UserEnvelope(BaseModel):
    user: SessionUser


class SessionResponse(BaseModel):
    authenticated: bool
    user: Optional[SessionUser] = None


class BootstrapStatus(BaseModel):
    requiresSetup: bool


class InvitationInfo(BaseModel):
    user: SessionUser
    expires_at: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Admin creates a user. The user sets a password via the invitation link."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)
    name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _validate_email(value)


class UserPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=320)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class UserResponse(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    is_admin: bool = False
    created_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            is_admin=user.is_admin,
            created_at=user.created_at or "",
        )


class UserCreatedResponse(UserResponse):
    invitation_link: str
    invitation_expires_at: str


# ---------------------------------------------------------------------------
# Projects and context
# ---------------------------------------------------------------------------


class ProjectCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


class ProjectPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    member_user_ids: Optional[list[int]] = None


class ProjectResponse(BaseModel):
    id: int
    user_id: int
    name: str
    is_default: bool = False
    created_at: str = ""
    updated_at: str = ""
    member_user_ids: list[int] = []

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResponse":
        return cls(
            id=project.id,
            user_id=project.user_id,
            name=project.name,
            is_default=project.is_default,
            created_at=project.created_at or "",
            updated_at=project.updated_at or "",
            member_user_ids=project.member_user_ids,
        )


class ContextResponse(BaseModel):
    user_id: int
    project_id: int


class ProjectSelect(BaseModel):
    project_id: int = Field(gt=0, le=MAX_ROW_ID)


class SuccessResponse(BaseModel):
    success: bool = True


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str]
