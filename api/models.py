"""
API request and response models for Aperture Auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    standard = "standard"
    restricted = "restricted"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No whitespace stripping here: passwords may legitimately contain spaces.
    SessionManager.login() trims and lowercases the email itself.
    """

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password.

    Length rules for the new password are enforced by the lifecycle manager
    so API and non-API callers share one policy.
    """

    token: str = Field(max_length=256)
    password: str = Field(max_length=255)


class UserInvite(BaseModel):
    """Request body for POST /api/v1/users.

    permissions accepts either snake_case (can_manage_users) or legacy
    camelCase (canManageUsers) keys; auth.permissions normalizes both.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)
    name: Optional[str] = Field(default=None, max_length=255)
    role: RoleEnum = RoleEnum.standard
    permissions: Optional[dict[str, Any]] = None


class UserEdit(BaseModel):
    """Request body for PUT /api/v1/users/{id}.

    Only fields present in the request body are applied; routes read them
    with model_dump(exclude_unset=True). Sending "name": null clears the name.
    """

    name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[str] = Field(default=None, max_length=50)  # checked by the directory guard
    permissions: Optional[dict[str, Any]] = None
    status: Optional[str] = Field(default=None, max_length=50)
    active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_manage_users: bool
    can_edit_settings: bool
    can_view_galleries: bool
    can_manage_integrations: bool
    can_manage_calendar: bool


class UserResponse(BaseModel):
    """Public view of a user. Never includes password or token material."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str]
    roles: list[str]
    role: RoleEnum
    permissions: PermissionsResponse
    status: Optional[str]
    email_verified: bool
    active: bool
    deactivated_at: Optional[str]
    last_login_at: Optional[str]
    invitation_sent_at: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from a domain User (Factory Method)."""

        def _iso(value) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            roles=list(user.roles),
            role=RoleEnum(user.role),
            permissions=PermissionsResponse(**user.permissions.as_dict()),
            status=user.status,
            email_verified=user.email_verified,
            active=user.is_active,
            deactivated_at=_iso(user.deactivated_at),
            last_login_at=_iso(user.last_login_at),
            invitation_sent_at=_iso(user.invitation_sent_at),
            created_at=_iso(user.created_at) or "",
            updated_at=_iso(user.updated_at) or "",
        )


class UserEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Structured error payload. detail is only set for validation errors."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Liveness report. status is "healthy" only when every component is "ok"."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]
