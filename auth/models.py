"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these own the domain shape.

Naming: the domain uses snake_case everywhere. The camelCase permission keys
found in older session claims and API payloads are an input-adaptation
concern handled by auth/permissions.normalize_permissions(), never a field
name here.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

ROLE_ADMIN = "admin"
ROLE_STANDARD = "standard"
ROLE_RESTRICTED = "restricted"
ROLES: tuple[str, ...] = (ROLE_ADMIN, ROLE_STANDARD, ROLE_RESTRICTED)

STATUS_INVITED = "invited"
STATUS_ACTIVE = "active"


@dataclass(frozen=True)
class Permissions:
    """Five independent capability flags.

    Frozen so a normalized set can be shared between the user record and the
    session claims without one mutating the other.
    """

    can_manage_users: bool = False
    can_edit_settings: bool = False
    can_view_galleries: bool = True
    can_manage_integrations: bool = True
    can_manage_calendar: bool = True

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)

    @classmethod
    def all_granted(cls) -> "Permissions":
        return cls(True, True, True, True, True)


@dataclass
class User:
    """A workspace member.

    password_hash is a bcrypt hash; the temporary password generated at
    invitation time is never stored in plaintext. verification_token lives on
    the row (not a separate table) because it has a single purpose and is
    cleared once consumed.

    A user is "active" while deactivated_at is None. Records are never
    physically deleted by this subsystem.
    """

    email: str
    role: str = ROLE_STANDARD
    permissions: Permissions = field(default_factory=Permissions)
    id: str | None = None
    name: str | None = None
    password_hash: str | None = None
    roles: list[str] = field(default_factory=list)
    status: str | None = None
    email_verified_at: datetime | None = None
    verification_token: str | None = None
    verification_expires_at: datetime | None = None
    invitation_sent_at: datetime | None = None
    deactivated_at: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def is_active(self) -> bool:
        return self.deactivated_at is None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class PasswordResetToken:
    """A single-use reset credential.

    token_hash is SHA-256 of the plaintext secret. The secret itself only
    ever exists in the reset link handed to the mailer.
    """

    user_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SessionClaims:
    """Authorization snapshot carried inside a session token."""

    user_id: str
    email: str
    roles: tuple[str, ...]
    role: str
    permissions: Permissions
    email_verified: bool

    @classmethod
    def for_user(cls, user: User) -> "SessionClaims":
        if user.id is None:
            raise ValueError("Cannot build session claims for an unsaved user.")
        return cls(
            user_id=user.id,
            email=user.email,
            roles=tuple(user.roles),
            role=user.role,
            permissions=user.permissions,
            email_verified=user.email_verified,
        )
