"""
auth/directory.py -- User directory guard: invitations and guarded edits.

Invariants enforced here:
  - Role wins: permissions are always normalized against the final role;
    admin forces every capability on.
  - Last admin: an edit that demotes an admin or deactivates an active admin
    only commits if another active admin exists at commit time. The recount
    happens inside the store's write transaction (UserStore.update_user with
    require_other_admin=True), not in a separate read beforehand, so two
    concurrent demotions cannot both pass.
  - No empty writes: edits are diffed against the stored row; an edit that
    changes nothing raises NoChangesSupplied.

Invitations generate a one-time temporary password (bcrypt-hashed before
storage, plaintext only in the invitation email) and a 72-hour verification
token stored on the user row.

ensure_admin() is the operator bootstrap behind `python main.py ensure-admin`:
it creates or restores a verified, active admin without sending mail.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict, NoChangesSupplied, NotFound, ValidationFailure
from auth.lifecycle import VERIFICATION_TOKEN_BYTES, VERIFICATION_TOKEN_TTL, validate_password
from auth.mailer import Mailer, redact_email
from auth.models import ROLE_ADMIN, ROLES, STATUS_ACTIVE, STATUS_INVITED, Permissions, User
from auth.passwords import hash_password
from auth.permissions import build_roles, normalize_permissions, normalize_role
from auth.store import UserStore
from auth.tokens import Clock, new_opaque_secret, utcnow

logger = logging.getLogger("aperture.auth")

TEMPORARY_PASSWORD_BYTES = 12
EDITABLE_FIELDS = frozenset({"name", "role", "permissions", "status", "active"})

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(value: Any) -> str:
    """Trim and lowercase an email, raising ValidationFailure if it is not one."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailure("Email is required.")
    email = value.strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValidationFailure("Please provide a valid email address.")
    return email


def _clean_optional(field: str, value: Any) -> str | None:
    """Trim a nullable text field; blank becomes None."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationFailure(f"{field} must be a string.")
    return value.strip() or None


class UserDirectoryGuard:
    def __init__(self, store: UserStore, mailer: Mailer, base_url: str, clock: Clock = utcnow) -> None:
        self.store = store
        self.mailer = mailer
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    def compute_invitation_defaults(self, role: str, raw_permissions: Any = None) -> Permissions:
        """Permissions a new user receives for role, given optional overrides."""
        return normalize_permissions(role, raw_permissions)

    def list_users(self) -> list[User]:
        return self.store.list_users()

    def create_invited_user(
        self,
        email: str,
        name: str | None = None,
        role: str | None = None,
        raw_permissions: Any = None,
        invited_by: str | None = None,
    ) -> User:
        """Create a user in "invited" state and send the invitation email.

        Raises ValidationFailure for a malformed email and Conflict if the
        email is already registered.
        """
        email = normalize_email(email)
        name = _clean_optional("name", name)
        role = normalize_role(role)

        if self.store.get_by_email(email) is not None:
            raise Conflict()

        temporary_password = new_opaque_secret(TEMPORARY_PASSWORD_BYTES, encoding="base64url")
        verification_token = new_opaque_secret(VERIFICATION_TOKEN_BYTES)
        now = self._clock()

        user = User(
            email=email,
            name=name,
            role=role,
            roles=build_roles(role),
            permissions=self.compute_invitation_defaults(role, raw_permissions),
            password_hash=hash_password(temporary_password),
            status=STATUS_INVITED,
            email_verified_at=None,
            verification_token=verification_token,
            verification_expires_at=now + VERIFICATION_TOKEN_TTL,
            invitation_sent_at=now,
        )
        try:
            created = self.store.create_user(user, now)
        except IntegrityError as exc:
            # Lost a race with a concurrent invitation for the same address.
            raise Conflict() from exc

        self.mailer.send_invitation(
            email=email,
            name=name,
            temporary_password=temporary_password,
            verification_url=f"{self.base_url}/verify-email?token={verification_token}",
            invited_by=invited_by,
        )
        logger.info("Invited %s as %s", redact_email(email), role)
        return created

    def apply_user_edit(self, target_id: str, edits: Mapping[str, Any]) -> User:
        """Apply an admin edit to a user and return the updated record.

        edits contains only the fields the caller supplied, among name, role,
        permissions, status and active.

        Raises NotFound, ValidationFailure, NoChangesSupplied or
        LastAdminViolation. Nothing is persisted when any of them is raised.
        """
        unknown = set(edits) - EDITABLE_FIELDS
        if unknown:
            raise ValidationFailure(f"Unknown fields: {', '.join(sorted(unknown))}.")

        target = self.store.get_by_id(target_id)
        if target is None:
            raise NotFound()

        now = self._clock()
        changes: dict[str, Any] = {}

        for field in ("name", "status"):
            if field in edits:
                value = _clean_optional(field, edits[field])
                if value != getattr(target, field):
                    changes[field] = value

        new_role = target.role
        if "role" in edits:
            if edits["role"] not in ROLES:
                raise ValidationFailure("Invalid role selection.")
            new_role = edits["role"]

        deactivating = False
        if "active" in edits:
            active = edits["active"]
            if not isinstance(active, bool):
                raise ValidationFailure("Active flag must be a boolean.")
            if active and not target.is_active:
                changes["deactivated_at"] = None
            elif not active and target.is_active:
                changes["deactivated_at"] = now
                deactivating = True

        raw_permissions = edits.get("permissions")
        if raw_permissions is not None and not isinstance(raw_permissions, (Mapping, Permissions)):
            raise ValidationFailure("Permissions must be an object.")
        if raw_permissions is None:
            raw_permissions = target.permissions
        permissions = normalize_permissions(new_role, raw_permissions)

        if new_role != target.role:
            changes["role"] = new_role
            changes["roles"] = build_roles(new_role)
        if permissions != target.permissions:
            changes["permissions"] = permissions

        if not changes:
            raise NoChangesSupplied()

        removing_admin = target.is_admin and (new_role != ROLE_ADMIN or deactivating)
        updated = self.store.update_user(target.id, now, require_other_admin=removing_admin, **changes)
        if updated is None:
            raise NotFound()
        logger.info("Updated user %s fields=%s", target.id, ",".join(sorted(changes)))
        return updated

    def ensure_admin(self, email: str, password: str) -> tuple[User, bool]:
        """Make sure email belongs to a verified, active admin with password.

        Operator bootstrap for a fresh workspace or a locked-out one. Returns
        (user, created). An existing account is promoted, reactivated and
        verified, and its password replaced; no email is sent either way.
        """
        email = normalize_email(email)
        password_hash = hash_password(validate_password(password))
        now = self._clock()

        existing = self.store.get_by_email(email)
        if existing is None:
            user = User(
                email=email,
                role=ROLE_ADMIN,
                roles=build_roles(ROLE_ADMIN),
                permissions=Permissions.all_granted(),
                password_hash=password_hash,
                status=STATUS_ACTIVE,
                email_verified_at=now,
            )
            created = self.store.create_user(user, now)
            logger.info("Created admin %s", redact_email(email))
            return created, True

        updated = self.store.update_user(
            existing.id,
            now,
            role=ROLE_ADMIN,
            roles=build_roles(ROLE_ADMIN),
            permissions=Permissions.all_granted(),
            password_hash=password_hash,
            status=STATUS_ACTIVE,
            deactivated_at=None,
            email_verified_at=existing.email_verified_at or now,
            verification_token=None,
            verification_expires_at=None,
        )
        if updated is None:
            raise NotFound()
        logger.info("Promoted %s to admin", redact_email(email))
        return updated, False
