"""
auth/permissions.py -- Role and capability normalization.

normalize_permissions() is the single seam where "role wins" is enforced.
Stored permission blobs accumulate drift (snake_case DB columns from one
migration, camelCase claims from another, partial objects from old edits);
every read and write path runs them through here so authorization checks
elsewhere can trust the shape without re-deriving it.

Rules:
  admin      -> all five capabilities true, whatever the input says.
  restricted -> manage-users, edit-settings, manage-integrations false;
                view-galleries and manage-calendar from input (default true).
  standard   -> manage-users / edit-settings default false, the rest default
                true; explicit input overrides every default.

The function is idempotent: normalize(r, normalize(r, x)) == normalize(r, x).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from auth.models import ROLE_ADMIN, ROLE_RESTRICTED, ROLE_STANDARD, ROLES, Permissions

# (snake_case field, legacy camelCase key)
_FIELDS: tuple[tuple[str, str], ...] = (
    ("can_manage_users", "canManageUsers"),
    ("can_edit_settings", "canEditSettings"),
    ("can_view_galleries", "canViewGalleries"),
    ("can_manage_integrations", "canManageIntegrations"),
    ("can_manage_calendar", "canManageCalendar"),
)


def normalize_role(value: Any, roles: Iterable[str] | None = None) -> str:
    """Return a valid role string.

    Rows written before the role column existed only carry the legacy roles
    array; those are mapped the way the role migration did (admin wins,
    then restricted, otherwise standard).
    """
    if isinstance(value, str) and value.strip().lower() in ROLES:
        return value.strip().lower()
    legacy = {r for r in (roles or ()) if isinstance(r, str)}
    if ROLE_ADMIN in legacy:
        return ROLE_ADMIN
    if ROLE_RESTRICTED in legacy:
        return ROLE_RESTRICTED
    return ROLE_STANDARD


def build_roles(role: str) -> list[str]:
    """Legacy coarse roles array kept alongside role for older consumers."""
    if role == ROLE_ADMIN:
        return ["admin", "photographer"]
    if role == ROLE_RESTRICTED:
        return ["restricted"]
    return ["photographer"]


def _read_flags(raw: Any) -> dict[str, bool]:
    """Extract explicitly supplied flags from heterogeneous input.

    Keys whose value is None count as absent. snake_case wins when both
    spellings are present.
    """
    if isinstance(raw, Permissions):
        return raw.as_dict()
    if not isinstance(raw, Mapping):
        return {}
    flags: dict[str, bool] = {}
    for snake, camel in _FIELDS:
        value = raw.get(snake)
        if value is None:
            value = raw.get(camel)
        if value is not None:
            flags[snake] = bool(value)
    return flags


def normalize_permissions(role: str, raw: Any = None) -> Permissions:
    """Return a fully populated, role-consistent capability set."""
    role = normalize_role(role)
    if role == ROLE_ADMIN:
        return Permissions.all_granted()

    flags = _read_flags(raw)
    if role == ROLE_RESTRICTED:
        return Permissions(
            can_manage_users=False,
            can_edit_settings=False,
            can_view_galleries=flags.get("can_view_galleries", True),
            can_manage_integrations=False,
            can_manage_calendar=flags.get("can_manage_calendar", True),
        )

    defaults = Permissions().as_dict()
    defaults.update(flags)
    return Permissions(**defaults)


def has_capability(role: str, permissions: Permissions, capability: str) -> bool:
    """Admins hold every capability; everyone else is checked flag by flag."""
    if role == ROLE_ADMIN:
        return True
    return bool(getattr(permissions, capability, False))

