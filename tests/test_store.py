"""
tests/test_store.py -- UserStore persistence details.

Covers:
  - legacy rows (camelCase permissions, no roles array, admin via roles)
    are normalized by the row mapper
  - the partial unique index allows one unused reset token per user
  - timestamps round-trip as aware UTC datetimes
  - count_active_admins ignores deactivated admins
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from auth.models import Permissions

_INSERT_USER = text(
    "INSERT INTO users (id, email, role, roles, permissions, created_at, updated_at) "
    "VALUES (:id, :email, :role, :roles, :permissions, :now, :now)"
)


def _raw_user(store, user_id: str, email: str, role: str, roles, permissions) -> None:
    with store.engine.begin() as conn:
        conn.execute(
            _INSERT_USER,
            {
                "id": user_id,
                "email": email,
                "role": role,
                "roles": json.dumps(roles) if roles is not None else None,
                "permissions": json.dumps(permissions) if permissions is not None else None,
                "now": "2025-01-01T00:00:00.000000+00:00",
            },
        )


def test_legacy_camel_case_permissions(store) -> None:
    _raw_user(store, "u-1", "old@example.com", "standard", None, {"canManageUsers": True, "canViewGalleries": False})
    user = store.get_by_id("u-1")
    assert user.permissions.can_manage_users is True
    assert user.permissions.can_view_galleries is False
    assert user.permissions.can_manage_calendar is True
    assert user.roles == ["photographer"]


def test_legacy_admin_from_roles_array(store) -> None:
    _raw_user(store, "u-2", "boss@example.com", "", ["admin", "photographer"], {})
    user = store.get_by_id("u-2")
    assert user.role == "admin"
    assert user.permissions == Permissions.all_granted()


def test_missing_permissions_get_role_defaults(store) -> None:
    _raw_user(store, "u-3", "limited@example.com", "restricted", ["restricted"], None)
    assert store.get_by_id("u-3").permissions == Permissions(
        can_manage_users=False,
        can_edit_settings=False,
        can_view_galleries=True,
        can_manage_integrations=False,
        can_manage_calendar=True,
    )


def test_one_unused_reset_token_per_user(store, make_user, clock) -> None:
    user = make_user("a@example.com")
    store.replace_reset_token(user.id, "a" * 64, clock() + timedelta(hours=1), clock())
    with pytest.raises(IntegrityError):
        with store.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO password_reset_tokens (id, user_id, token_hash, expires_at, created_at) "
                    "VALUES ('t-2', :user_id, :hash, :expires, :now)"
                ),
                {"user_id": user.id, "hash": "b" * 64, "expires": "2099-01-01", "now": "2025-01-01"},
            )


def test_timestamps_round_trip_as_utc(store, make_user, clock) -> None:
    user = make_user("a@example.com")
    assert user.created_at == clock()
    assert user.created_at.utcoffset() == timedelta(0)


def test_count_active_admins(store, make_user) -> None:
    first = make_user("first@example.com", role="admin")
    make_user("second@example.com", role="admin", deactivated=True)
    make_user("staff@example.com")
    assert store.count_active_admins() == 1
    assert store.count_active_admins(exclude_user_id=first.id) == 0


def test_update_user_rejects_unknown_fields(store, make_user, clock) -> None:
    user = make_user("a@example.com")
    with pytest.raises(ValueError):
        store.update_user(user.id, clock(), email="b@example.com")


def test_update_missing_user_returns_none(store, clock) -> None:
    assert store.update_user("nope", clock(), name="x") is None
