"""
tests/test_sessions.py -- SessionManager login, refresh-on-read, logout.

Covers:
  - login success stamps last_login_at and returns a verifiable token
  - unknown email / wrong password / deactivated share InvalidCredentials
  - email is matched case-insensitively
  - refresh re-reads the user: role changes show up, deactivation rejects
  - missing, garbage and expired tokens raise Unauthenticated
"""

from __future__ import annotations

import pytest
from starlette.responses import Response

from auth.errors import InvalidCredentials, Unauthenticated
from auth.models import Permissions
from auth.sessions import SESSION_COOKIE_NAME, SESSION_MAX_AGE


class TestLogin:
    def test_success(self, sessions, make_user, store, clock, password) -> None:
        user = make_user("owner@example.com", role="admin")
        clock.advance(minutes=5)

        result = sessions.login("owner@example.com", password)

        assert result.user.id == user.id
        claims = sessions.codec.verify_session(result.token)
        assert claims.user_id == user.id
        assert claims.role == "admin"
        assert claims.permissions == Permissions.all_granted()
        assert store.get_by_id(user.id).last_login_at == clock()

    def test_email_is_case_insensitive(self, sessions, make_user, password) -> None:
        make_user("mixed@example.com")
        assert sessions.login("  Mixed@Example.COM ", password).user.email == "mixed@example.com"

    def test_wrong_password_and_unknown_email_are_indistinguishable(self, sessions, make_user) -> None:
        make_user("a@example.com")

        with pytest.raises(InvalidCredentials) as wrong:
            sessions.login("a@example.com", "not-the-password")
        with pytest.raises(InvalidCredentials) as unknown:
            sessions.login("nobody@example.com", "not-the-password")

        assert type(wrong.value) is type(unknown.value)
        assert wrong.value.code == unknown.value.code
        assert wrong.value.message == unknown.value.message
        assert wrong.value.status_code == unknown.value.status_code == 401

    def test_deactivated_user_cannot_log_in(self, sessions, make_user, password) -> None:
        make_user("gone@example.com", deactivated=True)
        with pytest.raises(InvalidCredentials):
            sessions.login("gone@example.com", password)

    def test_user_without_password_hash(self, sessions, make_user, store, clock) -> None:
        user = make_user("nohash@example.com")
        store.update_user(user.id, clock(), password_hash=None)
        with pytest.raises(InvalidCredentials):
            sessions.login("nohash@example.com", "")


class TestVerifyAndRefresh:
    def test_refresh_returns_new_token_from_current_state(self, sessions, make_user, store, clock, password) -> None:
        user = make_user("staff@example.com")
        token = sessions.login("staff@example.com", password).token

        store.update_user(user.id, clock(), role="restricted", roles=["restricted"])
        clock.advance(hours=1)
        refreshed = sessions.verify_and_refresh(token)

        assert refreshed.claims.role == "restricted"
        assert refreshed.claims.permissions.can_manage_integrations is False
        assert refreshed.token != token
        assert sessions.codec.verify_session(refreshed.token).role == "restricted"

    def test_refresh_extends_horizon(self, sessions, make_user, clock, password) -> None:
        make_user("staff@example.com")
        token = sessions.login("staff@example.com", password).token
        clock.advance(days=6)
        fresh = sessions.verify_and_refresh(token).token
        clock.advance(days=2)
        with pytest.raises(Unauthenticated):
            sessions.verify_and_refresh(token)
        assert sessions.verify_and_refresh(fresh).user.email == "staff@example.com"

    def test_deactivated_user_is_rejected(self, sessions, make_user, store, clock, password) -> None:
        user = make_user("leaver@example.com")
        token = sessions.login("leaver@example.com", password).token
        store.update_user(user.id, clock(), deactivated_at=clock())
        with pytest.raises(Unauthenticated):
            sessions.verify_and_refresh(token)

    @pytest.mark.parametrize("token", [None, "", "not.a.token"])
    def test_bad_tokens(self, sessions, token) -> None:
        with pytest.raises(Unauthenticated):
            sessions.verify_and_refresh(token)


def test_logout_clears_cookie(sessions) -> None:
    response = Response()
    sessions.logout(response)
    cookie = response.headers["set-cookie"]
    assert cookie.startswith(f"{SESSION_COOKIE_NAME}=")
    assert "Max-Age=0" in cookie


def test_cookie_lifetime_matches_session_ttl() -> None:
    assert SESSION_MAX_AGE == 7 * 24 * 60 * 60
