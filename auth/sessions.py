"""
auth/sessions.py -- Session manager: login, refresh-on-read, logout.

State machine (per client):
    Anonymous -> login() -> Authenticated
    Authenticated -> verify_and_refresh() -> Authenticated (fresh token)
                                          -> Unauthenticated -> Anonymous
    Authenticated -> logout() -> Anonymous

Refresh-on-read: every authenticated request re-reads the user row and
re-signs a token from CURRENT state. Role, permission and deactivation
changes therefore take effect on the next request instead of waiting out the
7-day token lifetime. There is no server-side session table; logout only
clears the cookie.

Login uses timing equalization: bcrypt runs whether or not the email exists,
so response time does not reveal account existence. Unknown email, wrong
password and deactivated account all raise the same InvalidCredentials.

Layer rule: no imports from api/ or core/. Cookie helpers take any object
with Starlette's set_cookie / delete_cookie interface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import InvalidCredentials, InvalidSession, Unauthenticated
from auth.models import SessionClaims, User
from auth.passwords import DUMMY_HASH, verify_password
from auth.store import UserStore
from auth.tokens import SESSION_TTL, Clock, SessionCodec, utcnow

logger = logging.getLogger("aperture.auth")

SESSION_COOKIE_NAME = "session"
SESSION_MAX_AGE = int(SESSION_TTL.total_seconds())


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: User


@dataclass(frozen=True)
class RefreshedSession:
    """Outcome of verify_and_refresh: current claims, a re-signed token, and the user row."""

    claims: SessionClaims
    token: str
    user: User


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, secure: bool = False) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=SESSION_MAX_AGE,
        path="/",
    )


def clear_session_cookie(response, secure: bool = False) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/", httponly=True, samesite="lax", secure=secure)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SessionManager:
    def __init__(self, store: UserStore, codec: SessionCodec, clock: Clock = utcnow, secure_cookies: bool = False) -> None:
        self.store = store
        self.codec = codec
        self._clock = clock
        self.secure_cookies = secure_cookies

    def issue_for(self, user: User) -> str:
        """Sign a fresh session token from the user's current state."""
        return self.codec.sign_session(SessionClaims.for_user(user))

    def login(self, email: str, password: str) -> LoginResult:
        """Authenticate by email and password.

        Raises InvalidCredentials on any failure, with identical timing for
        unknown emails and wrong passwords.
        """
        normalized = (email or "").strip().lower()
        user = self.store.get_by_email(normalized) if normalized else None
        if user is None or not user.password_hash:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        if not user.is_active:
            raise InvalidCredentials()

        now = self._clock()
        self.store.update_last_login(user.id, now)
        user.last_login_at = now
        logger.info("Login succeeded for user %s", user.id)
        return LoginResult(token=self.issue_for(user), user=user)

    def verify_and_refresh(self, token: str | None) -> RefreshedSession:
        """Verify token, re-read the user, and re-sign from current state.

        Raises Unauthenticated if the token is missing or invalid, or the
        user no longer exists or is deactivated.
        """
        if not token:
            raise Unauthenticated()
        try:
            claims = self.codec.verify_session(token)
        except InvalidSession:
            raise Unauthenticated() from None

        user = self.store.get_by_id(claims.user_id)
        if user is None or not user.is_active:
            logger.info("Rejected session for missing or deactivated user %s", claims.user_id)
            raise Unauthenticated()

        current = SessionClaims.for_user(user)
        return RefreshedSession(claims=current, token=self.codec.sign_session(current), user=user)

    def logout(self, response) -> None:
        """Client-side only: clear the cookie. There is no server session to revoke."""
        clear_session_cookie(response, secure=self.secure_cookies)
