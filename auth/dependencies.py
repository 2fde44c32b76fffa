"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. "session" cookie -- set by the web UI login flow.
  2. Authorization: Bearer <token> header -- API clients.

get_current_session() implements refresh-on-read: it verifies the token,
re-reads the user, and writes a re-signed cookie onto the outgoing response.
Routes that depend on it must return a model or dict (not a Response
object) so FastAPI merges that cookie into the final response.

Failures raise the auth/errors taxonomy; api/main.py maps those onto the
JSON error envelope and clears the cookie on 401.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Request/Response/Depends)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request, Response

from auth.errors import Forbidden
from auth.permissions import has_capability
from auth.sessions import SESSION_COOKIE_NAME, RefreshedSession, SessionManager, set_session_cookie


def read_session_token(request: Request) -> str | None:
    """Return the session token from the cookie or the Bearer header, if any."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token and token.strip():
        return token.strip()
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def get_current_session(request: Request, response: Response) -> RefreshedSession:
    """Require a valid session and refresh its cookie.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: RefreshedSession = Depends(get_current_session)): ...
    """
    sessions: SessionManager = request.app.state.sessions
    refreshed = sessions.verify_and_refresh(read_session_token(request))
    set_session_cookie(response, refreshed.token, secure=sessions.secure_cookies)
    return refreshed


def require_user_manager(session: RefreshedSession = Depends(get_current_session)) -> RefreshedSession:
    """Require a verified account holding the manage-users capability (admins always do)."""
    if not session.claims.email_verified:
        raise Forbidden("Verify your email before managing users.")
    if not has_capability(session.claims.role, session.claims.permissions, "can_manage_users"):
        raise Forbidden("You do not have permission to manage users.")
    return session
