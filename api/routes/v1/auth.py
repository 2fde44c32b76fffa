"""
api/routes/v1/auth.py -- Session and credential-lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login             -- password login; sets session cookie
  POST /api/v1/auth/logout            -- clears cookie; 200
  GET  /api/v1/auth/session           -- current user; refreshes cookie
  POST /api/v1/auth/forgot-password   -- start password reset; always 200
  POST /api/v1/auth/reset-password    -- spend reset token, set new password
  GET  /api/v1/auth/verify-email      -- spend email verification token
  POST /api/v1/auth/signup            -- disabled; invitations only (403)

Security:
  POST /login is rate-limited to 10 requests/minute per IP.
  Unknown email and wrong password share one InvalidCredentials response.
  POST /forgot-password answers identically whether or not the email exists.
  Cache-Control: no-store on every response that carries a session token.

Handlers stay thin: parse, call the auth/ service on app.state, format JSON.
Domain errors (auth.errors.AuthError) are mapped to the error envelope by
the handler registered in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    ResetPasswordRequest,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import get_current_session
from auth.errors import InvalidOrExpiredToken
from auth.lifecycle import CredentialLifecycleManager
from auth.sessions import RefreshedSession, SessionManager, set_session_cookie

# Auth policy:
# - POST /api/v1/auth/login:           public
# - POST /api/v1/auth/logout:          public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/session:         requires session (get_current_session)
# - POST /api/v1/auth/forgot-password: public
# - POST /api/v1/auth/reset-password:  public -- the reset token is the credential
# - GET  /api/v1/auth/verify-email:    public -- the verification token is the credential
# - POST /api/v1/auth/signup:          public, always 403
router = APIRouter()


def _with_session(content: dict, sessions: SessionManager, token: str) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=content)
    set_session_cookie(resp, token, secure=sessions.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit("10/minute")  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=UserEnvelope)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie."""
    sessions: SessionManager = request.app.state.sessions
    result = sessions.login(body.email, body.password)
    content = UserEnvelope(user=UserResponse.from_user(result.user)).model_dump(mode="json")
    return _with_session(content, sessions, result.token)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Clear the session cookie. Tokens are stateless, so nothing else to revoke."""
    resp = JSONResponse(content={"message": "Logged out."})
    request.app.state.sessions.logout(resp)
    return resp


@router.get("/auth/session", response_model=UserEnvelope)
def current_session(session: RefreshedSession = Depends(get_current_session)) -> UserEnvelope:
    """Return the current user, re-read from the store, with a refreshed cookie."""
    return UserEnvelope(user=UserResponse.from_user(session.user))


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Start a password reset. The answer never reveals whether the email exists."""
    lifecycle: CredentialLifecycleManager = request.app.state.lifecycle
    return MessageResponse(message=lifecycle.request_reset(body.email))


@router.post("/auth/reset-password")
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Spend a reset token. Signs the user in only if their email is verified."""
    lifecycle: CredentialLifecycleManager = request.app.state.lifecycle
    result = lifecycle.consume_reset(body.token, body.password)
    if result.token is None:
        return JSONResponse(status_code=200, content={"message": result.message})
    content = UserEnvelope(user=UserResponse.from_user(result.user)).model_dump(mode="json")
    return _with_session(content, request.app.state.sessions, result.token)


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, token: str = Query(default="", max_length=256)) -> MessageResponse:
    """Spend an email verification token from an invitation link."""
    lifecycle: CredentialLifecycleManager = request.app.state.lifecycle
    try:
        result = lifecycle.consume_verification(token)
    except InvalidOrExpiredToken as exc:
        raise HTTPException(
            status_code=404,
            detail={"code": exc.code, "message": "Verification link is invalid or has already been used."},
        ) from exc
    return MessageResponse(message=result.message)


@router.post("/auth/signup", status_code=403)
async def signup() -> JSONResponse:
    """Self-service signup is disabled; accounts are created by invitation."""
    return JSONResponse(
        status_code=403,
        content={
            "error": {
                "code": "signup_disabled",
                "message": "Self-service signups are disabled. Ask an administrator to send an invitation.",
            }
        },
    )
