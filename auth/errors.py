"""
auth/errors.py -- Domain error taxonomy for the auth subsystem.

Every failure the subsystem reports to a caller is one of these classes.
Messages are fixed per class: "user not found" and "wrong password" both
surface as InvalidCredentials, "token not found", "expired" and "already
used" all surface as InvalidOrExpiredToken. Callers can branch on the class
(or its code) but never learn which underlying check failed.

Infrastructure failures (SQLAlchemyError, OSError from the mailer) are NOT
wrapped here. They propagate to the API catch-all handler, which logs the
detail server-side and returns a generic 500.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. code is a stable machine label; status_code is the HTTP mapping."""

    code: str = "auth_error"
    message: str = "Authentication failed."
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class InvalidSession(AuthError):
    """Raised by SessionCodec.verify_session for any verification failure."""

    code = "invalid_session"
    message = "Session is invalid."
    status_code = 401


class Unauthenticated(AuthError):
    code = "unauthenticated"
    message = "Authentication required."
    status_code = 401


class Forbidden(AuthError):
    code = "forbidden"
    message = "You do not have permission to perform this action."
    status_code = 403


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    message = "This link is invalid or has expired."
    status_code = 400


class Conflict(AuthError):
    code = "conflict"
    message = "A user with that email already exists."
    status_code = 409


class LastAdminViolation(AuthError):
    code = "last_admin"
    message = "You must keep at least one active admin in the workspace."
    status_code = 400


class NoChangesSupplied(AuthError):
    code = "no_changes"
    message = "No changes supplied."
    status_code = 400


class ValidationFailure(AuthError):
    """Malformed input. The message names the offending field, never stored state."""

    code = "validation_error"
    message = "Invalid input."
    status_code = 400


class NotFound(AuthError):
    code = "not_found"
    message = "User not found."
    status_code = 404
