"""
auth/lifecycle.py -- Password reset and email verification lifecycles.

Password reset:
  request_reset(email)
      Always returns the same acknowledgement (anti-enumeration). For a
      known, active user: generate a 24-byte secret, persist only its SHA-256
      digest with a 60-minute expiry (superseding earlier unused tokens in the
      same transaction), and hand the plaintext link to the mailer.

  consume_reset(secret, new_password)
      Digest the secret and spend the matching token in one transaction with
      the password change. Not found, expired, already used and deactivated
      all collapse into InvalidOrExpiredToken. A session is issued only when
      the email is already verified; otherwise login stays gated on
      verification.

Email verification:
  Tokens are created by auth.directory.UserDirectoryGuard.create_invited_user.
  consume_verification(token) marks the account verified and clears the
  token; a repeat visit on an already verified account is not an error.

TTLs are constants, not settings, so the security posture is auditable.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import InvalidOrExpiredToken, ValidationFailure
from auth.mailer import Mailer, redact_email
from auth.models import User
from auth.passwords import hash_password
from auth.sessions import SessionManager
from auth.store import ALREADY_VERIFIED, UserStore
from auth.tokens import Clock, digest_secret, new_opaque_secret, utcnow

logger = logging.getLogger("aperture.auth")

RESET_TOKEN_TTL = timedelta(minutes=60)
VERIFICATION_TOKEN_TTL = timedelta(hours=72)
RESET_TOKEN_BYTES = 24
VERIFICATION_TOKEN_BYTES = 24
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72  # bcrypt truncates beyond 72 bytes

RESET_REQUESTED_MESSAGE = "If the email exists, reset instructions will arrive shortly."
RESET_UNVERIFIED_MESSAGE = "Password updated. Verify your email before signing in."
VERIFIED_MESSAGE = "Email verified. You can sign in with your temporary password."
ALREADY_VERIFIED_MESSAGE = "Email already verified."


@dataclass(frozen=True)
class ResetResult:
    """Outcome of a successful reset. token is None while the email is unverified."""

    user: User
    token: str | None
    message: str | None = None


@dataclass(frozen=True)
class VerificationResult:
    user: User
    already_verified: bool
    message: str


def validate_password(password: str | None) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailure(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH:
        raise ValidationFailure(f"Password must be at most {MAX_PASSWORD_LENGTH} bytes long.")
    return password


class CredentialLifecycleManager:
    """Orchestrates single-use, time-bounded reset and verification tokens.

    Usage:
        lifecycle = CredentialLifecycleManager(store, mailer, sessions, "https://crm.example.com")
        lifecycle.request_reset("a@example.com")
        result = lifecycle.consume_reset(secret, "new-password")
    """

    def __init__(
        self,
        store: UserStore,
        mailer: Mailer,
        sessions: SessionManager,
        base_url: str,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.sessions = sessions
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_reset(self, email: str) -> str:
        """Start a reset for email. Returns the generic acknowledgement."""
        normalized = (email or "").strip().lower()
        if not normalized:
            raise ValidationFailure("Email is required.")

        user = self.store.get_by_email(normalized)
        if user is None or not user.is_active:
            return RESET_REQUESTED_MESSAGE

        secret = new_opaque_secret(RESET_TOKEN_BYTES)
        now = self._clock()
        expires_at = now + RESET_TOKEN_TTL
        try:
            self.store.replace_reset_token(user.id, digest_secret(secret), expires_at, now)
        except IntegrityError:
            # A concurrent request for the same user committed first; its token
            # is the live one and its email is on the way.
            logger.warning("Concurrent password reset request for user %s; keeping the earlier token", user.id)
            return RESET_REQUESTED_MESSAGE

        self.mailer.send_password_reset(
            email=user.email,
            name=user.name,
            reset_url=f"{self.base_url}/reset-password?token={secret}",
            expires_at=expires_at,
        )
        logger.info("Password reset issued for %s", redact_email(user.email))
        return RESET_REQUESTED_MESSAGE

    def consume_reset(self, secret: str, new_password: str) -> ResetResult:
        """Spend a reset secret and set a new password.

        Raises ValidationFailure for malformed input and InvalidOrExpiredToken
        for every token-related failure.
        """
        secret = (secret or "").strip()
        if not secret:
            raise ValidationFailure("Reset token is required.")
        validate_password(new_password)

        now = self._clock()
        user = self.store.consume_reset_token(digest_secret(secret), hash_password(new_password), now)
        if user is None:
            raise InvalidOrExpiredToken()
        logger.info("Password reset completed for user %s", user.id)

        if not user.email_verified:
            return ResetResult(user=user, token=None, message=RESET_UNVERIFIED_MESSAGE)

        self.store.update_last_login(user.id, now)
        user.last_login_at = now
        return ResetResult(user=user, token=self.sessions.issue_for(user))

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def consume_verification(self, token: str) -> VerificationResult:
        """Mark the account owning token as verified.

        Raises InvalidOrExpiredToken if the token is unknown, expired, or the
        account is deactivated.
        """
        token = (token or "").strip()
        if not token:
            raise ValidationFailure("Verification token is required.")

        outcome = self.store.consume_verification_token(token, self._clock())
        if outcome is None:
            raise InvalidOrExpiredToken()
        state, user = outcome
        if state == ALREADY_VERIFIED:
            return VerificationResult(user=user, already_verified=True, message=ALREADY_VERIFIED_MESSAGE)
        logger.info("Email verified for user %s", user.id)
        return VerificationResult(user=user, already_verified=False, message=VERIFIED_MESSAGE)
