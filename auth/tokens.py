"""
auth/tokens.py -- Session token codec, opaque secrets and secret digests.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry the SessionClaims snapshot plus
       a fixed issuer, iat and a 7-day exp. Verification raises the single
       InvalidSession error on every failure (bad signature, wrong issuer,
       expired, missing or mistyped field) so callers cannot tell which check
       tripped.

  Secret injection: SessionCodec takes the signing secret at construction.
       The API lifespan resolves it once from core.config.get_settings() and
       builds one codec per process; tests build as many codecs as they need
       with different secrets, issuers or clocks.

  Expiry: checked here against the codec's clock rather than by jose, so the
       "now" used for verification is explicit and testable. jose still
       validates signature, issuer and claim types.

  Opaque secrets: secrets.token_bytes() encoded as hex or base64url. Reset and
       verification tokens use 24 bytes (192 bits), which makes guessing
       infeasible.

  Digest: SHA-256 of an already high-entropy secret. Fast and deterministic,
       so the store can look a token up by its digest with a unique index.
       bcrypt's slowness buys nothing for a 192-bit random value.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from auth.errors import InvalidSession
from auth.models import ROLES, Permissions, SessionClaims
from auth.permissions import normalize_permissions

ISSUER = "aperture-studio-crm"
SESSION_TTL = timedelta(days=7)

_ALGORITHM = "HS256"
_MIN_SECRET_LENGTH = 32
_MIN_OPAQUE_BYTES = 12
_PERMISSION_KEYS = frozenset(Permissions().as_dict())

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class SessionCodec:
    """Signs and verifies session tokens with an injected symmetric secret.

    Usage:
        codec = SessionCodec(settings.secret_key)
        token = codec.sign_session(SessionClaims.for_user(user))
        claims = codec.verify_session(token)   # raises InvalidSession
    """

    def __init__(self, secret: str, issuer: str = ISSUER, clock: Clock = utcnow) -> None:
        if not secret or len(secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"Session signing secret must be at least {_MIN_SECRET_LENGTH} characters.")
        self._secret = secret
        self.issuer = issuer
        self._clock = clock

    def sign_session(self, claims: SessionClaims) -> str:
        """Encode claims into a signed token expiring SESSION_TTL from now."""
        now = self._clock()
        payload = {
            "sub": claims.user_id,
            "user_id": claims.user_id,
            "email": claims.email,
            "roles": list(claims.roles),
            "role": claims.role,
            "permissions": claims.permissions.as_dict(),
            "email_verified": claims.email_verified,
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + SESSION_TTL).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify_session(self, token: str) -> SessionClaims:
        """Return the claims carried by token, or raise InvalidSession."""
        if not isinstance(token, str) or not token:
            raise InvalidSession()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                options={"verify_exp": False, "require_iss": True},
            )
        except JWTError:
            raise InvalidSession() from None

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidSession()
        if self._clock().timestamp() >= exp:
            raise InvalidSession()
        return _claims_from_payload(payload)


def _claims_from_payload(payload: dict[str, Any]) -> SessionClaims:
    user_id = payload.get("user_id")
    email = payload.get("email")
    roles = payload.get("roles")
    role = payload.get("role")
    permissions = payload.get("permissions")
    email_verified = payload.get("email_verified")

    if not isinstance(user_id, str) or not user_id or payload.get("sub") != user_id:
        raise InvalidSession()
    if not isinstance(email, str) or not isinstance(roles, list):
        raise InvalidSession()
    if not all(isinstance(r, str) for r in roles):
        raise InvalidSession()
    if role not in ROLES or not isinstance(email_verified, bool):
        raise InvalidSession()
    if not isinstance(permissions, dict) or set(permissions) != _PERMISSION_KEYS:
        raise InvalidSession()
    if not all(isinstance(v, bool) for v in permissions.values()):
        raise InvalidSession()

    return SessionClaims(
        user_id=user_id,
        email=email,
        roles=tuple(roles),
        role=role,
        permissions=normalize_permissions(role, permissions),
        email_verified=email_verified,
    )


# ---------------------------------------------------------------------------
# Opaque secrets and digests
# ---------------------------------------------------------------------------


def new_opaque_secret(byte_length: int = 24, encoding: str = "hex") -> str:
    """Return a cryptographically random secret of byte_length bytes.

    encoding is "hex" (reset / verification tokens) or "base64url"
    (temporary passwords; unpadded).
    """
    if byte_length < _MIN_OPAQUE_BYTES:
        raise ValueError(f"Opaque secrets must be at least {_MIN_OPAQUE_BYTES} bytes.")
    raw = secrets.token_bytes(byte_length)
    if encoding == "hex":
        return raw.hex()
    if encoding == "base64url":
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    raise ValueError(f"Unknown secret encoding: {encoding!r}")


def digest_secret(secret: str) -> str:
    """Return the SHA-256 hex digest stored in place of a one-time secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
