"""
auth/passwords.py -- Credential hasher (bcrypt).

Passwords are low-entropy and user-chosen, so they get a deliberately slow,
salted hash. Cost 12 is fixed here; callers treat hashing as a fixed-cost
synchronous step.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Contrast with auth/tokens.digest_secret(): reset and verification secrets
already carry 192 bits of entropy, so they get a fast deterministic SHA-256
digest instead. Do not swap the two.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

BCRYPT_ROUNDS = 12


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Each call embeds a fresh random salt, so hashing the same input twice
    yields different strings. bcrypt truncates input beyond 72 bytes; the API
    layer caps password length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A missing or malformed stored hash returns False instead of raising, so
    a corrupt row reads as a failed login rather than a crash.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login always calls verify_password() even when
# the email does not exist.
DUMMY_HASH: str = hash_password("aperture_timing_dummy")
