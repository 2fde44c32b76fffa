"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_reset_token are the
mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every read-then-write unit runs inside a single engine.begin() transaction:
    - replace_reset_token(): delete unused tokens + insert, guarded by the
      partial unique index "one unused token per user". Two concurrent
      requests cannot both leave a live token; the loser gets IntegrityError.
    - consume_reset_token(): conditional UPDATE ... WHERE used_at IS NULL, so
      only one consumer of a digest can win.
    - consume_verification_token(): conditional UPDATE keyed on the token.
    - update_user(require_other_admin=True): the UPDATE carries an
      "another active admin exists" condition and its rowcount is checked,
      so the recount happens under the write lock on every backend. Where
      SELECT ... FOR UPDATE is supported the admin rows are locked first, so
      a concurrent demotion waits and then sees the committed state.

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision, +00:00 suffix) so text comparison in SQL orders them correctly.

Legacy shapes: the permissions column may hold camelCase keys, partial
objects or nothing at all, and old rows may lack a role. The mapper runs
both through auth.permissions so the domain only ever sees normalized data.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.errors import LastAdminViolation
from auth.models import ROLE_ADMIN, STATUS_ACTIVE, PasswordResetToken, Permissions, User
from auth.permissions import build_roles, normalize_permissions, normalize_role

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'aperture_auth.db'}"

VERIFIED = "verified"
ALREADY_VERIFIED = "already_verified"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),  # always lowercase
    Column("name", Text),
    Column("password_hash", Text),
    Column("role", String(20), nullable=False, server_default="standard"),
    Column("roles", JSON),  # legacy coarse roles array
    Column("permissions", JSON),  # snake_case keys; legacy rows may differ
    Column("status", String(50)),
    Column("email_verified_at", String(32)),
    Column("verification_token", String(128), unique=True),  # NULLs are distinct
    Column("verification_expires_at", String(32)),
    Column("invitation_sent_at", String(32)),
    Column("deactivated_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

# At most one unused reset token per user.
Index(
    "uq_password_reset_tokens_unused_user",
    _reset_tokens.c.user_id,
    unique=True,
    sqlite_where=_reset_tokens.c.used_at.is_(None),
    postgresql_where=_reset_tokens.c.used_at.is_(None),
)
Index("ix_password_reset_tokens_expires_at", _reset_tokens.c.expires_at)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_DATETIME_FIELDS = frozenset(
    {
        "email_verified_at",
        "verification_expires_at",
        "invitation_sent_at",
        "deactivated_at",
        "last_login_at",
    }
)
_UPDATABLE_FIELDS = (
    frozenset({"name", "role", "roles", "permissions", "status", "password_hash", "verification_token"})
    | _DATETIME_FIELDS
)


def _user_values(fields: dict) -> dict:
    """Convert domain-typed update fields into column values."""
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
    values: dict = {}
    for key, value in fields.items():
        if key in _DATETIME_FIELDS:
            values[key] = _to_iso(value)
        elif key == "permissions":
            values[key] = value.as_dict() if isinstance(value, Permissions) else value
        elif key == "roles":
            values[key] = list(value)
        else:
            values[key] = value
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and PasswordResetToken entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@example.com"), now=utcnow())
        store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime) -> User:
        """Insert a new user and return it with id and timestamps assigned.

        Raises sqlalchemy.exc.IntegrityError if the email (or verification
        token) already exists. Callers translate that into Conflict.
        """
        user_id = user.id or str(uuid.uuid4())
        stamp = _to_iso(now)
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    roles=list(user.roles),
                    permissions=user.permissions.as_dict(),
                    status=user.status,
                    email_verified_at=_to_iso(user.email_verified_at),
                    verification_token=user.verification_token,
                    verification_expires_at=_to_iso(user.verification_expires_at),
                    invitation_sent_at=_to_iso(user.invitation_sent_at),
                    deactivated_at=_to_iso(user.deactivated_at),
                    last_login_at=_to_iso(user.last_login_at),
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. Callers pass the lowercase form."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_verification_token(self, token: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.verification_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at, _users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self, exclude_user_id: str | None = None) -> int:
        """Return the number of non-deactivated admins, optionally excluding one user."""
        with self.engine.connect() as conn:
            return _count_active_admins(conn, exclude_user_id)

    def update_user(self, user_id: str, now: datetime, require_other_admin: bool = False, **fields) -> User | None:
        """Apply field updates to a user and return the fresh record.

        Accepted fields: name, role, roles, permissions, status, password_hash,
        and the datetime columns. Datetimes are passed as datetime objects.

        require_other_admin: when True, the write only happens if at least one
        OTHER active admin exists at commit time; otherwise LastAdminViolation
        is raised and the transaction rolls back with nothing persisted.

        Returns None if user_id does not exist.
        """
        values = _user_values(fields)
        values["updated_at"] = _to_iso(now)
        with self.engine.begin() as conn:
            target = conn.execute(_users.select().where(_users.c.id == user_id).with_for_update()).first()
            if target is None:
                return None
            stmt = _users.update().where(_users.c.id == user_id).values(**values)
            if require_other_admin:
                if _count_active_admins(conn, user_id, lock=True) == 0:
                    raise LastAdminViolation()
                # Re-checked by the UPDATE itself, which runs under the write lock.
                stmt = stmt.where(_other_active_admin_exists(user_id))
            result = conn.execute(stmt)
            if require_other_admin and result.rowcount != 1:
                raise LastAdminViolation()
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def update_last_login(self, user_id: str, now: datetime) -> None:
        """Stamp last_login_at after a successful authentication."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=_to_iso(now)))

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def consume_verification_token(self, token: str, now: datetime) -> tuple[str, User] | None:
        """Mark the user owning token as verified.

        Returns (VERIFIED, user) on success, (ALREADY_VERIFIED, user) if the
        account was verified already, or None if the token is unknown,
        expired, or belongs to a deactivated account.
        """
        stamp = _to_iso(now)
        with self.engine.begin() as conn:
            row = conn.execute(
                _users.select().where(_users.c.verification_token == token).with_for_update()
            ).fetchone()
            if row is None:
                return None
            if row.verification_expires_at and row.verification_expires_at < stamp:
                return None
            if row.deactivated_at is not None:
                return None
            if row.email_verified_at is not None:
                return ALREADY_VERIFIED, _row_to_user(row)
            result = conn.execute(
                _users.update()
                .where((_users.c.id == row.id) & (_users.c.verification_token == token))
                .values(
                    email_verified_at=stamp,
                    verification_token=None,
                    verification_expires_at=None,
                    status=row.status or STATUS_ACTIVE,
                    updated_at=stamp,
                )
            )
            if result.rowcount != 1:
                return None
            fresh = conn.execute(_users.select().where(_users.c.id == row.id)).fetchone()
        return VERIFIED, _row_to_user(fresh)

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_reset_token(self, user_id: str, token_hash: str, expires_at: datetime, now: datetime) -> PasswordResetToken:
        """Supersede the user's unused reset tokens with a new one, atomically.

        Raises sqlalchemy.exc.IntegrityError if a concurrent request inserted
        its own token first; the unique index guarantees only one survives.
        """
        token_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.user_id == user_id) & (_reset_tokens.c.used_at.is_(None))
                )
            )
            conn.execute(
                _reset_tokens.insert().values(
                    id=token_id,
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=_to_iso(expires_at),
                    created_at=_to_iso(now),
                )
            )
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.id == token_id)).fetchone()
        return _row_to_reset_token(row)

    def get_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def list_reset_tokens(self, user_id: str) -> list[PasswordResetToken]:
        """Return every reset token row for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _reset_tokens.select()
                .where(_reset_tokens.c.user_id == user_id)
                .order_by(_reset_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_reset_token(r) for r in rows]

    def consume_reset_token(self, token_hash: str, password_hash: str, now: datetime) -> User | None:
        """Spend a reset token and store the new password hash in one transaction.

        The token must exist, be unused, be unexpired at now, and belong to a
        non-deactivated user. The used_at stamp is a conditional update, so
        two concurrent consumers of the same digest cannot both succeed.
        Sibling tokens for the user are deleted.

        Returns the updated User, or None if any condition fails.
        """
        stamp = _to_iso(now)
        with self.engine.begin() as conn:
            token = conn.execute(
                select(_reset_tokens)
                .join(_users, _users.c.id == _reset_tokens.c.user_id)
                .where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & (_reset_tokens.c.used_at.is_(None))
                    & (_reset_tokens.c.expires_at > stamp)
                    & (_users.c.deactivated_at.is_(None))
                )
                .with_for_update()
            ).fetchone()
            if token is None:
                return None
            claimed = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.id == token.id) & (_reset_tokens.c.used_at.is_(None)))
                .values(used_at=stamp)
            )
            if claimed.rowcount != 1:
                return None
            conn.execute(
                _users.update()
                .where(_users.c.id == token.user_id)
                .values(password_hash=password_hash, updated_at=stamp)
            )
            conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.user_id == token.user_id) & (_reset_tokens.c.id != token.id)
                )
            )
            row = conn.execute(_users.select().where(_users.c.id == token.user_id)).fetchone()
        return _row_to_user(row)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


def _other_active_admin_exists(user_id: str):
    others = _users.alias("others")
    return (
        select(others.c.id)
        .where((others.c.role == ROLE_ADMIN) & (others.c.deactivated_at.is_(None)) & (others.c.id != user_id))
        .exists()
    )


def _count_active_admins(conn: Connection, exclude_user_id: str | None = None, lock: bool = False) -> int:
    condition = (_users.c.role == ROLE_ADMIN) & (_users.c.deactivated_at.is_(None))
    if exclude_user_id is not None:
        condition = condition & (_users.c.id != exclude_user_id)
    if lock:
        # Lock the rows themselves; FOR UPDATE is not allowed with aggregates.
        rows = conn.execute(select(_users.c.id).where(condition).with_for_update()).fetchall()
        return len(rows)
    return conn.execute(select(func.count()).select_from(_users).where(condition)).scalar() or 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    roles = row.roles if isinstance(row.roles, list) else []
    role = normalize_role(row.role, roles)
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=role,
        roles=[r for r in roles if isinstance(r, str)] or build_roles(role),
        permissions=normalize_permissions(role, row.permissions),
        status=row.status,
        email_verified_at=_from_iso(row.email_verified_at),
        verification_token=row.verification_token,
        verification_expires_at=_from_iso(row.verification_expires_at),
        invitation_sent_at=_from_iso(row.invitation_sent_at),
        deactivated_at=_from_iso(row.deactivated_at),
        last_login_at=_from_iso(row.last_login_at),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_from_iso(row.expires_at),
        used_at=_from_iso(row.used_at),
        created_at=_from_iso(row.created_at),
    )
