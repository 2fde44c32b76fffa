"""
tests/conftest.py -- Shared test fixtures for Aperture Auth.

This module provides:
  - RecordingMailer: captures outbound mail instead of writing log files
  - FakeClock: a controllable "now" shared by codec, store and services
  - store / codec / sessions / lifecycle / directory: service graph over an
    isolated in-memory database, one per test
  - make_user: inserts a user with a known password
  - file_store / file_*: the same services over a file-backed database, and
    hold_statements, for tests that race two threads
  - api: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
A uuid in the name keeps every test on its own database.

The DEBUG env var must be set before any core import so get_settings()
auto-generates the signing secret in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import threading
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate the signing secret in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

from api.limiter import limiter
from api.main import app
from auth.directory import UserDirectoryGuard
from auth.lifecycle import CredentialLifecycleManager
from auth.mailer import MailerResult
from auth.models import STATUS_ACTIVE, User
from auth.passwords import hash_password
from auth.permissions import build_roles, normalize_permissions
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import SessionCodec

TEST_SECRET = "test-signing-secret-0123456789abcdef"
BASE_URL = "https://crm.example.test"
DEFAULT_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class RecordingMailer:
    """Mailer double. Keeps every message so tests can read links and secrets."""

    invitations: list[dict] = field(default_factory=list)
    resets: list[dict] = field(default_factory=list)

    def send_invitation(self, email, name, temporary_password, verification_url, invited_by) -> MailerResult:
        self.invitations.append(
            {
                "email": email,
                "name": name,
                "temporary_password": temporary_password,
                "verification_url": verification_url,
                "invited_by": invited_by,
            }
        )
        return MailerResult(sent=True, message="recorded")

    def send_password_reset(self, email, name, reset_url, expires_at) -> MailerResult:
        self.resets.append({"email": email, "name": name, "reset_url": reset_url, "expires_at": expires_at})
        return MailerResult(sent=True, message="recorded")


class FakeClock:
    """Callable clock frozen at a fixed instant until advanced."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = UserStore(db_url=_memory_db_url("test_auth"))
    yield user_store
    user_store.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def signing_secret() -> str:
    return TEST_SECRET


@pytest.fixture
def password() -> str:
    """Password every make_user / api account is created with."""
    return DEFAULT_PASSWORD


@pytest.fixture
def codec(clock: FakeClock) -> SessionCodec:
    return SessionCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def sessions(store: UserStore, codec: SessionCodec, clock: FakeClock) -> SessionManager:
    return SessionManager(store, codec, clock=clock)


@pytest.fixture
def lifecycle(store, mailer, sessions, clock) -> CredentialLifecycleManager:
    return CredentialLifecycleManager(store, mailer, sessions, BASE_URL, clock=clock)


@pytest.fixture
def directory(store, mailer, clock) -> UserDirectoryGuard:
    return UserDirectoryGuard(store, mailer, BASE_URL, clock=clock)


@pytest.fixture
def make_user(store: UserStore, clock: FakeClock):
    """Factory: insert an active user with DEFAULT_PASSWORD and return it."""

    def _make(
        email: str,
        role: str = "standard",
        password: str = DEFAULT_PASSWORD,
        verified: bool = True,
        deactivated: bool = False,
        permissions=None,
    ) -> User:
        now = clock()
        user = User(
            email=email,
            role=role,
            roles=build_roles(role),
            permissions=normalize_permissions(role, permissions),
            password_hash=hash_password(password),
            status=STATUS_ACTIVE,
            email_verified_at=now if verified else None,
            deactivated_at=now if deactivated else None,
        )
        return store.create_user(user, now)

    return _make


# ---------------------------------------------------------------------------
# Concurrency fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def file_store(tmp_path) -> Generator[UserStore, None, None]:
    """File-backed store for tests that write from two threads at once.

    Shared-cache memory databases lock whole tables and fail fast instead of
    waiting, so write contention is exercised against a real file where
    SQLite's busy timeout applies.
    """
    user_store = UserStore(db_url=f"sqlite:///{tmp_path / 'concurrent.db'}")
    yield user_store
    user_store.close()


@pytest.fixture
def file_sessions(file_store, clock) -> SessionManager:
    return SessionManager(file_store, SessionCodec(TEST_SECRET, clock=clock), clock=clock)


@pytest.fixture
def file_lifecycle(file_store, mailer, file_sessions, clock) -> CredentialLifecycleManager:
    return CredentialLifecycleManager(file_store, mailer, file_sessions, BASE_URL, clock=clock)


@pytest.fixture
def file_directory(file_store, mailer, clock) -> UserDirectoryGuard:
    return UserDirectoryGuard(file_store, mailer, BASE_URL, clock=clock)


@pytest.fixture
def hold_statements():
    """Factory: make two threads meet before a matching SQL statement.

    hold_statements(store, "UPDATE users") blocks each thread at its first
    statement starting with the prefix until the other thread gets there too,
    so both have finished every read that precedes the write.
    """

    def _install(user_store: UserStore, prefix: str, parties: int = 2) -> None:
        barrier = threading.Barrier(parties, timeout=10)
        arrived: set[int] = set()
        guard = threading.Lock()

        @event.listens_for(user_store.engine, "before_cursor_execute")
        def _hold(conn, cursor, statement, parameters, context, executemany):
            if not statement.lstrip().upper().startswith(prefix.upper()):
                return
            with guard:
                if threading.get_ident() in arrived or len(arrived) >= parties:
                    return
                arrived.add(threading.get_ident())
            barrier.wait()

    return _install


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """The login limiter is process-global; start every test with fresh counters."""
    limiter.reset()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    mailer: RecordingMailer
    directory: UserDirectoryGuard

    def login(self, email: str, password: str = DEFAULT_PASSWORD):
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _patch_lifespan(user_store: UserStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and recording mailer into app.state so TestClient
    routes see an isolated database and no mail is written to disk. The
    services use the real clock: HTTP tests do not simulate time.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        sessions = SessionManager(user_store, SessionCodec(TEST_SECRET))
        app.state.user_store = user_store
        app.state.sessions = sessions
        app.state.lifecycle = CredentialLifecycleManager(user_store, mailer, sessions, BASE_URL)
        app.state.directory = UserDirectoryGuard(user_store, mailer, BASE_URL)
        yield

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness with an admin (admin@example.com) already created.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    """
    user_store = UserStore(db_url=_memory_db_url("test_api"))
    recording = RecordingMailer()
    directory = UserDirectoryGuard(user_store, recording, BASE_URL)
    directory.ensure_admin("admin@example.com", DEFAULT_PASSWORD)

    app.router.lifespan_context = _patch_lifespan(user_store, recording)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=user_store, mailer=recording, directory=directory)

    user_store.close()
