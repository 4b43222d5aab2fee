"""
tests/conftest.py -- Shared test fixtures for the member portal auth tests.

This module provides:
  - settings / codec / stores / manager / guard: unit-level fixtures on a
    private in-memory SQLite engine, with a controllable clock.
  - api_client: TestClient on the real FastAPI app with a patched lifespan.

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any api/ import: api.main reads
get_settings() at import time to configure its middleware.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any api/core import so get_settings() can auto-generate
# SECRET_KEY in dev mode and TrustedHostMiddleware accepts the TestClient host.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, attach_auth_services
from auth.guard import AccessGuard
from auth.models import RegistrationCandidate, User
from auth.sessions import SessionManager
from auth.store import SessionStore, UserStore, build_engine
from auth.tokens import TokenCodec, hash_password
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"


class FakeClock:
    """Mutable clock handed to SessionManager / AccessGuard in place of datetime.now."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(secret_key=TEST_SECRET, bcrypt_rounds=4, debug=True)


@pytest.fixture
def secret_key() -> str:
    return TEST_SECRET


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TEST_SECRET)


@pytest.fixture
def engine():
    eng = build_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def sessions(engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(users, sessions, codec, clock) -> SessionManager:
    return SessionManager(
        users,
        sessions,
        codec,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        bcrypt_rounds=4,
        clock=clock,
    )


@pytest.fixture
def guard(users, sessions, codec, clock) -> AccessGuard:
    return AccessGuard(users, sessions, codec, clock=clock)


@pytest.fixture
def make_user(users):
    """Factory: insert a user directly through the store and return it (no password hash)."""

    def _make(username: str = "alice", password: str = "correct-horse", **fields) -> User:
        user = User(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            name=fields.pop("name", username.title()),
            hashed_password=hash_password(password, rounds=4),
            **fields,
        )
        user_id = users.create_user(user)
        return users.get_by_id(user_id)

    return _make


@pytest.fixture
def candidate() -> RegistrationCandidate:
    return RegistrationCandidate(
        username="alice",
        password="correct-horse",
        email="alice@example.com",
        name="Alice Kim",
        student_number="20230001",
        phone_number="010-0000-0000",
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, engine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine into app.state so TestClient routes see an isolated
    database rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_auth_services(app, settings, engine)
        yield

    return test_lifespan


@pytest.fixture
def api_client(settings) -> Generator[TestClient, None, None]:
    """Yield a TestClient backed by a fresh shared-memory database.

    Function-scoped: every test starts with no users, no sessions and an
    empty cookie jar. Rate limiting is switched off so repeated logins in one
    test are not throttled.
    """
    engine = build_engine(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(settings, engine)
    limiter.enabled = False
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
    limiter.enabled = True
    engine.dispose()


@pytest.fixture
def register_payload() -> dict:
    return {
        "username": "alice",
        "password": "correct-horse",
        "email": "alice@example.com",
        "name": "Alice Kim",
        "student_number": "20230001",
    }
