"""
tests/conftest.py -- Shared test fixtures for ScopeGate unit and integration tests.

This module provides:
  - FakeClock / RecordingSmsChannel: deterministic time and an SMS outbox
  - store, engine, codec, service, role_manager: wired service objects over
    an isolated in-memory DB, one per test
  - make_user: factory fixture that inserts a user straight into the store
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any auth/core
import: get_settings() is cached on first use, and the route rate limits are
read when api.routes.v1.auth is imported.
"""

from __future__ import annotations

import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_app_state
from auth.models import User
from auth.permissions import Actor, PermissionEngine
from auth.roles import RoleManager, load_catalog
from auth.service import AuthService
from auth.sms import SmsChannel
from auth.store import UserStore
from auth.tokens import TokenCodec, hash_password
from core.config import Settings, get_settings

ACCESS_SECRET = "a" * 32 + "-access-signing-secret"
REFRESH_SECRET = "r" * 32 + "-refresh-signing-secret"
DEFAULT_PASSWORD = "correct-horse-battery"
EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSmsChannel(SmsChannel):
    """Keeps every message in an outbox instead of sending it."""

    name = "recording"

    def __init__(self, delivered: bool = True) -> None:
        self.outbox: list[tuple[str, str]] = []
        self.delivered = delivered

    def send(self, phone: str, message: str) -> bool:
        self.outbox.append((phone, message))
        return self.delivered

    def last_code_for(self, phone: str) -> str:
        for to, message in reversed(self.outbox):
            if to == phone:
                return re.search(r"\b(\d{6})\b", message).group(1)
        raise AssertionError(f"No SMS sent to {phone}")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


def _make_user(
    store: UserStore,
    *,
    role_id: str = "user",
    email: str | None = None,
    phone: str | None = None,
    username: str | None = None,
    password: str | None = DEFAULT_PASSWORD,
    department_id: str | None = None,
    team_id: str | None = None,
    is_active: bool = True,
    display_name: str = "Test User",
) -> User:
    """Insert a user directly, bypassing registration rules."""
    return store.create_user(
        User(
            display_name=display_name,
            role_id=role_id,
            email=email,
            phone=phone,
            username=username,
            hashed_password=hash_password(password) if password else None,
            department_id=department_id,
            team_id=team_id,
            is_active=is_active,
        )
    )


# ---------------------------------------------------------------------------
# Function-scoped service fixtures -- a fresh DB per test
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        bcrypt_rounds=4,
        otp_ttl_seconds=300,
        otp_rate_limit_window_seconds=60,
        otp_rate_limit_max=3,
        social_link_by_email=True,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sms() -> RecordingSmsChannel:
    return RecordingSmsChannel()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore(_memory_url(f"test_unit_{uuid.uuid4().hex}"))
    yield s
    s.close()


@pytest.fixture
def engine(store: UserStore) -> PermissionEngine:
    return PermissionEngine(load_catalog(store))


@pytest.fixture
def codec(clock: FakeClock) -> TokenCodec:
    return TokenCodec(ACCESS_SECRET, REFRESH_SECRET, access_ttl_seconds=900, refresh_ttl_seconds=604800, clock=clock)


@pytest.fixture
def service(
    store: UserStore,
    codec: TokenCodec,
    engine: PermissionEngine,
    settings: Settings,
    sms: RecordingSmsChannel,
    clock: FakeClock,
) -> AuthService:
    return AuthService(store, codec, engine, settings, sms, clock=clock)


@pytest.fixture
def role_manager(store: UserStore, engine: PermissionEngine) -> RoleManager:
    return RoleManager(store, engine)


@pytest.fixture
def make_user(store: UserStore):
    """Factory: make_user(role_id="employee", email=..., ...) -> stored User.

    Password defaults to DEFAULT_PASSWORD ("correct-horse-battery").
    """

    def factory(**kwargs) -> User:
        return _make_user(store, **kwargs)

    return factory


@pytest.fixture
def actor_of():
    """Return a function mapping a stored User to the Actor it would act as."""

    def to_actor(user: User) -> Actor:
        return Actor(user_id=user.id, role_id=user.role_id, department_id=user.department_id, team_id=user.team_id)

    return to_actor


# ---------------------------------------------------------------------------
# Integration fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state through the same init_app_state() the
    real lifespan uses, then swaps in a recording SMS channel and a mocked
    OAuth registry so no test reaches the network.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, user_store, get_settings())
        app.state.auth_service.sms = RecordingSmsChannel()
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The super
    admin is created once the lifespan has seeded the role catalog, and its
    access token is issued by the app's own service.
    """
    user_store = UserStore(_memory_url(f"test_api_{uuid.uuid4().hex}"))
    app.router.lifespan_context = _patch_lifespan(user_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        admin = _make_user(user_store, role_id="super_admin", username="rootadmin", display_name="Root Admin")
        token = app.state.auth_service.issue_tokens(admin).access_token
        yield client, token, admin.id

    user_store.close()
