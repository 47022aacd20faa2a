"""
tests/conftest.py -- Shared test fixtures for otpauth.

This module provides:
  - RecordingEmailSender: captures outgoing codes instead of sending mail
  - FrozenClock: a settable clock injected into the OTP and token engines
  - store / otp_engine / token_engine / service: unit-level fixtures on a
    fresh in-memory database per test
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment variables must be set before any core/auth/api import so
get_settings() sees them on its first (cached) call.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/auth import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("OTP_HASH_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.otp import OtpEngine
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenEngine
from core.config import get_settings

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class RecordingEmailSender:
    """Stands in for mail.sender: records (email, code) pairs per purpose."""

    def __init__(self, deliver: bool = True) -> None:
        self.deliver = deliver
        self.verification: list[tuple[str, str]] = []
        self.reset: list[tuple[str, str]] = []

    async def send_verification_email(self, to_email: str, code: str) -> bool:
        self.verification.append((to_email, code))
        return self.deliver

    async def send_password_reset_email(self, to_email: str, code: str) -> bool:
        self.reset.append((to_email, code))
        return self.deliver

    def last_verification_code(self, email: str) -> str:
        return [code for to, code in self.verification if to == email][-1]

    def last_reset_code(self, email: str) -> str:
        return [code for to, code in self.reset if to == email][-1]


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def memory_db_url(prefix: str) -> str:
    """Return a unique named shared-memory SQLite URL."""
    return f"sqlite:///file:{prefix}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore(db_url=memory_db_url("test_store"))
    yield s
    s.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def otp_engine(store, settings, clock) -> OtpEngine:
    return OtpEngine(store, settings, clock=clock)


@pytest.fixture
def token_engine(store, settings, clock) -> TokenEngine:
    return TokenEngine(store, settings, clock=clock)


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def service(store, token_engine, otp_engine, mailer) -> AuthService:
    return AuthService(store, token_engine, otp_engine, mailer)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, mailer: RecordingEmailSender):
    """Return a lifespan that wires a test store and recording mailer into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store, get_settings(), email_sender=mailer)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, RecordingEmailSender], None, None]:
    """Yield (client, mailer) for API integration tests.

    One TestClient per test module. Tests use distinct email addresses so
    they do not interfere with each other inside the shared database.
    """
    store = UserStore(db_url=memory_db_url("test_api"))
    mailer = RecordingEmailSender()
    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, mailer

    store.close()

