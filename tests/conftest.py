"""
tests/conftest.py -- Shared fixtures for the Konabra auth core tests.

This module provides:
  - FrozenClock: an injectable clock tests can advance by hand
  - session_store / token_manager: SessionStore on in-memory SQLite plus a
    manager wired to it and to the frozen clock
  - protector / state: the envelope primitive and the ephemeral store
  - api_client: TestClient over api.main.app with an isolated AppContext

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync dependencies in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

The DEBUG env var must be set before any core.config import so
get_settings() auto-generates SECRET_KEY and PROTECTOR_MASTER_KEY instead of
raising in production mode.
"""

from __future__ import annotations

import os
import secrets
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.context import AppContext
from api.main import app
from auth.sessions import SessionTokenManager
from auth.store import SessionStore
from cache.store import EphemeralStore
from core.config import Settings
from secure.protector import Protector

SECRET = "s" * 48
ISSUER = "konabra-test"
AUDIENCE = ["konabra-web"]


class FrozenClock:
    """Callable clock returning a fixed UTC instant until advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MonotonicClock:
    """Float-seconds clock for EphemeralStore tests."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def session_store() -> Generator[SessionStore, None, None]:
    store = SessionStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def token_manager(session_store: SessionStore, clock: FrozenClock) -> SessionTokenManager:
    return SessionTokenManager(session_store, secret=SECRET, issuer=ISSUER, audience=AUDIENCE, clock=clock)


@pytest.fixture
def master_key() -> bytes:
    return secrets.token_bytes(64)


@pytest.fixture
def protector(master_key: bytes, clock: FrozenClock) -> Protector:
    return Protector(master_key, clock=clock)


@pytest.fixture
def mono_clock() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def state(mono_clock: MonotonicClock) -> Generator[EphemeralStore, None, None]:
    store = EphemeralStore(clock=mono_clock, start_sweeper=False)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _make_test_context(db_suffix: str) -> AppContext:
    settings = Settings(
        debug=True,
        secret_key=SECRET,
        jwt_issuer=ISSUER,
        jwt_audience=AUDIENCE,
        session_db_url=f"sqlite:///file:test_sessions_{db_suffix}?mode=memory&cache=shared&uri=true",
    )
    store = SessionStore(settings.session_db_url)
    manager = SessionTokenManager(store, secret=settings.secret_key, issuer=ISSUER, audience=AUDIENCE)
    return AppContext(
        settings=settings,
        session_store=store,
        token_manager=manager,
        protector=Protector(settings.master_key_bytes()),
        state=EphemeralStore(start_sweeper=False),
    )


def _patch_lifespan(context: AppContext):
    """Return a lifespan that installs a pre-built test context instead of reading env settings."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.context = context
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AppContext], None, None]:
    """Yield (client, context) for HTTP tests against the real app."""
    context = _make_test_context("api")
    original = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(context)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, context

    app.router.lifespan_context = original
    context.close()
