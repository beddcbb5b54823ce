"""
tests/conftest.py -- Shared test fixtures for the auth core.

This module provides:
  - FakeClock: manually advanced clock for RateLimiter window tests
  - provider / gated_provider: AsyncMock doubles of the IdentityProvider protocol
  - session_store / user_store: in-memory stores, one per test
  - make_coordinator: AuthCoordinator factory over a fake provider
  - api_client: TestClient over the real app with isolated stores

Design: The API client uses named shared-memory SQLite URIs (not plain
:memory:) because connections are opened from both the event loop thread
and asyncio.to_thread workers. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

# CRITICAL: Set env before any auth/core import. get_settings() is cached on
# first call and api.main reads allowed_hosts at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.coordinator import AuthCoordinator
from auth.limiter import RateLimiter
from auth.local import LocalIdentityProvider
from auth.store import SessionStore
from auth.users import UserStore
from core.config import get_settings
from core.models import SubjectIdentity

ALICE = SubjectIdentity(subject_id="uid-alice", email="user@example.com", display_name="Alice")


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fake_provider(identity: SubjectIdentity = ALICE) -> AsyncMock:
    """AsyncMock provider whose verify/register succeed with identity."""
    provider = AsyncMock()
    provider.verify.return_value = identity
    provider.register.return_value = identity
    provider.request_otp.return_value = "challenge-1"
    provider.sign_out.return_value = None
    return provider


# ---------------------------------------------------------------------------
# Provider doubles
# ---------------------------------------------------------------------------


@pytest.fixture
def provider() -> AsyncMock:
    return fake_provider()


@pytest.fixture
def gated_provider(provider) -> tuple[AsyncMock, asyncio.Event]:
    """(provider, release): verify() blocks until release is set."""
    release = asyncio.Event()

    async def slow_verify(credential):
        await release.wait()
        return ALICE

    provider.verify.side_effect = slow_verify
    return provider, release


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store() -> Generator[SessionStore, None, None]:
    store = SessionStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def make_coordinator(session_store, clock):
    """Return a factory: make_coordinator(provider=None, **kwargs) -> AuthCoordinator."""

    def _make(provider=None, **kwargs) -> AuthCoordinator:
        kwargs.setdefault("limiter", RateLimiter(clock=clock))
        return AuthCoordinator(provider or fake_provider(), session_store, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[SessionStore, UserStore]:
    """Create isolated named in-memory stores for one test module."""
    session_url = f"sqlite:///file:test_session_{db_suffix}?mode=memory&cache=shared&uri=true"
    users_url = f"sqlite:///file:test_users_{db_suffix}?mode=memory&cache=shared&uri=true"
    return SessionStore(session_url), UserStore(users_url)


def _patch_lifespan(coordinator: AuthCoordinator, users: UserStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test coordinator into app.state so routes never touch the
    production databases. The purge_task is a long-sleeping coroutine because
    shutdown calls .cancel() on a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.coordinator = coordinator
        app.state.users = users
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, AuthCoordinator, list[tuple[str, str]]], None, None]:
    """Yield (client, coordinator, sent_codes) over the real routes.

    The coordinator is fresh per test (own limiter, own state). sent_codes
    collects (phone, code) pairs from the OTP delivery hook.
    """
    session_store, users = _make_test_stores(os.urandom(4).hex())
    sent_codes: list[tuple[str, str]] = []
    provider = LocalIdentityProvider(users, deliver_otp=lambda phone, code: sent_codes.append((phone, code)))
    coordinator = AuthCoordinator(provider, session_store, settings=get_settings())

    app.router.lifespan_context = _patch_lifespan(coordinator, users)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, coordinator, sent_codes

    session_store.close()
    users.close()
