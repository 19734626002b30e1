"""
tests/conftest.py -- Shared test fixtures for PyroAlert auth tests.

This module provides:
  - make_test_stores(): creates isolated in-memory DBs for users + refresh tokens
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - user_store / refresh_store / two_factor: per-test component fixtures
  - file_stores: file-backed stores for multi-threaded race tests
  - api_client: TestClient plus an admin access token for integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Concurrency tests do NOT use these stores: shared-cache memory databases use
table-level locks that fail fast instead of waiting. They use file_stores,
which lives under tmp_path.

Environment must be set before any auth/core import:
  DEBUG=true               -- get_settings() auto-generates SECRET_KEY
  RATE_LIMIT_ENABLED=false -- repeated logins from one client are not throttled
  BCRYPT_ROUNDS=4          -- minimum cost keeps the suite fast
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_auth_state
from auth.credentials import register_user
from auth.refresh import RefreshTokenStore
from auth.store import UserStore
from auth.totp import TwoFactorEngine
from core.config import get_settings

ADMIN_EMAIL = "admin@pyroalert.test"
ADMIN_PASSWORD = "admin-pass-123"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_stores(db_suffix: str) -> tuple[UserStore, RefreshTokenStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Both stores point at the same database, as they do in production.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'oauth_api', a uuid).
    """
    db_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url=db_url)
    refresh_store = RefreshTokenStore(db_url=db_url, user_store=user_store)
    return user_store, refresh_store


def _patch_lifespan(user_store: UserStore, refresh_store: RefreshTokenStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state through the same
    init_auth_state() the real lifespan uses, so routes see the real issuer,
    2FA engine, and grant handler on top of isolated test DBs.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_auth_state(app, get_settings(), user_store, refresh_store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Component fixtures -- fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[tuple[UserStore, RefreshTokenStore], None, None]:
    user_store, refresh_store = make_test_stores(uuid.uuid4().hex)
    yield user_store, refresh_store
    refresh_store.close()
    user_store.close()


@pytest.fixture
def user_store(stores: tuple[UserStore, RefreshTokenStore]) -> UserStore:
    return stores[0]


@pytest.fixture
def refresh_store(stores: tuple[UserStore, RefreshTokenStore]) -> RefreshTokenStore:
    return stores[1]


@pytest.fixture
def file_stores(tmp_path) -> Generator[tuple[UserStore, RefreshTokenStore], None, None]:
    """File-backed stores for tests that hammer the database from several threads."""
    db_url = f"sqlite:///{tmp_path / 'race.db'}"
    user_store = UserStore(db_url=db_url)
    refresh_store = RefreshTokenStore(db_url=db_url, user_store=user_store)
    yield user_store, refresh_store
    refresh_store.close()
    user_store.close()


@pytest.fixture
def two_factor(user_store: UserStore) -> TwoFactorEngine:
    return TwoFactorEngine(user_store, issuer_name="PyroAlert Test")


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. The
    admin user is created before the client starts; the token is minted by
    the app's own issuer with scope "read write".
    """
    user_store, refresh_store = make_test_stores(request.module.__name__.replace(".", "_"))
    admin = register_user(user_store, ADMIN_EMAIL, ADMIN_PASSWORD, role="admin", name="Test Admin")

    app.router.lifespan_context = _patch_lifespan(user_store, refresh_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        token, _ = app.state.issuer.issue_access_token(admin, ["read", "write"], ttl_seconds=3600)
        yield client, token, admin.id

    refresh_store.close()
    user_store.close()
