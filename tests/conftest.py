"""
tests/conftest.py -- Shared test fixtures for evBlog auth tests.

This module provides:
  - make_store(): isolated in-memory credential store
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - store / identity: unit-level fixtures around a fresh store
  - client: TestClient with follow_redirects=False over the full ASGI stack
  - make_user(): insert a user with a known password and role
  - file_store / run_concurrently(): file-backed store and a thread barrier
    for race tests; shared-cache memory databases do not use WAL locking

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import:
  DEBUG=true         get_settings() auto-generates SECRET_KEY instead of raising
  BCRYPT_ROUNDS=4    keeps hashing fast
  ALLOWED_HOSTS      admits TestClient's "testserver" Host header
"""

from __future__ import annotations

import itertools
import os
import threading
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_services
from auth.identity import IdentityResolver
from auth.models import Role, User
from auth.passwords import hash_password
from auth.store import CredentialStore

# ---------------------------------------------------------------------------
# Import the FastAPI app and the web router
# ---------------------------------------------------------------------------

# Mount the web router once, the same way asgi.py does.
if not any(getattr(r, "path", None) == "/auth/callback/{provider}" for r in app.routes):
    from web.routes import router as web_router

    app.include_router(web_router, tags=["Web"])

_db_counter = itertools.count()

ORIGIN = "http://testserver"
PASSWORD = "Str0ng!pass"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "auth") -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Every call gets its own database name so tests never see each other's rows.
    """
    url = f"sqlite:///file:test_{prefix}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    return CredentialStore(db_url=url)


def make_user(
    store: CredentialStore,
    email: str = "reader@example.com",
    *,
    name: str = "Test Reader",
    role: Role = Role.READER,
    password: str | None = PASSWORD,
    verified: bool = True,
) -> User:
    """Insert a user directly through the store and return it."""
    with store.transaction() as tx:
        uid = tx.create_user(
            User(
                email=email,
                name=name,
                role=role,
                hashed_password=hash_password(password) if password else None,
                email_verified=datetime.now(timezone.utc) if verified else None,
            )
        )
        return tx.get_user_by_id(uid)


def run_concurrently(n: int, fn: Callable[[], object]) -> list:
    """Run fn in n threads released together by a barrier.

    Returns one entry per thread: the return value, or the exception raised.
    """
    barrier = threading.Barrier(n)

    def worker():
        barrier.wait()
        try:
            return fn()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(worker) for _ in range(n)]
        return [f.result() for f in futures]


def _patch_lifespan(user_store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state so TestClient routes see an isolated
    database. The OAuth registry is a MagicMock so no test reaches a real
    provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, user_store)
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path: Path) -> Generator[CredentialStore, None, None]:
    """A store on a real SQLite file (WAL mode), for tests that race writers."""
    s = CredentialStore(f"sqlite:///{tmp_path / 'race.db'}")
    yield s
    s.close()


@pytest.fixture
def identity(store: CredentialStore) -> IdentityResolver:
    return IdentityResolver(store)


@pytest.fixture
def app_store() -> Generator[CredentialStore, None, None]:
    """The store behind the `client` fixture, for arranging and asserting rows."""
    s = make_store("api")
    yield s
    s.close()


@pytest.fixture
def client(app_store: CredentialStore) -> Generator[TestClient, None, None]:
    """TestClient over the full app with a fresh store and fresh rate limits.

    follow_redirects=False is essential: tests assert on redirect Location
    headers, which are invisible once the client follows the redirect.
    Origin is sent by default so state-changing API calls pass the CSRF check.
    """
    app.router.lifespan_context = _patch_lifespan(app_store)
    limiter.reset()
    with TestClient(
        app,
        follow_redirects=False,
        raise_server_exceptions=True,
        headers={"Origin": ORIGIN},
    ) as c:
        yield c
    limiter.reset()


def sign_in(client: TestClient, email: str, password: str = PASSWORD):
    """POST /api/auth/signin and return the response. The client keeps the cookie."""
    return client.post("/api/auth/signin", json={"email": email, "password": password})
