"""
tests/conftest.py -- Shared test fixtures for the sign-in service.

This module provides:
  - store / service: an isolated file-backed SQLite UserStore per test
  - alice: a registered user (password "wonderland")
  - make_client: TestClient factory that wires the test store into app.state
    and lets a test choose the client IP the app sees

Design: SQLite files under tmp_path rather than in-memory databases. The
store takes BEGIN IMMEDIATE write locks and TestClient runs sync handlers in
a thread pool; a shared-cache in-memory DB uses table locks that ignore the
busy timeout, and a plain ':memory:' DB is per-connection.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from pathlib import Path

# CRITICAL: Set env before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("SIGNIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import hash_password

# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'auth.db'}"


@pytest.fixture
def store(db_url: str) -> Generator[UserStore, None, None]:
    s = UserStore(db_url)
    yield s
    s.close()


@pytest.fixture
def service(store: UserStore) -> AuthService:
    return AuthService(store)


@pytest.fixture
def alice(store: UserStore) -> User:
    return store.create_user(
        User(username="alice", email="alice@example.com", hashed_password=hash_password("wonderland"))
    )


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


class ClientAddress:
    """ASGI wrapper that overrides scope["client"] so routes see a chosen IP."""

    def __init__(self, asgi_app, host: str) -> None:
        self.app = asgi_app
        self.host = host

    async def __call__(self, scope, receive, send):
        if scope["type"] in ("http", "websocket"):
            scope = dict(scope, client=(self.host, 50000))
        await self.app(scope, receive, send)


def _patch_lifespan(user_store: UserStore, auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    an isolated DB. The purge_task is a long-sleeping coroutine so shutdown
    has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.auth_service = auth_service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def make_client(store: UserStore, service: AuthService) -> Generator[Callable[..., TestClient], None, None]:
    """Yield a factory: make_client(host="127.0.0.1") -> started TestClient.

    follow_redirects=False and raise_server_exceptions=True like every other
    integration test here. Clients are closed (lifespan shut down) at teardown.
    """
    clients: list[TestClient] = []
    app.router.lifespan_context = _patch_lifespan(store, service)

    def _make(host: str = "127.0.0.1") -> TestClient:
        client = TestClient(ClientAddress(app, host), follow_redirects=False, raise_server_exceptions=True)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    return make_client()
