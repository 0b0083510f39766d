"""
tests/conftest.py -- Shared test fixtures for Dim integration tests.

This module provides:
  - make_database(): a Database on a fresh named shared-memory SQLite URI
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - db / user_store / catalog: store-level fixtures on an isolated database
  - file_db: file-backed Database in tmp_path for threaded concurrency tests
  - client: TestClient with no accounts yet (follow_redirects=False)
  - owner_client: (client, owner_token) with the bootstrap owner registered

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture gets its own name, so tests never see each other's accounts.

The environment must be set before any project import so get_settings()
auto-generates SECRET_KEY in dev mode, accepts TestClient's Host header, and
does not rate-limit the many logins the suite performs.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path

# CRITICAL: Set before any auth/core import so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.store import UserStore
from auth.tokens import TokenIssuer
from catalog.store import CatalogStore
from core.config import AuthConfig, get_settings
from core.database import Database

OWNER_NAME = "owner"
OWNER_PASSWORD = "ownerpass123"


def make_database(max_write_attempts: int = 5) -> Database:
    url = f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    return Database(url, max_write_attempts=max_write_attempts)


def make_auth_config(**overrides) -> AuthConfig:
    return replace(get_settings().auth_config(), **overrides)


def _patch_lifespan(db: Database, config: AuthConfig, metadata_path: Path):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see an
    isolated test DB rather than the production database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.db = db
        app.state.user_store = UserStore(db)
        app.state.catalog = CatalogStore(db)
        app.state.auth_config = config
        app.state.tokens = TokenIssuer.from_config(config)
        app.state.metadata_path = metadata_path
        yield

    return test_lifespan


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = make_database()
    yield database
    database.close()


@pytest.fixture
def user_store(db: Database) -> UserStore:
    return UserStore(db)


@pytest.fixture
def catalog(db: Database) -> CatalogStore:
    return CatalogStore(db)


@pytest.fixture
def file_db(tmp_path: Path) -> Generator[Database, None, None]:
    """File-backed SQLite for tests that hammer the writer from many threads."""
    database = Database(f"sqlite:///{tmp_path / 'dim.db'}", max_write_attempts=5)
    yield database
    database.close()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer("x" * 32 + "-test-signing-key", 3600)


def _client(config: AuthConfig, metadata_path: Path) -> Generator[TestClient, None, None]:
    database = make_database()
    app.router.lifespan_context = _patch_lifespan(database, config, metadata_path)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
    database.close()


@pytest.fixture
def client(tmp_path: Path) -> Generator[TestClient, None, None]:
    """TestClient on an empty database: no owner, forwarded auth disabled."""
    yield from _client(make_auth_config(), tmp_path / "metadata")


@pytest.fixture
def forwarded_client(tmp_path: Path) -> Generator[TestClient, None, None]:
    """TestClient with forwarded-user login enabled."""
    yield from _client(make_auth_config(forwarded_auth_enabled=True), tmp_path / "metadata")


@pytest.fixture
def owner_client(client: TestClient) -> tuple[TestClient, str]:
    """Yield (client, token) after registering and logging in the bootstrap owner.

    The login cookie is dropped so each test chooses explicitly between the
    Bearer header and the cookie.
    """
    resp = client.post("/api/v1/auth/register", json={"username": OWNER_NAME, "password": OWNER_PASSWORD})
    assert resp.status_code == 200, resp.text
    resp = client.post("/api/v1/auth/login", json={"username": OWNER_NAME, "password": OWNER_PASSWORD})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return client, resp.json()["token"]
