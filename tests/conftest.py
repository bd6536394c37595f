"""
tests/conftest.py -- Shared test fixtures for CareGate unit and integration tests.

This module provides:
  - unit fixtures: engine, identity_store, session_store, revocation_store,
    ledger, issuer, credentials, registry, auth_service -- each test gets a
    fresh isolated database
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus an administrator access token
  - reset_rate_limits: autouse; clears slowapi counters between tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

The env vars below must be set before any project import: get_settings() is
cached on first use, and DEBUG=true makes it generate a throwaway RSA key pair
instead of refusing to start. BCRYPT_ROUNDS=4 keeps hashing fast.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.authorization import AuthorizationEngine
from auth.credentials import CredentialStore
from auth.models import Profile
from auth.permissions import ADMINISTRATOR
from auth.registry import RefreshTokenRegistry
from auth.revocation import RevocationLedger
from auth.service import AuthService
from auth.store import IdentityStore, SessionStore, open_engine
from auth.tokens import TokenIssuer
from cache.store import SQLiteRevocationStore
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "AdminPass1"


def _memory_db_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit fixtures -- fresh stores per test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    eng = open_engine(_memory_db_url(f"unit_{uuid.uuid4().hex}"))
    yield eng
    eng.dispose()


@pytest.fixture
def identity_store(engine) -> IdentityStore:
    return IdentityStore(engine)


@pytest.fixture
def session_store(engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def revocation_store() -> Generator[SQLiteRevocationStore, None, None]:
    store = SQLiteRevocationStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def ledger(revocation_store) -> RevocationLedger:
    return RevocationLedger(revocation_store)


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer.from_settings(get_settings())


@pytest.fixture
def credentials(identity_store) -> CredentialStore:
    return CredentialStore(identity_store, bcrypt_rounds=4)


@pytest.fixture
def registry(session_store, identity_store, issuer, ledger) -> RefreshTokenRegistry:
    return RefreshTokenRegistry(session_store, identity_store, issuer, ledger)


@pytest.fixture
def auth_service(identity_store, session_store, issuer, ledger) -> AuthService:
    return AuthService.build(identity_store, session_store, issuer, ledger, bcrypt_rounds=4)


@pytest.fixture
def member(credentials):
    """A registered member in zone z1."""
    return credentials.register(
        "nurse@example.com", "Secure123", Profile(first_name="Nia", last_name="Reyes", zone_id="z1")
    )


@pytest.fixture(autouse=True)
def reset_rate_limits() -> None:
    """Start every test with empty rate-limit counters."""
    limiter.reset()


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, revocations: SQLiteRevocationStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.identity_store = service.identities
        app.state.session_store = service.registry.sessions
        app.state.revocation_store = revocations
        app.state.auth = service
        app.state.authorizer = AuthorizationEngine()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_access_token, admin_id) for API integration tests.

    Each test module gets its own in-memory database. The administrator is
    created directly through the service before the client starts.
    """
    eng = open_engine(_memory_db_url(f"api_{request.module.__name__}_{uuid.uuid4().hex}"))
    revocations = SQLiteRevocationStore(":memory:")
    service = AuthService.build(
        IdentityStore(eng),
        SessionStore(eng),
        TokenIssuer.from_settings(get_settings()),
        RevocationLedger(revocations),
        bcrypt_rounds=4,
    )
    admin = service.register(
        ADMIN_EMAIL,
        ADMIN_PASSWORD,
        Profile(first_name="Ada", last_name="Admin", role=ADMINISTRATOR),
        device_id="admin-console",
    )

    app.router.lifespan_context = _patch_lifespan(eng, revocations, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, admin.tokens.access.token, admin.identity.id

    revocations.close()
    eng.dispose()
