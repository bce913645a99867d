"""
tests/conftest.py -- Shared test fixtures for AccountGate unit and integration tests.

This module provides:
  - RecordingDispatcher: stands in for the SMTP dispatcher and keeps every
    submitted Notification so tests can read verification/reset tokens
  - make_settings(): a Settings instance with a fixed key and cheap bcrypt
  - store: a fresh isolated AccountStore per test
  - flow: an AuthFlow over that store, for asyncio.run()-driven unit tests
  - api_client: TestClient over the real app with a patched lifespan
  - signup: factory that registers and verifies an account through the API

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because store calls run on a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG must be set before any core/auth/api import so get_settings()
auto-generates SECRET_KEY instead of raising ValueError. The rate limit is
raised so a whole module's worth of logins never trips it.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.flows import AuthFlow
from auth.notifier import VERIFY_EMAIL, Notification
from auth.passwords import PasswordHasher
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from auth.two_factor import TwoFactorEngine
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef-0123456789"


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class RecordingDispatcher:
    """Dispatcher double: records notifications instead of mailing them."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def submit(self, notification: Notification) -> None:
        self.sent.append(notification)

    def tokens_for(self, to: str, kind: str) -> list[str]:
        return [n.token for n in self.sent if n.to == to and n.kind == kind]

    def last_token(self, to: str, kind: str) -> str:
        tokens = self.tokens_for(to, kind)
        assert tokens, f"no {kind} notification sent to {to}"
        return tokens[-1]


def make_settings(**overrides) -> Settings:
    """Settings with a fixed signing key and the cheapest bcrypt cost."""
    values = {"debug": True, "secret_key": TEST_SECRET_KEY, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


def _make_test_store(db_suffix: str) -> AccountStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests and test
                   modules never share state.
    """
    return AccountStore(db_url=f"sqlite:///file:test_accounts_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(settings: Settings, store: AccountStore, dispatcher: RecordingDispatcher):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and recording dispatcher into app.state so routes
    see isolated data and no mail task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, store, dispatcher)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = _make_test_store(uuid.uuid4().hex)
    yield s
    s.close()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def issuer(settings: Settings) -> TokenIssuer:
    return TokenIssuer(settings)


@pytest.fixture
def flow(store: AccountStore, issuer: TokenIssuer, dispatcher: RecordingDispatcher, settings: Settings) -> AuthFlow:
    return AuthFlow(
        store=store,
        issuer=issuer,
        hasher=PasswordHasher(settings.bcrypt_rounds),
        two_factor=TwoFactorEngine(settings.two_factor_issuer, settings.backup_code_count),
        dispatcher=dispatcher,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AccountStore, RecordingDispatcher], None, None]:
    """Yield (client, store, dispatcher) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers and middleware but use an isolated
    in-memory store.
    """
    store = _make_test_store(uuid.uuid4().hex)
    dispatcher = RecordingDispatcher()
    app.router.lifespan_context = _patch_lifespan(make_settings(), store, dispatcher)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, dispatcher

    store.close()


@pytest.fixture
def signup(api_client) -> Callable[..., dict]:
    """Factory: register and verify a fresh account, return its login payload.

    The returned dict holds email, password, id and the accessToken /
    refreshToken from a post-verification login. The client's cookie jar is
    cleared afterwards so each test chooses its own transport explicitly.
    """
    client, _store, dispatcher = api_client

    def _signup(name: str = "Test User", password: str = "secret123", email: str | None = None) -> dict:
        email = email or f"user-{uuid.uuid4().hex[:10]}@example.com"
        resp = client.post("/api/v1/auth/register", json={"name": name, "email": email, "password": password})
        assert resp.status_code == 201, resp.text
        token = dispatcher.last_token(email, VERIFY_EMAIL)
        assert client.post("/api/v1/auth/verify-email", json={"token": token}).status_code == 200
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        data = resp.json()["data"]
        return {
            "email": email,
            "password": password,
            "id": data["user"]["id"],
            "accessToken": data["accessToken"],
            "refreshToken": data["refreshToken"],
        }

    return _signup


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}

