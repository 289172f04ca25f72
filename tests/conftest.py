"""
tests/conftest.py -- Shared test fixtures for the Notez credential core.

This module provides:
  - store / hasher / codec / hash_key: per-test building blocks over a fresh
    SQLite file in tmp_path
  - sessions / resets / api_tokens: services wired from those blocks
  - make_user: factory that inserts a user with a known password
  - RecordingDispatcher: captures outgoing messages instead of sending them
  - api_client: module-scoped TestClient over an isolated shared-memory DB

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for api_client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any api/ or core/ import: DEBUG lets
get_settings() auto-generate secrets, RATE_LIMIT_ENABLED=false keeps the
login limit out of the way, BCRYPT_ROUNDS=4 keeps hashing fast, and
ALLOWED_HOSTS admits TestClient's "testserver" Host header.
"""

from __future__ import annotations

import os
import secrets
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from typing import Any

# CRITICAL: Set before any api/ or core/ import (see module docstring).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from auth.api_tokens import ApiTokenManager
from auth.models import User
from auth.passwords import PasswordHasher
from auth.reset import PasswordResetFlow
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import TokenCodec
from core.config import get_settings

# Satisfies the password policy: length, uppercase, digit, special character.
PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w!Passw0rd-2"


class RecordingDispatcher:
    """Dispatcher double: records every message; can be told to fail or raise."""

    def __init__(self, result: bool = True, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, to_address: str, recipient_name: str, payload: dict[str, Any]) -> bool:
        self.sent.append((to_address, recipient_name, payload))
        if self.error is not None:
            raise self.error
        return self.result

    def tokens(self) -> list[str]:
        """Raw reset tokens carried by the recorded messages, oldest first."""
        return [p["token"] for _, _, p in self.sent if "token" in p]


# ---------------------------------------------------------------------------
# Unit-level fixtures -- fresh database and secrets per test
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path) -> Generator[AuthStore, None, None]:
    s = AuthStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(secrets.token_hex(32), secrets.token_hex(32))


@pytest.fixture
def hash_key() -> str:
    return secrets.token_hex(32)


@pytest.fixture
def sessions(store, codec, hasher, hash_key, dispatcher) -> SessionManager:
    return SessionManager(store, codec, hasher, token_hash_key=hash_key, dispatcher=dispatcher)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def resets(store, hasher, dispatcher, hash_key) -> PasswordResetFlow:
    return PasswordResetFlow(store, hasher, dispatcher, token_hash_key=hash_key)


@pytest.fixture
def api_tokens(store, hash_key) -> ApiTokenManager:
    return ApiTokenManager(store, token_hash_key=hash_key)


@pytest.fixture
def make_user(store, hasher) -> Callable[..., User]:
    """Return a factory: make_user("bob", email="bob@example.com", is_active=False)."""

    def factory(
        username: str = "alice",
        email: str | None = None,
        password: str | None = PASSWORD,
        **fields: Any,
    ) -> User:
        user = User(
            username=username,
            email=email if email is not None else f"{username}@example.com",
            password_hash=hasher.hash(password) if password is not None else None,
            **fields,
        )
        return store.get_user_by_id(store.create_user(user))

    return factory


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, dispatcher: RecordingDispatcher):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a recording dispatcher into app.state so routes
    hit isolated data and never attempt real email delivery.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, get_settings(), store, dispatcher=dispatcher)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthStore, RecordingDispatcher], None, None]:
    """Yield (client, store, dispatcher) over an empty database private to the test module."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    store = AuthStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    dispatcher = RecordingDispatcher()

    app.router.lifespan_context = _patch_lifespan(store, dispatcher)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, dispatcher

    store.close()
