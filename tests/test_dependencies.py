"""
tests/test_dependencies.py -- Tests for require_admin() and require_scope().

No production route is admin- or scope-gated yet, so a throwaway FastAPI app
mounts one route per dependency. It shares the real exception handler so
status codes match what api/main.py returns.
"""

from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from api.main import attach_services, auth_error_handler
from auth.dependencies import require_admin, require_scope
from auth.errors import AuthError
from auth.models import Principal, User
from conftest import PASSWORD, RecordingDispatcher
from core.config import get_settings


@pytest.fixture
def gated(store, hasher):
    """Yield (client, store, session-manager, api-token-manager) for a gated mini app."""
    app = FastAPI()
    app.add_exception_handler(AuthError, auth_error_handler)
    attach_services(app, get_settings(), store, dispatcher=RecordingDispatcher())

    @app.get("/admin")
    def admin_only(principal: Principal = Depends(require_admin)) -> dict:
        return {"user_id": principal.user_id}

    @app.post("/notes")
    def write_note(principal: Principal = Depends(require_scope("write"))) -> dict:
        return {"user_id": principal.user_id}

    for username, role in (("boss", "admin"), ("worker", "user")):
        store.create_user(
            User(username=username, email=f"{username}@example.com", password_hash=hasher.hash(PASSWORD), role=role)
        )
    with TestClient(app) as client:
        yield client, store, app.state.sessions, app.state.api_tokens


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestRequireAdmin:
    def test_admin_allowed(self, gated) -> None:
        client, _store, sessions, _ = gated
        access = sessions.login("boss", PASSWORD).tokens.access_token
        assert client.get("/admin", headers=_bearer(access)).status_code == 200

    def test_user_forbidden(self, gated) -> None:
        client, _store, sessions, _ = gated
        access = sessions.login("worker", PASSWORD).tokens.access_token
        resp = client.get("/admin", headers=_bearer(access))
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Admin access required."


class TestRequireScope:
    def test_session_holds_every_scope(self, gated) -> None:
        client, _store, sessions, _ = gated
        access = sessions.login("worker", PASSWORD).tokens.access_token
        assert client.post("/notes", headers=_bearer(access)).status_code == 200

    def test_token_with_scope_allowed(self, gated) -> None:
        client, store, _, api_tokens = gated
        worker = store.get_user_by_username("worker")
        raw = api_tokens.create(worker.id, "writer", ["read", "write"]).raw_token
        assert client.post("/notes", headers={"X-API-Key": raw}).status_code == 200

    def test_read_only_token_forbidden(self, gated) -> None:
        client, store, _, api_tokens = gated
        worker = store.get_user_by_username("worker")
        raw = api_tokens.create(worker.id, "reader", ["read"]).raw_token
        resp = client.post("/notes", headers={"X-API-Key": raw})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_last_used_stamped_after_response(self, gated) -> None:
        client, store, _, api_tokens = gated
        worker = store.get_user_by_username("worker")
        created = api_tokens.create(worker.id, "writer", ["write"])
        client.post("/notes", headers={"X-API-Key": created.raw_token})
        assert store.get_api_token(created.token.id, worker.id).last_used_at is not None
