"""
Integration tests for the HTTP surface.

Tests cover:
- Health check
- Bearer token verification
- Command submission and status code mapping
- Audit history and transaction reconstruction routes
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from planner.command_server.api import Settings, create_app
from planner.command_server.server import CommandServer

ALICE = {"Authorization": "Bearer token-alice"}
BOB = {"Authorization": "Bearer token-bob"}


@pytest.fixture
def client(config, notes_service):
    """Test client around a fully started server."""
    server = CommandServer(
        config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(notes_service)),
    )
    app = create_app(server=server, settings=Settings(audit_page_size=10))
    with TestClient(app) as test_client:
        yield test_client


def _create_exam(client, title="Final", **extra):
    return client.post(
        "/v1/commands",
        headers=ALICE,
        json={"entity_kind": "exam", "action": "create", "payload": {"title": title}, **extra},
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthentication:
    """Owner identity comes from the bearer token only."""

    def test_missing_header(self, client):
        response = client.post("/v1/commands", json={})

        assert response.status_code == 401
        assert response.json()["error_code"] == "AUTH_REQUIRED"

    def test_unknown_token(self, client):
        response = client.post(
            "/v1/commands", headers={"Authorization": "Bearer nope"}, json={}
        )

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_TOKEN"

    def test_empty_bearer(self, client):
        response = client.post("/v1/commands", headers={"Authorization": "Bearer"}, json={})
        assert response.json()["error_code"] == "INVALID_TOKEN"

    def test_body_owner_ignored(self, client):
        response = _create_exam(client, owner_id="bob")

        assert response.status_code == 200
        assert response.json()["data"]["owner_id"] == "alice"


class TestCommands:
    """POST /v1/commands."""

    def test_create(self, client):
        response = _create_exam(client, idempotency_key="http-k1")
        body = response.json()

        assert response.status_code == 200
        assert body["success"] is True
        assert body["entity_id"]
        assert body["audit_log_id"]
        assert "cached" not in body

        replay = _create_exam(client, idempotency_key="http-k1").json()
        assert replay["cached"] is True
        assert replay["entity_id"] == body["entity_id"]

    def test_unknown_entity(self, client):
        response = client.post(
            "/v1/commands",
            headers=ALICE,
            json={"entity_kind": "homework", "action": "create", "payload": {}},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNKNOWN_ENTITY"

    def test_invalid_json(self, client):
        response = client.post(
            "/v1/commands",
            headers={**ALICE, "Content-Type": "application/json"},
            content=b"{not json",
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYLOAD"

    def test_non_object_body(self, client):
        response = client.post("/v1/commands", headers=ALICE, json=[1, 2])

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYLOAD"

    def test_not_found_across_owners(self, client):
        entity_id = _create_exam(client).json()["entity_id"]

        response = client.post(
            "/v1/commands",
            headers=BOB,
            json={"entity_kind": "exam", "action": "read", "payload": {"id": entity_id}},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["error"] == "Exam not found"

    def test_document_generation(self, client, notes_service):
        response = client.post(
            "/v1/commands",
            headers=ALICE,
            json={
                "entity_kind": "CornellNotes",
                "action": "create",
                "payload": {"topic": "Photosynthesis"},
            },
        )

        assert response.status_code == 200
        assert response.json()["data"] == notes_service.response["data"]


class TestAuditRoutes:
    """GET /v1/audit/..."""

    def test_entity_history(self, client):
        entity_id = _create_exam(client).json()["entity_id"]
        client.post(
            "/v1/commands",
            headers=ALICE,
            json={
                "entity_kind": "exam",
                "action": "update",
                "payload": {"id": entity_id, "location": "Hall B"},
            },
        )

        response = client.get(f"/v1/audit/exam/{entity_id}", headers=ALICE)

        assert response.status_code == 200
        records = response.json()["records"]
        assert [r["action"] for r in records] == ["create", "update"]
        assert records[1]["before_state"]["location"] is None
        assert records[1]["after_state"]["location"] == "Hall B"

        limited = client.get(f"/v1/audit/exam/{entity_id}?limit=1", headers=ALICE)
        assert len(limited.json()["records"]) == 1

        other_owner = client.get(f"/v1/audit/exam/{entity_id}", headers=BOB)
        assert other_owner.json()["records"] == []

    def test_unknown_kind(self, client):
        response = client.get("/v1/audit/homework/abc", headers=ALICE)

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNKNOWN_ENTITY"

    def test_transaction(self, client):
        _create_exam(client, title="Midterm", transaction_id="tx-http")
        _create_exam(client, title="Final", transaction_id="tx-http")

        response = client.get("/v1/audit/transactions/tx-http", headers=ALICE)
        body = response.json()

        assert response.status_code == 200
        assert body["atomic"] is False
        assert [r["after_state"]["title"] for r in body["records"]] == ["Midterm", "Final"]

    def test_requires_auth(self, client):
        response = client.get("/v1/audit/transactions/tx-http")
        assert response.status_code == 401
