"""
Integration test fixtures.

Everything runs against a real SQLite file in a temporary directory. The
note-generation service is replaced by an httpx.MockTransport.
"""

import os
import tempfile
from typing import Any

import httpx
import pytest

from planner.command_server.config import (
    AuthConfig,
    GenerationConfig,
    IdempotencyConfig,
    ServerConfig,
    StorageConfig,
)
from planner.command_server.handlers import build_handlers
from planner.command_server.idempotency import IdempotencyGuard
from planner.command_server.router import CommandRouter
from planner.command_server.store import AuditLedger, Database, EntityStore

NOTES_URL = "http://notes.test/functions/v1/generate-notes-orchestrator"


class NotesServiceStub:
    """Stand-in for the note-generation service."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.response: Any = {
            "success": True,
            "data": {"title": "Photosynthesis", "cues": ["light", "chlorophyll"]},
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.response)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def config(data_dir):
    """Server configuration pointing at the temporary directory."""
    return ServerConfig(
        storage=StorageConfig(db_path=os.path.join(data_dir, "planner.db"), wal_mode=False),
        idempotency=IdempotencyConfig(retry_attempts=3, retry_delay_ms=10),
        generation=GenerationConfig(url=NOTES_URL, api_key="service-key"),
        auth=AuthConfig(static_tokens={"token-alice": "alice", "token-bob": "bob"}),
    )


@pytest.fixture
async def db(config):
    db = Database(config.storage.db_path, wal_mode=False)
    await db.initialize()
    return db


@pytest.fixture
def store(db):
    return EntityStore(db)


@pytest.fixture
def ledger(db):
    return AuditLedger(db)


@pytest.fixture
def guard(db, ledger, config):
    return IdempotencyGuard(
        db,
        ledger,
        retry_attempts=config.idempotency.retry_attempts,
        retry_delay_ms=config.idempotency.retry_delay_ms,
    )


@pytest.fixture
def notes_service():
    return NotesServiceStub()


@pytest.fixture
async def http_client(notes_service):
    async with httpx.AsyncClient(transport=httpx.MockTransport(notes_service)) as client:
        yield client


@pytest.fixture
def handlers(store, config, http_client):
    return build_handlers(store, config, http_client)


@pytest.fixture
def router(handlers, guard, ledger):
    return CommandRouter(handlers, guard, ledger)


def _command(
    kind: str,
    action: str,
    payload: dict[str, Any] | None = None,
    owner_id: str = "alice",
    **extra: Any,
) -> dict[str, Any]:
    """Build a raw command mapping."""
    return {
        "owner_id": owner_id,
        "entity_kind": kind,
        "action": action,
        "payload": payload or {},
        **extra,
    }


def _audit_count(db: Database) -> int:
    with db.connect() as conn:
        return conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]


@pytest.fixture
def make_command():
    """Factory for raw command mappings."""
    return _command


@pytest.fixture
def audit_count(db):
    """Callable returning the number of audit records."""
    return lambda: _audit_count(db)
