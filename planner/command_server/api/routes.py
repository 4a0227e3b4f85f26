"""
API routes for the planner command server.

Every response body is a result envelope (or, for audit reads, a list of
audit records) and every route requires a verified bearer token.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from ..auth import authenticate
from ..commands import EntityKind, Envelope
from ..errors import InvalidPayloadError, http_status_for
from ..server import CommandServer
from .settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Planner Commands"])


def envelope_response(envelope: Envelope) -> JSONResponse:
    """Serialize an envelope with the status code for its error code."""
    return JSONResponse(
        status_code=http_status_for(envelope.error_code),
        content=envelope.to_dict(),
    )


# --- Dependencies ---


def get_server(request: Request) -> CommandServer:
    """Get the command server from app state."""
    return request.app.state.server


def get_settings(request: Request) -> Settings:
    """Get HTTP settings from app state."""
    return request.app.state.settings


async def get_owner_id(
    authorization: str | None = Header(None),
    server: CommandServer = Depends(get_server),
) -> str:
    """Verify the bearer token and return the caller's owner id."""
    return await authenticate(authorization, server.verifier)


# --- Command Routes ---


@router.post("/commands")
async def submit_command(
    request: Request,
    owner_id: str = Depends(get_owner_id),
    server: CommandServer = Depends(get_server),
):
    """
    Execute one command.

    The body is the command: entity_kind, action, payload and the optional
    request_id, idempotency_key, transaction_id, intent and source.
    The owner always comes from the bearer token.
    """
    try:
        body = await request.json()
    except ValueError:
        return envelope_response(
            Envelope.from_error(InvalidPayloadError("Request body must be valid JSON"))
        )

    envelope = await server.router.handle_request(owner_id, body)
    return envelope_response(envelope)


# --- Audit Routes ---


@router.get("/audit/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    owner_id: str = Depends(get_owner_id),
    server: CommandServer = Depends(get_server),
) -> dict[str, Any]:
    """
    Reconstruct a multi-step intent.

    Returns the caller's audit records for the transaction in the order
    they were written. Steps are not atomic, so a partial list is normal
    for an intent that failed midway.
    """
    records = await server.ledger.query_by_transaction(owner_id, transaction_id)
    return {
        "transaction_id": transaction_id,
        "atomic": False,
        "records": [record.to_dict() for record in records],
    }


@router.get("/audit/{entity_kind}/{entity_id}")
async def get_entity_history(
    entity_kind: str,
    entity_id: str,
    limit: int | None = Query(None, ge=1, description="Maximum records"),
    owner_id: str = Depends(get_owner_id),
    server: CommandServer = Depends(get_server),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Mutation history of one of the caller's entities, oldest first."""
    kind = EntityKind.parse(entity_kind)
    page_size = min(limit or settings.audit_page_size, settings.max_audit_page_size)

    records = await server.ledger.entity_history(owner_id, kind.value, entity_id, limit=page_size)
    return {
        "entity_kind": kind.value,
        "entity_id": entity_id,
        "records": [record.to_dict() for record in records],
    }
