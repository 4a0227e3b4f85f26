"""
Document generation handler (Cornell notes).

create proxies to the external note-generation service; the generated
document is returned as data and recorded in the audit ledger with no
entity_id, since nothing is stored locally. read/update/delete are not
implemented and say so with NOT_IMPLEMENTED.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..commands import AuditSource, Command, EntityKind, Envelope, StateChange
from ..errors import NotImplementedYetError, WorkerError
from .base import EntityHandler

logger = logging.getLogger(__name__)


class DocumentGenerationHandler(EntityHandler):
    """Proxy to the note-generation service."""

    kind = EntityKind.DOCUMENT_GENERATION

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        api_key: str | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        """Initialize the handler.

        Args:
            client: Shared HTTP client
            url: Generation service endpoint
            api_key: Bearer key for the service
            timeout_seconds: Request timeout
        """
        self.client = client
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        source: AuditSource = AuditSource.ADA_AI,
    ) -> Envelope:
        body = {
            "topic": payload.get("topic"),
            "fileContent": payload.get("fileContent"),
            "fileName": payload.get("fileName"),
            "filePrompt": payload.get("filePrompt"),
            "depthLevel": payload.get("depthLevel") or "standard",
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self.client.post(
                self.url, json=body, headers=headers, timeout=self.timeout_seconds
            )
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Note generation request failed",
                extra={"owner_id": owner_id, "error": str(e)},
            )
            raise WorkerError("Failed to generate Cornell Notes") from e

        if not isinstance(result, dict) or not result.get("success"):
            error = result.get("error") if isinstance(result, dict) else None
            logger.warning(
                "Note generation service reported failure",
                extra={"owner_id": owner_id, "status_code": response.status_code},
            )
            raise WorkerError(error or "Failed to generate Cornell Notes")

        data = result.get("data")
        logger.info("Generated Cornell Notes", extra={"owner_id": owner_id, "topic": body["topic"]})
        return Envelope.ok(data=data, change=StateChange(None, data))

    def target_id(self, command: Command) -> str:
        return command.entity_id or ""

    async def read(self, owner_id: str, payload: dict[str, Any]) -> Envelope:
        raise NotImplementedYetError("Cornell Notes history not yet implemented")

    async def update(self, owner_id: str, entity_id: str, payload: dict[str, Any]) -> Envelope:
        raise NotImplementedYetError("Cornell Notes update not yet implemented")

    async def delete(self, owner_id: str, entity_id: str) -> Envelope:
        raise NotImplementedYetError("Cornell Notes delete not yet implemented")
