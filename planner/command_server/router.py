"""
Command router: the single entry point for entity commands.

Flow for one command:
    1. Normalize (unknown kind/action fail here, before anything else runs)
    2. Mutation with idempotency_key -> IdempotencyGuard.acquire()
       - hit: return the cached envelope, nothing else happens
    3. Dispatch to the handler for the entity kind
    4. Successful mutation -> append exactly one audit record
    5. Return the envelope

Failure mapping:
    - CommandError raised anywhere -> envelope with its own error code
    - Any other handler exception -> WORKER_ERROR (message never carries the
      raw exception)
    - Audit append failure -> successful envelope with degraded=True; the
      entity write is not rolled back
    - Anything else inside the router -> INTERNAL_ERROR

Invariants:
    - At most one audit record per executed mutation, none for reads,
      none for cached replays
    - Handlers never see a command whose kind or action is unknown
    - A failed handler releases its idempotency reservation

How to change safely:
    - Keep handle() total: it returns an Envelope for every input
    - Anything that must happen once per mutation belongs after the guard
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .commands import AuditSource, Command, Envelope, StateChange
from .errors import (
    AuditAppendError,
    CommandError,
    ErrorCode,
    InternalError,
    InvalidPayloadError,
    UnknownEntityError,
)
from .handlers.base import EntityHandler
from .idempotency import IdempotencyGuard
from .store.audit_ledger import AuditLedger

logger = logging.getLogger(__name__)


class CommandRouter:
    """Routes commands to entity handlers with dedup and audit.

    Example:
        >>> router = CommandRouter(handlers, guard, ledger)
        >>> envelope = await router.handle({
        ...     "owner_id": "user-1",
        ...     "entity_kind": "assignment",
        ...     "action": "create",
        ...     "payload": {"title": "Essay"},
        ...     "idempotency_key": "k1",
        ... })
        >>> envelope.success
        True
    """

    def __init__(
        self,
        handlers: Mapping[Any, EntityHandler],
        guard: IdempotencyGuard,
        ledger: AuditLedger,
        default_source: AuditSource = AuditSource.ADA_AI,
    ) -> None:
        """Initialize the router.

        Args:
            handlers: Handler table keyed by EntityKind
            guard: Idempotency guard
            ledger: Audit ledger
            default_source: Audit source for commands that name none
        """
        self.handlers = dict(handlers)
        self.guard = guard
        self.ledger = ledger
        self.default_source = default_source

    async def handle(self, command: Command | Mapping[str, Any]) -> Envelope:
        """Handle one command. Never raises."""
        try:
            if not isinstance(command, Command):
                command = Command.from_dict(command, default_source=self.default_source)
            return await self._execute(command)
        except CommandError as e:
            logger.info(
                "Command rejected",
                extra={"error_code": e.code.value, "error": e.message},
            )
            return Envelope.from_error(e)
        except Exception:
            logger.exception("Unexpected router fault")
            return Envelope.from_error(InternalError("Internal server error"))

    async def handle_request(self, owner_id: str, body: Any) -> Envelope:
        """Transport entry point; owner_id comes from the verified identity.

        Args:
            owner_id: Verified caller identity
            body: Decoded request body

        Returns:
            Envelope
        """
        if not isinstance(body, Mapping):
            return Envelope.from_error(InvalidPayloadError("Request body must be a JSON object"))
        try:
            command = Command.from_dict(body, owner_id=owner_id, default_source=self.default_source)
        except CommandError as e:
            return Envelope.from_error(e)
        return await self.handle(command)

    async def _execute(self, command: Command) -> Envelope:
        handler = self.handlers.get(command.entity_kind)
        if handler is None:
            raise UnknownEntityError(command.entity_kind.value)

        log_extra = {
            "owner_id": command.owner_id,
            "request_id": command.request_id,
            "entity_kind": command.entity_kind.value,
            "action": command.action.value,
            "idempotency_key": command.idempotency_key,
            "transaction_id": command.transaction_id,
        }

        reserved = False
        if command.deduplicated:
            result = await self.guard.acquire(command)
            if result.hit:
                logger.info("Replaying cached result", extra=log_extra)
                return result.envelope
            reserved = result.reserved

        try:
            envelope = await handler.dispatch(command)
        except CommandError as e:
            if reserved:
                await self.guard.release(command.idempotency_key)
            logger.info(
                "Handler rejected command",
                extra={**log_extra, "error_code": e.code.value},
            )
            return Envelope.from_error(e)
        except Exception:
            if reserved:
                await self.guard.release(command.idempotency_key)
            logger.error("Handler failed", extra=log_extra, exc_info=True)
            return Envelope.failure(
                ErrorCode.WORKER_ERROR,
                f"Failed to {command.action.value} {command.entity_kind.value}",
            )

        if not envelope.success:
            if reserved:
                await self.guard.release(command.idempotency_key)
            return envelope

        if command.action.is_mutation:
            envelope = await self._record(command, envelope, log_extra)

        return envelope

    async def _record(
        self,
        command: Command,
        envelope: Envelope,
        log_extra: dict[str, Any],
    ) -> Envelope:
        """Append the audit record for an executed mutation."""
        change = envelope.change or StateChange(None, envelope.data)
        try:
            record = await self.ledger.append(
                owner_id=command.owner_id,
                action=command.action,
                entity_kind=command.entity_kind.value,
                entity_id=envelope.entity_id,
                before_state=change.before,
                after_state=change.after,
                source=command.source,
                request_id=command.request_id,
                transaction_id=command.transaction_id,
                idempotency_key=command.idempotency_key if command.deduplicated else None,
                metadata={"intent": command.intent},
            )
        except AuditAppendError as e:
            logger.error(
                "Audit append failed; returning degraded result",
                extra={**log_extra, "entity_id": envelope.entity_id, "error": e.message},
            )
            envelope.degraded = True
            if command.deduplicated:
                await self.guard.complete(command.idempotency_key, envelope)
            return envelope

        envelope.audit_log_id = record.id
        logger.info(
            "Command executed",
            extra={**log_extra, "entity_id": envelope.entity_id, "audit_log_id": record.id},
        )
        return envelope
