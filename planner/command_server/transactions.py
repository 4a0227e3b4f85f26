"""
Transaction context: correlation of multi-step intents.

A user intent such as "create an assignment and schedule a study session for
it" becomes several router commands sharing one transaction_id. The id is
stored on every audit record so the intent can be reconstructed later.

This is correlation only. Steps are not atomic: when step 2 fails, step 1
stays committed and nothing is compensated. TransactionReport.atomic is
always False so callers cannot mistake a report for an all-or-nothing
result.

Invariants:
    - Every command submitted through a context carries its transaction_id
    - run_intent stops at the first failed step
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .commands import Command, Envelope
from .errors import CommandError
from .router import CommandRouter
from .store.audit_ledger import AuditRecord

logger = logging.getLogger(__name__)


@dataclass
class TransactionStep:
    """One submitted command and its result."""

    index: int
    intent: str
    envelope: Envelope
    entity_kind: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.envelope.success

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "intent": self.intent,
            "entity_kind": self.entity_kind,
            "result": self.envelope.to_dict(),
        }


@dataclass
class TransactionReport:
    """Outcome of a multi-step intent.

    Attributes:
        transaction_id: Correlation id shared by every step
        steps: Steps that ran, in order
        atomic: Always False; committed steps are never rolled back
    """

    transaction_id: str
    steps: list[TransactionStep] = field(default_factory=list)
    atomic: bool = False

    @property
    def succeeded(self) -> bool:
        return all(step.succeeded for step in self.steps)

    @property
    def committed(self) -> list[TransactionStep]:
        return [step for step in self.steps if step.succeeded]

    @property
    def failed_step(self) -> TransactionStep | None:
        for step in self.steps:
            if not step.succeeded:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        failed = self.failed_step
        return {
            "transaction_id": self.transaction_id,
            "success": self.succeeded,
            "atomic": self.atomic,
            "steps": [step.to_dict() for step in self.steps],
            "failed_step": failed.index if failed else None,
        }


class TransactionContext:
    """Tags every command it submits with one transaction_id.

    Example:
        >>> ctx = TransactionContext(router, "user-1")
        >>> await ctx.submit({"entity_kind": "assignment", "action": "create",
        ...                   "payload": {"title": "Essay"}})
        >>> records = await ctx.reconstruct()
    """

    def __init__(
        self,
        router: CommandRouter,
        owner_id: str,
        transaction_id: str | None = None,
    ) -> None:
        self.router = router
        self.owner_id = owner_id
        self.transaction_id = transaction_id or str(uuid.uuid4())
        self.steps: list[TransactionStep] = []

    async def submit(self, command: Command | Mapping[str, Any]) -> Envelope:
        """Submit one command under this transaction.

        Raises:
            ValueError: If a Command belongs to a different owner
        """
        if isinstance(command, Command):
            if command.owner_id != self.owner_id:
                raise ValueError("Command owner does not match transaction owner")
            prepared = command
        else:
            try:
                prepared = Command.from_dict(
                    command,
                    owner_id=self.owner_id,
                    default_source=self.router.default_source,
                )
            except CommandError as e:
                envelope = Envelope.from_error(e)
                self.steps.append(
                    TransactionStep(
                        index=len(self.steps),
                        intent=str(command.get("intent") or ""),
                        envelope=envelope,
                    )
                )
                return envelope

        prepared = prepared.with_transaction(self.transaction_id)
        envelope = await self.router.handle(prepared)
        self.steps.append(
            TransactionStep(
                index=len(self.steps),
                intent=prepared.intent,
                envelope=envelope,
                entity_kind=prepared.entity_kind.value,
            )
        )
        return envelope

    def report(self) -> TransactionReport:
        return TransactionReport(transaction_id=self.transaction_id, steps=list(self.steps))

    async def reconstruct(self) -> list[AuditRecord]:
        """Audit records written under this transaction, in order."""
        return await self.router.ledger.query_by_transaction(self.owner_id, self.transaction_id)


async def run_intent(
    router: CommandRouter,
    owner_id: str,
    commands: Iterable[Command | Mapping[str, Any]],
    transaction_id: str | None = None,
) -> TransactionReport:
    """Run commands in order under one transaction_id, stopping at the first failure.

    Args:
        router: Command router
        owner_id: Verified caller identity
        commands: Steps of the intent
        transaction_id: Correlation id (generated if not provided)

    Returns:
        TransactionReport; steps before a failure stay committed
    """
    ctx = TransactionContext(router, owner_id, transaction_id)
    for command in commands:
        envelope = await ctx.submit(command)
        if not envelope.success:
            logger.warning(
                "Intent stopped at failed step; earlier steps remain committed",
                extra={
                    "owner_id": owner_id,
                    "transaction_id": ctx.transaction_id,
                    "step": len(ctx.steps) - 1,
                    "error_code": envelope.error_code,
                },
            )
            break
    return ctx.report()
