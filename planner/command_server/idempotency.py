"""
Idempotency guard for mutating commands.

A mutating command that carries an idempotency_key executes its side effects
at most once. The guard answers "has this key been processed" from the audit
ledger, and closes the race between two concurrent first attempts by
reserving the key before the handler runs.

Reserve-before-execute:
    1. lookup(key): ledger hit -> replay the recorded result
    2. INSERT into idempotency_keys (key is PRIMARY KEY)
       - success: this request owns the key and executes the handler
       - IntegrityError: another request holds it; poll lookup() until its
         result appears or the retry budget runs out
    3. Handler failure -> release(key) so a retry can execute
    4. Audit append failure -> complete(key, envelope) so replays still see
       the committed result

Invariants:
    - At most one reservation exists per key
    - A key recorded for one owner never returns data to another owner
    - Reads never consult the guard

How to change safely:
    - Keep the uniqueness constraint as the only mutual-exclusion mechanism
    - Replayed envelopes must equal first-run envelopes except for cached
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass

from .commands import Command, Envelope
from .errors import IdempotencyConflictError, WorkerError
from .store.audit_ledger import AuditLedger, AuditRecord
from .store.database import Database, now_iso

logger = logging.getLogger(__name__)


@dataclass
class GuardResult:
    """Outcome of a guard check.

    Attributes:
        hit: The key was already processed; envelope holds the replay
        envelope: Cached envelope (cached=True) on a hit
        reserved: This request now holds the reservation for the key
    """

    hit: bool
    envelope: Envelope | None = None
    reserved: bool = False


def replay_envelope(record: AuditRecord) -> Envelope:
    """Rebuild the envelope of an executed mutation from its audit record."""
    return Envelope(
        success=True,
        data=record.after_state,
        entity_id=record.entity_id,
        audit_log_id=record.id,
        cached=True,
    )


class IdempotencyGuard:
    """Deduplicates mutating commands by idempotency key.

    Example:
        >>> guard = IdempotencyGuard(db, ledger)
        >>> result = await guard.acquire(command)
        >>> if result.hit:
        ...     return result.envelope
    """

    def __init__(
        self,
        db: Database,
        ledger: AuditLedger,
        retry_attempts: int = 20,
        retry_delay_ms: int = 50,
    ) -> None:
        """Initialize the guard.

        Args:
            db: Database holding the idempotency_keys table
            ledger: Audit ledger consulted for completed keys
            retry_attempts: Lookups made after losing a reservation race
            retry_delay_ms: Delay between those lookups
        """
        self.db = db
        self.ledger = ledger
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms

    async def lookup(self, idempotency_key: str, owner_id: str | None = None) -> GuardResult:
        """Check whether a key has already been processed.

        Args:
            idempotency_key: Key to look up
            owner_id: Caller; when given, a key recorded for another owner
                raises instead of replaying

        Returns:
            GuardResult with hit and the cached envelope

        Raises:
            IdempotencyConflictError: Key belongs to a different owner
        """
        record = await self.ledger.query_by_idempotency_key(idempotency_key)
        if record is not None:
            self._check_owner(idempotency_key, record.owner_id, owner_id)
            return GuardResult(hit=True, envelope=replay_envelope(record))

        reservation = self._get_reservation(idempotency_key)
        if reservation is not None and reservation["envelope_json"] is not None:
            self._check_owner(idempotency_key, reservation["owner_id"], owner_id)
            envelope = Envelope.from_json(json.loads(reservation["envelope_json"]))
            envelope.cached = True
            return GuardResult(hit=True, envelope=envelope)

        return GuardResult(hit=False)

    async def acquire(self, command: Command) -> GuardResult:
        """Replay a processed key or reserve it for this command.

        Returns:
            GuardResult with hit=True and the cached envelope, or
            reserved=True when the caller must execute the command

        Raises:
            IdempotencyConflictError: Key belongs to a different owner
            WorkerError: Another request still holds the key after all retries
        """
        key = command.idempotency_key
        if not key:
            raise ValueError("acquire() requires a command with an idempotency_key")

        result = await self.lookup(key, command.owner_id)
        if result.hit:
            return result

        if self._reserve(command):
            return GuardResult(hit=False, reserved=True)

        logger.info(
            "Idempotency key held by another request, waiting",
            extra={"idempotency_key": key, "request_id": command.request_id},
        )

        for _ in range(self.retry_attempts):
            reservation = self._get_reservation(key)
            if reservation is not None:
                self._check_owner(key, reservation["owner_id"], command.owner_id)

            await asyncio.sleep(self.retry_delay_ms / 1000.0)

            result = await self.lookup(key, command.owner_id)
            if result.hit:
                return result

            # Holder failed and released the key
            if self._get_reservation(key) is None and self._reserve(command):
                return GuardResult(hit=False, reserved=True)

        raise WorkerError(
            "A command with this idempotency key is still in progress",
            details={"idempotency_key": key},
        )

    async def release(self, idempotency_key: str) -> None:
        """Drop a reservation after a failed execution."""
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM idempotency_keys WHERE key = ?", (idempotency_key,))
        logger.debug("Released idempotency key", extra={"idempotency_key": idempotency_key})

    async def complete(self, idempotency_key: str, envelope: Envelope) -> None:
        """Remember a committed result whose audit append failed."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE idempotency_keys SET envelope_json = ? WHERE key = ?",
                (json.dumps(envelope.to_dict()), idempotency_key),
            )

    def _reserve(self, command: Command) -> bool:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO idempotency_keys (key, owner_id, request_id, reserved_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (command.idempotency_key, command.owner_id, command.request_id, now_iso()),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def _get_reservation(self, idempotency_key: str) -> sqlite3.Row | None:
        with self.db.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM idempotency_keys WHERE key = ?",
                (idempotency_key,),
            )
            return cursor.fetchone()

    @staticmethod
    def _check_owner(idempotency_key: str, recorded_owner: str, caller: str | None) -> None:
        if caller is not None and recorded_owner != caller:
            logger.warning(
                "Idempotency key reused across owners",
                extra={"idempotency_key": idempotency_key, "owner_id": caller},
            )
            raise IdempotencyConflictError(idempotency_key)
