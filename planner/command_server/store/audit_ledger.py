"""
Append-only audit ledger.

Every executed mutation leaves exactly one record here. The ledger is the
source of truth for "did this already happen": the idempotency guard reads
it by idempotency_key, and transaction reconstruction reads it by
transaction_id.

Invariants:
    - Records are never updated or deleted (enforced by database triggers)
    - idempotency_key is unique across all records where it is not null
    - before_state/after_state are stored as a pair in one INSERT
    - Append failures raise AuditAppendError; they are never swallowed

How to change safely:
    - Do not add update or delete methods
    - New record fields need a nullable column or a default
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..commands import Action, AuditSource
from ..errors import AuditAppendError
from .database import Database, now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One immutable ledger entry.

    Attributes:
        id: Record id (UUID)
        owner_id: Owner the mutation was executed for
        action: create, update or delete
        entity_kind: Entity kind value
        entity_id: Affected entity, if any
        before_state: Row before the mutation
        after_state: Row after the mutation (None after a physical delete)
        source: Where the mutation originated
        request_id: Tracing id of the originating command
        transaction_id: Correlation id of a multi-step intent
        idempotency_key: Dedup key of the originating command
        metadata: Extra context (intent label)
        created_at: ISO-8601 UTC timestamp
    """

    id: str
    owner_id: str
    action: str
    entity_kind: str
    entity_id: str | None = None
    before_state: dict[str, Any] | None = None
    after_state: Any = None
    source: str = AuditSource.MANUAL.value
    request_id: str | None = None
    transaction_id: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "action": self.action,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "source": self.source,
            "request_id": self.request_id,
            "transaction_id": self.transaction_id,
            "idempotency_key": self.idempotency_key,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


class AuditLedger:
    """Append-only ledger over the audit_log table.

    Example:
        >>> ledger = AuditLedger(db)
        >>> record = await ledger.append(
        ...     owner_id="user-1",
        ...     action=Action.CREATE,
        ...     entity_kind="assignment",
        ...     entity_id="a1",
        ...     after_state={"id": "a1", "title": "Essay"},
        ... )
        >>> (await ledger.query_by_idempotency_key("k1")) is None
        True
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        return AuditRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            action=row["action"],
            entity_kind=row["entity_kind"],
            entity_id=row["entity_id"],
            before_state=_loads(row["before_state"]),
            after_state=_loads(row["after_state"]),
            source=row["source"],
            request_id=row["request_id"],
            transaction_id=row["transaction_id"],
            idempotency_key=row["idempotency_key"],
            metadata=json.loads(row["metadata_json"]),
            created_at=row["created_at"],
        )

    async def append(
        self,
        owner_id: str,
        action: Action | str,
        entity_kind: str,
        entity_id: str | None = None,
        before_state: dict[str, Any] | None = None,
        after_state: Any = None,
        source: AuditSource | str = AuditSource.MANUAL,
        request_id: str | None = None,
        transaction_id: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Append one record.

        Args:
            owner_id: Owner the mutation was executed for
            action: Mutating action
            entity_kind: Entity kind value
            entity_id: Affected entity
            before_state: Row before the mutation
            after_state: Row after the mutation
            source: Audit source
            request_id: Tracing id
            transaction_id: Correlation id
            idempotency_key: Dedup key
            metadata: Extra context

        Returns:
            The stored record

        Raises:
            AuditAppendError: If the record could not be written
        """
        record = AuditRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            action=action.value if isinstance(action, Action) else action,
            entity_kind=entity_kind,
            entity_id=entity_id,
            before_state=before_state,
            after_state=after_state,
            source=source.value if isinstance(source, AuditSource) else source,
            request_id=request_id,
            transaction_id=transaction_id,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
            created_at=now_iso(),
        )

        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_log (
                        id, owner_id, action, entity_kind, entity_id,
                        before_state, after_state, source, request_id,
                        transaction_id, idempotency_key, metadata_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.owner_id,
                        record.action,
                        record.entity_kind,
                        record.entity_id,
                        json.dumps(record.before_state) if record.before_state is not None else None,
                        json.dumps(record.after_state) if record.after_state is not None else None,
                        record.source,
                        record.request_id,
                        record.transaction_id,
                        record.idempotency_key,
                        json.dumps(record.metadata),
                        record.created_at,
                    ),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise AuditAppendError(
                f"Failed to append audit record: {e}",
                details={"entity_kind": entity_kind, "entity_id": entity_id},
            ) from e

        logger.debug(
            "Appended audit record",
            extra={
                "audit_log_id": record.id,
                "owner_id": owner_id,
                "action": record.action,
                "entity_kind": entity_kind,
                "entity_id": entity_id,
            },
        )
        return record

    async def query_by_idempotency_key(self, idempotency_key: str) -> AuditRecord | None:
        """Point lookup by idempotency key.

        Keys are global; the caller is responsible for comparing owners.
        """
        with self.db.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM audit_log WHERE idempotency_key = ?",
                (idempotency_key,),
            )
            row = cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def query_by_transaction(self, owner_id: str, transaction_id: str) -> list[AuditRecord]:
        """All of an owner's records for a transaction, in append order."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM audit_log
                WHERE owner_id = ? AND transaction_id = ?
                ORDER BY rowid ASC
                """,
                (owner_id, transaction_id),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    async def entity_history(
        self,
        owner_id: str,
        entity_kind: str,
        entity_id: str,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """An entity's mutation history, oldest first."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM audit_log
                WHERE owner_id = ? AND entity_kind = ? AND entity_id = ?
                ORDER BY rowid ASC
                LIMIT ?
                """,
                (owner_id, entity_kind, entity_id, limit),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]
