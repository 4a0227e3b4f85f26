"""
Command and result envelope types.

A Command is the normalized form of one caller intent against one entity.
An Envelope is the uniform result every handler returns, whatever the
entity kind; the router depends on nothing else.

Example command:
    {
        "entity_kind": "event",
        "action": "create",
        "payload": {"title": "Midterm review",
                    "start": "2025-03-01T09:00Z", "end": "2025-03-01T10:00Z"},
        "idempotency_key": "k1",
        "transaction_id": "tx-42"
    }

Invariants:
    - owner_id always comes from a verified identity, never from the body
    - request_id is for tracing only; idempotency_key is the sole dedup key
    - Envelope.change is never serialized
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import (
    AuthRequiredError,
    CommandError,
    ErrorCode,
    InvalidPayloadError,
    UnknownActionError,
    UnknownEntityError,
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class EntityKind(str, Enum):
    """Entity kinds the router can dispatch to."""

    EVENT = "event"
    ASSIGNMENT = "assignment"
    EXAM = "exam"
    STUDY_SESSION = "study_session"
    COURSE = "course"
    DOCUMENT_GENERATION = "document_generation"

    @classmethod
    def parse(cls, value: Any) -> EntityKind:
        """Parse snake_case, CamelCase or legacy names.

        Raises:
            UnknownEntityError: If the value names no known kind
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise UnknownEntityError(value)

        name = _CAMEL_BOUNDARY.sub("_", value.strip()).replace("-", "_").lower()
        name = _ENTITY_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise UnknownEntityError(value) from None


_ENTITY_ALIASES = {
    "cornell_notes": EntityKind.DOCUMENT_GENERATION.value,
    "schedule_block": EntityKind.EVENT.value,
}


class Action(str, Enum):
    """CRUD actions."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_mutation(self) -> bool:
        return self is not Action.READ

    @classmethod
    def parse(cls, value: Any) -> Action:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise UnknownActionError(value)


class AuditSource(str, Enum):
    """Where a mutation originated."""

    MANUAL = "manual"
    ADA_AI = "ada-ai"
    IMPORT = "import"
    SYNC = "sync"
    API = "api"


@dataclass(frozen=True)
class Command:
    """A normalized inbound command.

    Attributes:
        owner_id: Verified caller identity
        intent: Free-form intent label (defaults to "<action>_<kind>")
        entity_kind: Target entity kind
        action: CRUD action
        payload: Action arguments (fields, filters, id)
        request_id: Tracing id, generated when absent
        idempotency_key: Optional dedup key for mutations
        transaction_id: Optional correlation id for multi-step intents
        source: Audit source label
    """

    owner_id: str
    entity_kind: EntityKind
    action: Action
    payload: dict[str, Any] = field(default_factory=dict)
    intent: str = ""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    idempotency_key: str | None = None
    transaction_id: str | None = None
    source: AuditSource = AuditSource.ADA_AI

    @property
    def entity_id(self) -> str | None:
        value = self.payload.get("id")
        return str(value) if value is not None else None

    @property
    def deduplicated(self) -> bool:
        """Whether the idempotency guard applies to this command."""
        return self.action.is_mutation and bool(self.idempotency_key)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        owner_id: str | None = None,
        default_source: AuditSource = AuditSource.ADA_AI,
    ) -> Command:
        """Normalize a raw inbound command.

        Args:
            data: Raw command mapping (transport body)
            owner_id: Verified owner id; overrides anything in the body
            default_source: Source used when the body does not name one

        Returns:
            Command instance

        Raises:
            UnknownEntityError: Unknown or missing entity kind
            UnknownActionError: Unknown or missing action
            AuthRequiredError: No owner id available
            InvalidPayloadError: Payload or source malformed
        """
        entity_kind = EntityKind.parse(data.get("entity_kind", data.get("entity_type")))
        action = Action.parse(data.get("action"))

        owner = owner_id if owner_id is not None else data.get("owner_id")
        if not owner:
            raise AuthRequiredError()

        payload = data.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise InvalidPayloadError("payload must be an object", field_name="payload")

        raw_source = data.get("source")
        if raw_source is None:
            source = default_source
        else:
            try:
                source = AuditSource(raw_source)
            except ValueError:
                raise InvalidPayloadError(
                    f"Unknown source: {raw_source}", field_name="source"
                ) from None

        return cls(
            owner_id=str(owner),
            entity_kind=entity_kind,
            action=action,
            payload=dict(payload),
            intent=data.get("intent") or f"{action.value}_{entity_kind.value}",
            request_id=data.get("request_id") or str(uuid.uuid4()),
            idempotency_key=data.get("idempotency_key") or None,
            transaction_id=data.get("transaction_id") or None,
            source=source,
        )

    def with_transaction(self, transaction_id: str) -> Command:
        """Copy of this command tagged with a transaction id."""
        return Command(
            owner_id=self.owner_id,
            entity_kind=self.entity_kind,
            action=self.action,
            payload=dict(self.payload),
            intent=self.intent,
            request_id=self.request_id,
            idempotency_key=self.idempotency_key,
            transaction_id=transaction_id,
            source=self.source,
        )


@dataclass(frozen=True)
class StateChange:
    """Before/after entity state captured by a handler for the audit ledger."""

    before: dict[str, Any] | None
    after: dict[str, Any] | None


@dataclass
class Envelope:
    """Uniform result of a command.

    Attributes:
        success: Whether the command succeeded
        data: Entity row, list of rows, or generated document
        error: Human-readable error message
        error_code: Stable error code (see ErrorCode)
        entity_id: Id of the affected entity
        cached: True when replayed from a previous execution
        audit_log_id: Id of the audit record written for this mutation
        degraded: True when the entity write committed but the audit append failed
        change: Before/after state for the audit write (not serialized)
    """

    success: bool
    data: Any = None
    error: str | None = None
    error_code: str | None = None
    entity_id: str | None = None
    cached: bool = False
    audit_log_id: str | None = None
    degraded: bool = False
    change: StateChange | None = field(default=None, compare=False, repr=False)

    @classmethod
    def ok(
        cls,
        data: Any = None,
        entity_id: str | None = None,
        change: StateChange | None = None,
    ) -> Envelope:
        return cls(success=True, data=data, entity_id=entity_id, change=change)

    @classmethod
    def failure(cls, code: ErrorCode | str, message: str) -> Envelope:
        code_value = code.value if isinstance(code, ErrorCode) else code
        return cls(success=False, error=message, error_code=code_value)

    @classmethod
    def from_error(cls, error: CommandError) -> Envelope:
        return cls.failure(error.code, error.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for transport, omitting unset fields."""
        result: dict[str, Any] = {"success": self.success}
        for name in ("data", "error", "error_code", "entity_id", "audit_log_id"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.cached:
            result["cached"] = True
        if self.degraded:
            result["degraded"] = True
        return result

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> Envelope:
        """Rebuild an envelope serialized with to_dict()."""
        return cls(
            success=bool(data.get("success")),
            data=data.get("data"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            entity_id=data.get("entity_id"),
            cached=bool(data.get("cached", False)),
            audit_log_id=data.get("audit_log_id"),
            degraded=bool(data.get("degraded", False)),
        )
