"""
Entity handler contract and the table-driven CRUD implementation.

Every entity kind exposes the same four async operations and returns an
Envelope. Handlers never write audit records; they hand the router a
StateChange (before/after) inside the envelope and the router appends it.

Invariants:
    - Every store call is scoped by owner_id
    - update/delete fetch the row first; absent -> NotFoundError, no mutation
    - update only writes keys present in the payload (explicit None overwrites)
    - Reads by id return logically deleted rows; list reads hide them unless
      include_inactive is set

How to change safely:
    - Put kind-specific rules in the prepare_*/validate hooks of a subclass
    - Keep kind-specific data (tables, filters, fields) in policy.py
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from ..commands import Action, AuditSource, Command, EntityKind, Envelope, StateChange
from ..errors import InvalidPayloadError, NotFoundError
from ..store.entity_store import EntityStore, Filter
from .policy import DeletionPolicy, EntityPolicy

logger = logging.getLogger(__name__)


def require_entity_id(command: Command) -> str:
    entity_id = command.entity_id
    if not entity_id:
        raise InvalidPayloadError("id is required", field_name="id")
    return entity_id


class EntityHandler(ABC):
    """Uniform per-kind contract the router dispatches to."""

    kind: EntityKind

    async def dispatch(self, command: Command) -> Envelope:
        """Run the command's action against this handler."""
        if command.action is Action.CREATE:
            return await self.create(command.owner_id, command.payload, source=command.source)
        if command.action is Action.READ:
            return await self.read(command.owner_id, command.payload)
        if command.action is Action.UPDATE:
            return await self.update(command.owner_id, self.target_id(command), command.payload)
        return await self.delete(command.owner_id, self.target_id(command))

    def target_id(self, command: Command) -> str:
        """Entity id an update or delete applies to."""
        return require_entity_id(command)

    @abstractmethod
    async def create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        source: AuditSource = AuditSource.ADA_AI,
    ) -> Envelope:
        pass

    @abstractmethod
    async def read(self, owner_id: str, payload: dict[str, Any]) -> Envelope:
        pass

    @abstractmethod
    async def update(self, owner_id: str, entity_id: str, payload: dict[str, Any]) -> Envelope:
        pass

    @abstractmethod
    async def delete(self, owner_id: str, entity_id: str) -> Envelope:
        pass


class PolicyHandler(EntityHandler):
    """CRUD over an owner-scoped table, driven by an EntityPolicy.

    Subclasses set ``defaults`` and ``required`` and override the hooks
    for kind-specific business rules.
    """

    defaults: dict[str, Any] = {}
    required: tuple[str, ...] = ()

    def __init__(self, store: EntityStore, policy: EntityPolicy) -> None:
        self.store = store
        self.policy = policy
        self.kind = policy.kind

    # Hooks

    async def prepare_create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        data: dict[str, Any],
        source: AuditSource,
    ) -> dict[str, Any]:
        """Adjust the row about to be inserted."""
        return data

    async def prepare_update(
        self,
        owner_id: str,
        before: dict[str, Any],
        payload: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        """Adjust the patch about to be applied."""
        return patch

    def validate(self, row: dict[str, Any]) -> None:
        """Check the row as it will look after the write.

        Raises:
            InvalidPayloadError: If a business rule is violated
        """

    # Operations

    async def create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        source: AuditSource = AuditSource.ADA_AI,
    ) -> Envelope:
        data = {k: v for k, v in payload.items() if k in self.policy.updatable}
        for name, value in self.defaults.items():
            if data.get(name) is None:
                data[name] = value
        if self.policy.deletion is DeletionPolicy.LOGICAL:
            data["is_active"] = True

        data = await self.prepare_create(owner_id, payload, data, source)

        for name in self.required:
            if data.get(name) in (None, ""):
                raise InvalidPayloadError(f"{name} is required", field_name=name)
        self.validate(data)

        row = await self.store.insert(self.policy.table, owner_id, data)
        logger.info(
            "Created entity",
            extra={"owner_id": owner_id, "entity_kind": self.kind.value, "entity_id": row["id"]},
        )
        return Envelope.ok(data=row, entity_id=row["id"], change=StateChange(None, row))

    async def read(self, owner_id: str, payload: dict[str, Any]) -> Envelope:
        entity_id = payload.get("id")
        if entity_id:
            row = await self.store.get(self.policy.table, owner_id, str(entity_id))
            if row is None:
                raise NotFoundError(self.kind.value, str(entity_id))
            return Envelope.ok(data=row, entity_id=row["id"])

        rows = await self.store.select(
            self.policy.table,
            owner_id,
            filters=self.build_filters(payload),
            order_by=self.policy.order_by,
            limit=self._int_param(payload, "limit"),
            offset=self._int_param(payload, "offset") or 0,
        )
        return Envelope.ok(data=rows)

    async def update(self, owner_id: str, entity_id: str, payload: dict[str, Any]) -> Envelope:
        before = await self._fetch(owner_id, entity_id)

        patch = {k: v for k, v in payload.items() if k in self.policy.updatable}
        patch = await self.prepare_update(owner_id, before, payload, patch)
        self.validate({**before, **patch})

        after = await self.store.update(
            self.policy.table,
            owner_id,
            entity_id,
            patch,
            expected_version=self._int_param(payload, "expected_version"),
        )
        if after is None:
            raise NotFoundError(self.kind.value, entity_id)

        logger.info(
            "Updated entity",
            extra={
                "owner_id": owner_id,
                "entity_kind": self.kind.value,
                "entity_id": entity_id,
                "fields": sorted(patch),
            },
        )
        return Envelope.ok(data=after, entity_id=entity_id, change=StateChange(before, after))

    async def delete(self, owner_id: str, entity_id: str) -> Envelope:
        before = await self._fetch(owner_id, entity_id)

        after: dict[str, Any] | None
        if self.policy.deletion is DeletionPolicy.LOGICAL:
            after = await self.store.update(
                self.policy.table, owner_id, entity_id, {"is_active": False}
            )
            if after is None:
                raise NotFoundError(self.kind.value, entity_id)
        else:
            if not await self.store.delete(self.policy.table, owner_id, entity_id):
                raise NotFoundError(self.kind.value, entity_id)
            after = None

        logger.info(
            "Deleted entity",
            extra={
                "owner_id": owner_id,
                "entity_kind": self.kind.value,
                "entity_id": entity_id,
                "deletion": self.policy.deletion.value,
            },
        )
        return Envelope.ok(data=after, entity_id=entity_id, change=StateChange(before, after))

    # Helpers

    def build_filters(self, payload: dict[str, Any]) -> list[Filter]:
        """Translate read-payload parameters into store filters."""
        filters = [
            Filter(spec.field, spec.op, payload[spec.param])
            for spec in self.policy.filters
            if payload.get(spec.param) is not None
        ]
        if self.policy.deletion is DeletionPolicy.LOGICAL and not payload.get("include_inactive"):
            filters.append(Filter("is_active", "=", True))
        return filters

    async def _fetch(self, owner_id: str, entity_id: str) -> dict[str, Any]:
        row = await self.store.get(self.policy.table, owner_id, entity_id)
        if row is None:
            raise NotFoundError(self.kind.value, entity_id)
        return row

    @staticmethod
    def _int_param(payload: dict[str, Any], name: str) -> int | None:
        value = payload.get(name)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidPayloadError(f"{name} must be an integer", field_name=name)
        return value
