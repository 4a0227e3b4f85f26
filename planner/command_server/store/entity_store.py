"""
Owner-scoped entity store.

Every read and write is filtered by owner_id. A row owned by someone else
is simply not there as far as the caller can tell.

Rows are returned as flat dictionaries:
    {"id", "owner_id", <entity fields...>, "version", "created_at", "updated_at"}

Invariants:
    - owner_id is set on insert and never changed
    - version starts at 1 and increments on every update
    - Table names are checked against ENTITY_TABLES before use in SQL
    - Field names are checked against an identifier pattern before use in SQL

How to change safely:
    - New tables must be added to ENTITY_TABLES in database.py
    - Keep row dictionaries JSON-serializable; they are stored in the audit log
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from ..errors import VersionConflictError
from .database import ENTITY_TABLES, Database, now_iso

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")
_COLUMNS = {"id", "owner_id", "version", "created_at", "updated_at"}
_OPERATORS = {"=", "!=", ">", ">=", "<", "<="}


@dataclass(frozen=True)
class Filter:
    """A single predicate on an entity field.

    Attributes:
        field: Entity field name (or a row column such as id)
        op: Comparison operator
        value: Value to compare against; None with "=" means IS NULL
    """

    field: str
    op: str = "="
    value: Any = None


class EntityStore:
    """Owner-scoped CRUD over the entity tables.

    Example:
        >>> store = EntityStore(db)
        >>> row = await store.insert("assignments", "user-1", {"title": "Essay"})
        >>> await store.get("assignments", "user-2", row["id"])  # other owner
        None
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def _check_table(self, table: str) -> str:
        if table not in ENTITY_TABLES:
            raise ValueError(f"Unknown table: {table}")
        return table

    def _column(self, name: str) -> str:
        if not _FIELD_NAME.match(name):
            raise ValueError(f"Invalid field name: {name}")
        if name in _COLUMNS:
            return name
        return f"json_extract(data_json, '$.{name}')"

    def _row_to_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        result: dict[str, Any] = {"id": row["id"], "owner_id": row["owner_id"]}
        result.update(json.loads(row["data_json"]))
        result["version"] = row["version"]
        result["created_at"] = row["created_at"]
        result["updated_at"] = row["updated_at"]
        return result

    def _fetch(
        self,
        conn: sqlite3.Connection,
        table: str,
        owner_id: str,
        entity_id: str,
    ) -> sqlite3.Row | None:
        cursor = conn.execute(
            f"SELECT * FROM {table} WHERE id = ? AND owner_id = ?",
            (entity_id, owner_id),
        )
        return cursor.fetchone()

    @staticmethod
    def _strip_columns(data: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in data.items() if k not in _COLUMNS}

    async def insert(
        self,
        table: str,
        owner_id: str,
        data: dict[str, Any],
        entity_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert a new row.

        Args:
            table: Entity table
            owner_id: Owner of the new row
            data: Entity fields
            entity_id: Optional specific id (generated if not provided)

        Returns:
            The stored row
        """
        table = self._check_table(table)
        entity_id = entity_id or str(uuid.uuid4())
        now = now_iso()

        with self.db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO {table} (id, owner_id, data_json, version, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (entity_id, owner_id, json.dumps(self._strip_columns(data)), now, now),
            )
            row = self._fetch(conn, table, owner_id, entity_id)

        logger.debug(
            "Inserted row",
            extra={"table": table, "owner_id": owner_id, "entity_id": entity_id},
        )
        return self._row_to_dict(row)

    async def get(self, table: str, owner_id: str, entity_id: str) -> dict[str, Any] | None:
        """Get a row by id, scoped to its owner.

        Returns:
            Row or None if absent or owned by someone else
        """
        table = self._check_table(table)
        with self.db.connect() as conn:
            row = self._fetch(conn, table, owner_id, entity_id)
            return self._row_to_dict(row) if row else None

    async def select(
        self,
        table: str,
        owner_id: str,
        filters: list[Filter] | None = None,
        order_by: tuple[str, ...] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List an owner's rows.

        Args:
            table: Entity table
            owner_id: Owner whose rows are listed
            filters: Predicates, AND-ed together
            order_by: Field names; a leading "-" sorts descending
            limit: Maximum rows to return
            offset: Pagination offset

        Returns:
            List of rows
        """
        table = self._check_table(table)
        query = f"SELECT * FROM {table} WHERE owner_id = ?"
        params: list[Any] = [owner_id]

        for flt in filters or []:
            if flt.op not in _OPERATORS:
                raise ValueError(f"Invalid operator: {flt.op}")
            column = self._column(flt.field)
            if flt.value is None and flt.op in ("=", "!="):
                query += f" AND {column} IS {'NOT ' if flt.op == '!=' else ''}NULL"
            else:
                query += f" AND {column} {flt.op} ?"
                params.append(flt.value)

        order_terms = []
        for name in order_by:
            descending = name.startswith("-")
            column = self._column(name.lstrip("-"))
            order_terms.append(f"{column} {'DESC' if descending else 'ASC'}")
        order_terms.append("created_at ASC")
        query += " ORDER BY " + ", ".join(order_terms)

        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        with self.db.connect() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_dict(row) for row in cursor.fetchall()]

    async def update(
        self,
        table: str,
        owner_id: str,
        entity_id: str,
        patch: dict[str, Any],
        expected_version: int | None = None,
    ) -> dict[str, Any] | None:
        """Update a row's fields.

        Uses PATCH semantics - merges with the existing fields.

        Args:
            table: Entity table
            owner_id: Owner of the row
            entity_id: Row id
            patch: Fields to overwrite
            expected_version: When set, the update only applies at this version

        Returns:
            Updated row or None if not found

        Raises:
            VersionConflictError: If expected_version does not match
        """
        table = self._check_table(table)
        now = now_iso()

        with self.db.transaction() as conn:
            row = self._fetch(conn, table, owner_id, entity_id)
            if not row:
                return None

            if expected_version is not None and row["version"] != expected_version:
                raise VersionConflictError(entity_id, expected_version, row["version"])

            data = json.loads(row["data_json"])
            data.update(self._strip_columns(patch))

            conn.execute(
                f"""
                UPDATE {table} SET data_json = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND owner_id = ? AND version = ?
                """,
                (json.dumps(data), now, entity_id, owner_id, row["version"]),
            )
            updated = self._fetch(conn, table, owner_id, entity_id)

        return self._row_to_dict(updated)

    async def delete(self, table: str, owner_id: str, entity_id: str) -> bool:
        """Physically delete a row.

        Returns:
            True if deleted, False if not found
        """
        table = self._check_table(table)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND owner_id = ?",
                (entity_id, owner_id),
            )
            return cursor.rowcount > 0

    async def get_owner_timezone(self, owner_id: str) -> str | None:
        """Get the owner's stored timezone, if any."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "SELECT timezone FROM owner_profiles WHERE owner_id = ?",
                (owner_id,),
            )
            row = cursor.fetchone()
            return row["timezone"] if row else None

    async def set_owner_timezone(self, owner_id: str, tz_name: str) -> None:
        """Store the owner's timezone (IANA name)."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO owner_profiles (owner_id, timezone, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    timezone = excluded.timezone, updated_at = excluded.updated_at
                """,
                (owner_id, tz_name, now_iso()),
            )
