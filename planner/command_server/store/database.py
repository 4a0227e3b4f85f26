"""
SQLite database for the Planner Command Server.

One database file holds:
- Entity tables (one per kind, plus semesters), rows owned by one owner_id
- owner_profiles, carrying each owner's timezone
- audit_log, the append-only mutation ledger
- idempotency_keys, reservations taken before a deduplicated command runs

Invariants:
    - All write operations run inside an explicit transaction
    - audit_log rejects UPDATE and DELETE at the database level
    - audit_log.idempotency_key is unique where not null
    - idempotency_keys.key is unique; a duplicate insert is the collision signal

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and add an idempotent migration step
    - Never relax the audit_log triggers or the unique indexes

Table schema:
    <entity table>:
        - id TEXT PRIMARY KEY (UUID)
        - owner_id TEXT
        - data_json TEXT (JSON object of entity fields)
        - version INTEGER (incremented on every update)
        - created_at TEXT (ISO-8601 UTC)
        - updated_at TEXT (ISO-8601 UTC)

    audit_log:
        - id TEXT PRIMARY KEY (UUID)
        - owner_id, action, entity_kind, entity_id
        - before_state / after_state TEXT (JSON)
        - source, request_id, transaction_id, idempotency_key
        - metadata_json TEXT, created_at TEXT
        - UNIQUE (idempotency_key) WHERE idempotency_key IS NOT NULL
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

ENTITY_TABLES = (
    "schedule_blocks",
    "assignments",
    "exams",
    "study_sessions",
    "courses",
    "semesters",
)


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Database:
    """SQLite database handle shared by the entity store, ledger and guard.

    Thread safety:
        A connection is created per operation.
        SQLite serializes writers; BEGIN IMMEDIATE takes the write lock up front.

    Example:
        >>> db = Database("/var/lib/planner/planner.db")
        >>> await db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("INSERT INTO ...")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the database handle.

        Args:
            path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection in autocommit mode."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection inside BEGIN IMMEDIATE; commit or roll back on exit."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self.connect() as conn:
            self._create_schema(conn)
        logger.info("Initialized planner database", extra={"path": str(self.path)})

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        statements = [
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """,
        ]

        for table in ENTITY_TABLES:
            statements.append(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    data_json TEXT NOT NULL DEFAULT '{{}}',
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}(owner_id, created_at)"
            )

        statements.extend([
            """
            CREATE TABLE IF NOT EXISTS owner_profiles (
                owner_id TEXT PRIMARY KEY,
                timezone TEXT NOT NULL DEFAULT 'UTC',
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                action TEXT NOT NULL
                    CHECK (action IN ('create', 'read', 'update', 'delete')),
                entity_kind TEXT NOT NULL,
                entity_id TEXT,
                before_state TEXT,
                after_state TEXT,
                source TEXT NOT NULL DEFAULT 'manual'
                    CHECK (source IN ('manual', 'ada-ai', 'import', 'sync', 'api')),
                request_id TEXT,
                transaction_id TEXT,
                idempotency_key TEXT,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_audit_log_owner ON audit_log(owner_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log(entity_kind, entity_id)",
            """
            CREATE INDEX IF NOT EXISTS idx_audit_log_transaction
                ON audit_log(transaction_id) WHERE transaction_id IS NOT NULL
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_audit_log_idempotency
                ON audit_log(idempotency_key) WHERE idempotency_key IS NOT NULL
            """,
            """
            CREATE TRIGGER IF NOT EXISTS audit_log_no_update
            BEFORE UPDATE ON audit_log
            BEGIN
                SELECT RAISE(ABORT, 'audit_log is append-only');
            END
            """,
            """
            CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
            BEFORE DELETE ON audit_log
            BEGIN
                SELECT RAISE(ABORT, 'audit_log is append-only');
            END
            """,
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                request_id TEXT,
                envelope_json TEXT,
                reserved_at TEXT NOT NULL
            )
            """,
        ])

        conn.execute("BEGIN IMMEDIATE")
        try:
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (self.SCHEMA_VERSION, now_iso()),
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
