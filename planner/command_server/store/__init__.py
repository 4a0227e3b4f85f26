"""
SQLite-backed storage: entity tables, the audit ledger, and idempotency reservations.
"""

from .audit_ledger import AuditLedger, AuditRecord
from .database import ENTITY_TABLES, Database
from .entity_store import EntityStore, Filter

__all__ = [
    "AuditLedger",
    "AuditRecord",
    "Database",
    "ENTITY_TABLES",
    "EntityStore",
    "Filter",
]
