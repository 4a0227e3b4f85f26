"""
Planner Command Server Test Suite.

This package contains:
- unit/: Unit tests (types, config, auth, SQLite store and ledger)
- integration/: Integration tests (router, handlers, idempotency, HTTP app)
"""
