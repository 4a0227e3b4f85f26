"""
Planner Command Server - command orchestration and audit for the study planner.

Every caller that wants to mutate planner data (the chat assistant, imports,
calendar sync) sends a structured command through one entry point:

    ┌─────────────┐     ┌──────────────┐     ┌──────────────────┐
    │   Caller    │────▶│ CommandRouter│────▶│ IdempotencyGuard │
    │ (chat/API)  │     └──────┬───────┘     └────────┬─────────┘
    └─────────────┘            │                      │
                               ▼                      ▼
                        ┌──────────────┐     ┌──────────────────┐
                        │EntityHandlers│     │   AuditLedger    │
                        │ (six kinds)  │     │  (append-only)   │
                        └──────┬───────┘     └────────┬─────────┘
                               │                      │
                               ▼                      ▼
                        ┌─────────────────────────────────────┐
                        │          SQLite (planner.db)        │
                        └─────────────────────────────────────┘

Invariants:
    - Every entity is visible only to its owner; cross-owner access is NOT_FOUND
    - Every executed mutation writes exactly one audit record
    - An idempotency key executes its side effects at most once
    - Audit records are never updated or deleted

How to change safely:
    - New entity kinds need an EntityKind member, a policy row and a handler
    - Keep the envelope shape stable; callers branch on error_code only
    - Test replays and concurrent duplicates for every new mutating path
"""

from ._version import __version__

__all__ = ["__version__"]
