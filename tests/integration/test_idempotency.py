"""
Integration tests for the idempotency guard.

Tests cover:
- Concurrent duplicates execute once
- A key held by an in-flight request
- Release after a failed execution
- Keys reused across owners
"""

import asyncio
import threading

import httpx
import pytest

from planner.command_server.commands import Command
from planner.command_server.errors import IdempotencyConflictError
from planner.command_server.handlers import build_handlers
from planner.command_server.idempotency import IdempotencyGuard
from planner.command_server.router import CommandRouter
from planner.command_server.store import AuditLedger, Database, EntityStore


async def _handle_in_own_router(config, cmd):
    """Run one command through a router built on its own connections."""
    db = Database(config.storage.db_path, wal_mode=False)
    ledger = AuditLedger(db)
    guard = IdempotencyGuard(db, ledger, retry_attempts=200, retry_delay_ms=10)
    async with httpx.AsyncClient() as client:
        router = CommandRouter(build_handlers(EntityStore(db), config, client), guard, ledger)
        return await router.handle(cmd)


class TestConcurrentDedup:
    """N concurrent callers with one key."""

    def test_single_mutation_across_threads(self, config, make_command):
        db = Database(config.storage.db_path, wal_mode=False)
        asyncio.run(db.initialize())
        cmd = make_command(
            "study_session",
            "create",
            {
                "title": "Chapter 4",
                "scheduled_start": "2025-03-03T18:00:00Z",
                "scheduled_end": "2025-03-03T19:30:00Z",
            },
            idempotency_key="session-k",
        )
        workers = 8
        barrier = threading.Barrier(workers)
        envelopes = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            envelope = asyncio.run(_handle_in_own_router(config, cmd))
            with lock:
                envelopes.append(envelope)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(envelopes) == workers
        assert all(e.success for e in envelopes), [e.error for e in envelopes]
        assert len({e.entity_id for e in envelopes}) == 1
        assert sum(1 for e in envelopes if not e.cached) == 1

        with db.connect() as conn:
            rows = conn.execute("SELECT COUNT(*) FROM study_sessions").fetchone()[0]
            records = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]
        assert rows == 1
        assert records == 1

    @pytest.mark.asyncio
    async def test_sequential_duplicates(self, router, store, make_command):
        cmd = make_command("exam", "create", {"title": "Quiz"}, idempotency_key="exam-k")

        envelopes = [await router.handle(cmd) for _ in range(3)]

        assert [e.cached for e in envelopes] == [False, True, True]
        assert len(await store.select("exams", "alice")) == 1


class TestInFlightKey:
    """A reservation without a result."""

    @pytest.mark.asyncio
    async def test_held_key_reports_in_progress(self, router, guard, store, make_command):
        cmd = make_command("exam", "create", {"title": "Final"}, idempotency_key="held")
        holder = await guard.acquire(Command.from_dict(cmd))
        assert holder.reserved

        envelope = await router.handle(cmd)
        assert envelope.error_code == "WORKER_ERROR"
        assert "in progress" in envelope.error
        assert await store.select("exams", "alice") == []

        # Holder gave up; a retry with the same key now executes
        await guard.release("held")
        retried = await router.handle(cmd)
        assert retried.success
        assert not retried.cached

    @pytest.mark.asyncio
    async def test_waiter_picks_up_result(self, router, guard, ledger, make_command):
        """A waiter replays the holder's result once it is recorded."""
        cmd = make_command("exam", "create", {"title": "Final"}, idempotency_key="slow")
        parsed = Command.from_dict(cmd)
        await guard.acquire(parsed)

        async def finish_later():
            await asyncio.sleep(0.005)
            await ledger.append(
                owner_id="alice",
                action="create",
                entity_kind="exam",
                entity_id="e-from-holder",
                after_state={"id": "e-from-holder", "title": "Final"},
                idempotency_key="slow",
            )

        envelope, _ = await asyncio.gather(router.handle(cmd), finish_later())

        assert envelope.success
        assert envelope.cached
        assert envelope.entity_id == "e-from-holder"


class TestRelease:
    """Failed executions do not burn the key."""

    @pytest.mark.asyncio
    async def test_failed_create_can_be_retried(self, router, make_command, audit_count):
        bad = make_command("assignment", "create", {"description": "no title"}, idempotency_key="k1")
        good = make_command("assignment", "create", {"title": "Essay"}, idempotency_key="k1")

        failed = await router.handle(bad)
        assert failed.error_code == "INVALID_PAYLOAD"

        succeeded = await router.handle(good)
        assert succeeded.success
        assert not succeeded.cached
        assert audit_count() == 1


class TestCrossOwner:
    """Keys are global, results are not shared."""

    @pytest.mark.asyncio
    async def test_other_owner_gets_conflict(self, router, make_command):
        alice = await router.handle(
            make_command("exam", "create", {"title": "Alice"}, idempotency_key="shared")
        )
        bob = await router.handle(
            make_command("exam", "create", {"title": "Bob"}, owner_id="bob", idempotency_key="shared")
        )

        assert alice.success
        assert bob.success is False
        assert bob.error_code == "IDEMPOTENCY_CONFLICT"
        assert bob.data is None
        assert bob.entity_id is None

    @pytest.mark.asyncio
    async def test_lookup(self, router, guard, make_command):
        await router.handle(make_command("exam", "create", {"title": "A"}, idempotency_key="k9"))

        hit = await guard.lookup("k9", owner_id="alice")
        assert hit.hit and hit.envelope.cached

        miss = await guard.lookup("k10")
        assert not miss.hit

        with pytest.raises(IdempotencyConflictError):
            await guard.lookup("k9", owner_id="bob")
