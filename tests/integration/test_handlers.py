"""
Integration tests for per-kind entity handlers.

Tests cover:
- Event timezone derivation and rescheduling
- Assignment completion rules
- Exam and study session defaults and validation
- Course default-semester creation
- Document generation proxy and its unimplemented actions
- Optimistic version checks
"""

import json
from datetime import date

import pytest

from planner.command_server.commands import EntityKind
from planner.command_server.errors import InvalidPayloadError
from planner.command_server.handlers import POLICIES, CourseHandler


class TestEventHandler:
    """Event business rules."""

    @pytest.mark.asyncio
    async def test_owner_timezone(self, router, store, make_command):
        await store.set_owner_timezone("alice", "America/New_York")

        envelope = await router.handle(
            make_command(
                "event",
                "create",
                {
                    "title": "Late lab",
                    "start_iso": "2025-03-01T03:00:00Z",
                    "end_iso": "2025-03-01T04:00:00Z",
                    "notes": "Bring goggles",
                },
            )
        )

        event = envelope.data
        assert event["specific_date"] == "2025-02-28"
        assert event["start_time"] == "22:00:00"
        assert event["day_of_week"] == 5
        assert event["description"] == "Bring goggles"

    @pytest.mark.asyncio
    async def test_end_before_start(self, router, make_command):
        envelope = await router.handle(
            make_command(
                "event",
                "create",
                {"title": "Backwards", "start": "2025-03-01T10:00Z", "end": "2025-03-01T09:00Z"},
            )
        )
        assert envelope.error_code == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_reschedule(self, router, make_command):
        created = await router.handle(
            make_command(
                "event",
                "create",
                {"title": "Review", "start": "2025-03-01T09:00Z", "end": "2025-03-01T10:00Z"},
            )
        )

        moved = await router.handle(
            make_command(
                "event",
                "update",
                {"id": created.entity_id, "start": "2025-03-03T08:30Z"},
            )
        )

        event = moved.data
        assert event["specific_date"] == "2025-03-03"
        assert event["start_time"] == "08:30:00"
        assert event["day_of_week"] == 1
        assert event["end_time"] == "10:00:00"
        assert event["title"] == "Review"

    @pytest.mark.asyncio
    async def test_list_filters(self, router, make_command):
        for day in ("01", "02", "05"):
            await router.handle(
                make_command(
                    "event",
                    "create",
                    {
                        "title": f"Day {day}",
                        "start": f"2025-03-{day}T09:00Z",
                        "end": f"2025-03-{day}T10:00Z",
                    },
                )
            )

        exact = await router.handle(make_command("event", "read", {"date": "2025-03-02"}))
        assert [e["title"] for e in exact.data] == ["Day 02"]

        ranged = await router.handle(
            make_command("event", "read", {"date_from": "2025-03-02", "date_to": "2025-03-05"})
        )
        assert [e["title"] for e in ranged.data] == ["Day 02", "Day 05"]

        retired = exact.data[0]["id"]
        await router.handle(make_command("event", "delete", {"id": retired}))

        active = await router.handle(make_command("event", "read"))
        assert len(active.data) == 2

        everything = await router.handle(make_command("event", "read", {"include_inactive": True}))
        assert len(everything.data) == 3


class TestAssignmentHandler:
    """Assignment defaults and completion rules."""

    @pytest.mark.asyncio
    async def test_defaults(self, router, make_command):
        envelope = await router.handle(make_command("assignment", "create", {"title": "Essay"}))

        row = envelope.data
        assert row["priority"] == 2
        assert row["assignment_type"] == "homework"
        assert row["is_completed"] is False
        assert row["completion_percentage"] == 0

    @pytest.mark.asyncio
    async def test_created_completed(self, router, make_command):
        done = await router.handle(
            make_command("assignment", "create", {"title": "Essay", "is_completed": True})
        )
        partial = await router.handle(
            make_command(
                "assignment",
                "create",
                {"title": "Lab", "is_completed": True, "completion_percentage": 80},
            )
        )

        assert done.data["is_completed"] is True
        assert done.data["completion_percentage"] == 100
        assert partial.data["completion_percentage"] == 80

    @pytest.mark.asyncio
    async def test_uncompleting_keeps_percentage(self, router, make_command):
        created = await router.handle(make_command("assignment", "create", {"title": "Essay"}))
        entity_id = created.entity_id

        await router.handle(
            make_command("assignment", "update", {"id": entity_id, "completion_percentage": 60})
        )
        reopened = await router.handle(
            make_command("assignment", "update", {"id": entity_id, "is_completed": False})
        )

        assert reopened.data["is_completed"] is False
        assert reopened.data["completion_percentage"] == 60

    @pytest.mark.asyncio
    async def test_explicit_percentage_wins(self, router, make_command):
        created = await router.handle(make_command("assignment", "create", {"title": "Essay"}))

        updated = await router.handle(
            make_command(
                "assignment",
                "update",
                {"id": created.entity_id, "is_completed": True, "completion_percentage": 90},
            )
        )
        assert updated.data["completion_percentage"] == 90

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [-1, 101, "half"])
    async def test_percentage_range(self, router, make_command, value):
        created = await router.handle(make_command("assignment", "create", {"title": "Essay"}))

        updated = await router.handle(
            make_command(
                "assignment", "update", {"id": created.entity_id, "completion_percentage": value}
            )
        )
        assert updated.error_code == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_filters(self, router, make_command):
        await router.handle(
            make_command("assignment", "create", {"title": "Late", "due_date": "2025-05-01"})
        )
        early = await router.handle(
            make_command("assignment", "create", {"title": "Early", "due_date": "2025-04-01"})
        )
        await router.handle(
            make_command("assignment", "update", {"id": early.entity_id, "is_completed": True})
        )

        ordered = await router.handle(make_command("assignment", "read"))
        assert [a["title"] for a in ordered.data] == ["Early", "Late"]

        open_items = await router.handle(
            make_command("assignment", "read", {"is_completed": False})
        )
        assert [a["title"] for a in open_items.data] == ["Late"]

        due_soon = await router.handle(
            make_command("assignment", "read", {"due_to": "2025-04-15"})
        )
        assert [a["title"] for a in due_soon.data] == ["Early"]

    @pytest.mark.asyncio
    async def test_expected_version(self, router, make_command, audit_count):
        created = await router.handle(make_command("assignment", "create", {"title": "Essay"}))
        entity_id = created.entity_id

        first = await router.handle(
            make_command(
                "assignment",
                "update",
                {"id": entity_id, "completion_percentage": 40, "expected_version": 1},
            )
        )
        stale = await router.handle(
            make_command(
                "assignment",
                "update",
                {"id": entity_id, "completion_percentage": 20, "expected_version": 1},
            )
        )

        assert first.success
        assert first.data["version"] == 2
        assert stale.error_code == "VERSION_CONFLICT"
        assert audit_count() == 2


class TestExamHandler:
    """Exam defaults."""

    @pytest.mark.asyncio
    async def test_defaults(self, router, make_command):
        envelope = await router.handle(
            make_command("exam", "create", {"title": "Final", "exam_date": "2025-06-10"})
        )

        row = envelope.data
        assert row["duration_minutes"] == 60
        assert row["exam_type"] == "midterm"
        assert row["study_hours_planned"] == 10

    @pytest.mark.asyncio
    async def test_title_required(self, router, make_command):
        envelope = await router.handle(make_command("exam", "create", {"exam_date": "2025-06-10"}))
        assert envelope.error_code == "INVALID_PAYLOAD"


class TestStudySessionHandler:
    """Study session status and time rules."""

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, router, make_command):
        created = await router.handle(
            make_command("study_session", "create", {"title": "Flashcards"})
        )
        assert created.data["status"] == "scheduled"

        started = await router.handle(
            make_command(
                "study_session", "update", {"id": created.entity_id, "status": "in_progress"}
            )
        )
        assert started.data["status"] == "in_progress"

        bogus = await router.handle(
            make_command("study_session", "update", {"id": created.entity_id, "status": "napping"})
        )
        assert bogus.error_code == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_end_before_start(self, router, make_command):
        envelope = await router.handle(
            make_command(
                "study_session",
                "create",
                {
                    "title": "Backwards",
                    "scheduled_start": "2025-03-03T19:00:00Z",
                    "scheduled_end": "2025-03-03T18:00:00Z",
                },
            )
        )
        assert envelope.error_code == "INVALID_PAYLOAD"


class TestCourseHandler:
    """Default semester creation."""

    @pytest.mark.asyncio
    async def test_creates_and_reuses_semester(self, router, store, make_command):
        first = await router.handle(make_command("course", "create", {"name": "Biology"}))
        second = await router.handle(make_command("course", "create", {"name": "Chemistry"}))

        semester_id = first.data["semester_id"]
        assert semester_id
        assert second.data["semester_id"] == semester_id

        semesters = await store.select("semesters", "alice")
        assert len(semesters) == 1
        assert semesters[0]["name"] == "Current Semester"
        assert semesters[0]["is_active"] is True

        assert first.data["credits"] == 3
        assert first.data["color"] == "blue"

    @pytest.mark.asyncio
    async def test_explicit_semester(self, router, store, make_command):
        await store.insert(
            "semesters", "alice", {"name": "Spring", "is_active": True}, entity_id="sem-1"
        )

        envelope = await router.handle(
            make_command("course", "create", {"name": "Physics", "semester_id": "sem-1"})
        )

        assert envelope.data["semester_id"] == "sem-1"
        assert len(await store.select("semesters", "alice")) == 1

    @pytest.mark.asyncio
    async def test_foreign_semester_on_create(self, router, store, make_command, audit_count):
        bob = await router.handle(
            make_command("course", "create", {"name": "Biology"}, owner_id="bob")
        )
        bobs_semester = bob.data["semester_id"]

        envelope = await router.handle(
            make_command("course", "create", {"name": "Chemistry", "semester_id": bobs_semester})
        )

        assert envelope.success is False
        assert envelope.error_code == "NOT_FOUND"
        assert await store.select("courses", "alice") == []
        assert audit_count() == 1

    @pytest.mark.asyncio
    async def test_foreign_semester_on_update(self, router, make_command):
        bob = await router.handle(
            make_command("course", "create", {"name": "Biology"}, owner_id="bob")
        )
        alice = await router.handle(make_command("course", "create", {"name": "Chemistry"}))

        moved = await router.handle(
            make_command(
                "course",
                "update",
                {"id": alice.entity_id, "semester_id": bob.data["semester_id"]},
            )
        )
        cleared = await router.handle(
            make_command("course", "update", {"id": alice.entity_id, "semester_id": None})
        )

        assert moved.error_code == "NOT_FOUND"
        assert cleared.error_code == "INVALID_PAYLOAD"

        current = await router.handle(make_command("course", "read", {"id": alice.entity_id}))
        assert current.data["semester_id"] == alice.data["semester_id"]

    @pytest.mark.asyncio
    async def test_semester_span(self, store):
        handler = CourseHandler(
            store,
            POLICIES[EntityKind.COURSE],
            semester_length_days=120,
            today=lambda: date(2025, 1, 10),
        )

        envelope = await handler.create("alice", {"name": "History"})

        semester = await store.get("semesters", "alice", envelope.data["semester_id"])
        assert semester["start_date"] == "2025-01-10"
        assert semester["end_date"] == "2025-05-10"

    @pytest.mark.asyncio
    async def test_semesters_are_per_owner(self, router, make_command):
        alice = await router.handle(make_command("course", "create", {"name": "Biology"}))
        bob = await router.handle(
            make_command("course", "create", {"name": "Biology"}, owner_id="bob")
        )
        assert alice.data["semester_id"] != bob.data["semester_id"]

    @pytest.mark.asyncio
    async def test_name_required(self, store):
        handler = CourseHandler(store, POLICIES[EntityKind.COURSE])
        with pytest.raises(InvalidPayloadError):
            await handler.create("alice", {"code": "BIO101"})


class TestDocumentGenerationHandler:
    """Proxy to the note-generation service."""

    @pytest.mark.asyncio
    async def test_create(self, router, ledger, notes_service, make_command):
        envelope = await router.handle(
            make_command(
                "cornell_notes",
                "create",
                {"topic": "Photosynthesis", "fileName": "bio.pdf"},
                transaction_id="tx-notes",
            )
        )

        assert envelope.success
        assert envelope.data == notes_service.response["data"]
        assert envelope.entity_id is None

        request = notes_service.requests[0]
        assert request.headers["Authorization"] == "Bearer service-key"
        body = json.loads(request.content)
        assert body["topic"] == "Photosynthesis"
        assert body["depthLevel"] == "standard"

        records = await ledger.query_by_transaction("alice", "tx-notes")
        assert len(records) == 1
        assert records[0].entity_kind == "document_generation"
        assert records[0].entity_id is None
        assert records[0].after_state == notes_service.response["data"]

    @pytest.mark.asyncio
    async def test_service_failure(self, router, notes_service, make_command, audit_count):
        notes_service.response = {"success": False, "error": "Topic too vague"}

        envelope = await router.handle(
            make_command("DocumentGeneration", "create", {"topic": "stuff"})
        )

        assert envelope.error_code == "WORKER_ERROR"
        assert envelope.error == "Topic too vague"
        assert audit_count() == 0

    @pytest.mark.asyncio
    async def test_non_json_response(self, router, notes_service, make_command):
        notes_service.status_code = 502
        notes_service.response = None

        envelope = await router.handle(
            make_command("document_generation", "create", {"topic": "stuff"})
        )
        assert envelope.error_code == "WORKER_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["read", "update", "delete"])
    async def test_unimplemented_actions(self, router, notes_service, make_command, action):
        envelope = await router.handle(make_command("document_generation", action))

        assert envelope.success is False
        assert envelope.error_code == "NOT_IMPLEMENTED"
        assert "not yet implemented" in envelope.error
        assert notes_service.requests == []
