"""
Course handler.

A course always belongs to a semester. When the create payload names none,
the owner's active semester is used, and if the owner has no active
semester one is created ("Current Semester", today .. today + N days).
The semester created this way is visible to the caller through the
returned course's semester_id.

Invariants:
    - Every stored course carries a semester_id owned by the same owner;
      a supplied semester_id the owner cannot see is NOT_FOUND

How to change safely:
    - Two concurrent first course creations for the same owner can each
      create a semester; callers that care should pass semester_id
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

from ..commands import AuditSource
from ..errors import InvalidPayloadError, NotFoundError
from ..store.entity_store import EntityStore, Filter
from .base import PolicyHandler
from .policy import EntityPolicy

logger = logging.getLogger(__name__)

SEMESTERS_TABLE = "semesters"
DEFAULT_SEMESTER_NAME = "Current Semester"


class CourseHandler(PolicyHandler):
    """Courses; logically deleted."""

    defaults = {"credits": 3, "color": "blue"}
    required = ("name",)

    def __init__(
        self,
        store: EntityStore,
        policy: EntityPolicy,
        semester_length_days: int = 120,
        today: Callable[[], date] = date.today,
    ) -> None:
        super().__init__(store, policy)
        self.semester_length_days = semester_length_days
        self.today = today

    async def prepare_create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        data: dict[str, Any],
        source: AuditSource,
    ) -> dict[str, Any]:
        if data.get("semester_id"):
            await self.require_semester(owner_id, data["semester_id"])
        else:
            data["semester_id"] = await self.active_semester_id(owner_id)
        for name in ("code", "instructor", "target_grade"):
            data.setdefault(name, None)
        return data

    async def prepare_update(
        self,
        owner_id: str,
        before: dict[str, Any],
        payload: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        if "semester_id" in patch:
            if not patch["semester_id"]:
                raise InvalidPayloadError("semester_id is required", field_name="semester_id")
            await self.require_semester(owner_id, patch["semester_id"])
        return patch

    async def require_semester(self, owner_id: str, semester_id: str) -> None:
        """Check that the semester exists and belongs to the owner.

        Raises:
            NotFoundError: Semester absent or owned by someone else
        """
        semester = await self.store.get(SEMESTERS_TABLE, owner_id, str(semester_id))
        if semester is None:
            raise NotFoundError("semester", str(semester_id))

    async def active_semester_id(self, owner_id: str) -> str:
        """Return the owner's active semester, creating one if none exists."""
        semesters = await self.store.select(
            SEMESTERS_TABLE,
            owner_id,
            filters=[Filter("is_active", "=", True)],
            order_by=("-start_date",),
            limit=1,
        )
        if semesters:
            return semesters[0]["id"]

        start = self.today()
        semester = await self.store.insert(
            SEMESTERS_TABLE,
            owner_id,
            {
                "name": DEFAULT_SEMESTER_NAME,
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=self.semester_length_days)).isoformat(),
                "is_active": True,
            },
        )
        logger.info(
            "Created default semester",
            extra={"owner_id": owner_id, "semester_id": semester["id"]},
        )
        return semester["id"]
