"""Study session handler."""

from __future__ import annotations

from typing import Any

from ..errors import InvalidPayloadError
from .base import PolicyHandler
from .event import parse_instant

SESSION_STATUSES = frozenset({"scheduled", "in_progress", "completed", "skipped"})


class StudySessionHandler(PolicyHandler):
    """Study sessions; physically deleted."""

    defaults = {
        "status": "scheduled",
        "scheduled_start": None,
        "scheduled_end": None,
        "course_id": None,
        "assignment_id": None,
        "exam_id": None,
        "notes": None,
    }
    required = ("title",)

    def validate(self, row: dict[str, Any]) -> None:
        status = row.get("status")
        if status not in SESSION_STATUSES:
            raise InvalidPayloadError(
                f"status must be one of: {', '.join(sorted(SESSION_STATUSES))}",
                field_name="status",
            )

        if row.get("scheduled_start") and row.get("scheduled_end"):
            start = parse_instant(row["scheduled_start"], "scheduled_start")
            end = parse_instant(row["scheduled_end"], "scheduled_end")
            if end < start:
                raise InvalidPayloadError(
                    "scheduled_end must not precede scheduled_start",
                    field_name="scheduled_end",
                )
