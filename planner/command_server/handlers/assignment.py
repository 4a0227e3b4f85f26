"""
Assignment handler.

Completion is normalized on create and update: is_completed=true without
an explicit completion_percentage forces it to 100; is_completed=false
leaves the percentage alone unless the payload supplies one.
"""

from __future__ import annotations

from typing import Any

from ..commands import AuditSource
from ..errors import InvalidPayloadError
from .base import PolicyHandler


class AssignmentHandler(PolicyHandler):
    """Assignments; physically deleted."""

    defaults = {
        "priority": 2,
        "assignment_type": "homework",
        "is_completed": False,
        "completion_percentage": 0,
        "description": None,
        "due_date": None,
        "estimated_hours": None,
        "course_id": None,
    }
    required = ("title",)

    async def prepare_create(
        self,
        owner_id: str,
        payload: dict[str, Any],
        data: dict[str, Any],
        source: AuditSource,
    ) -> dict[str, Any]:
        if data.get("is_completed") is True and payload.get("completion_percentage") is None:
            data["completion_percentage"] = 100
        return data

    async def prepare_update(
        self,
        owner_id: str,
        before: dict[str, Any],
        payload: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        if patch.get("is_completed") is True and "completion_percentage" not in payload:
            patch["completion_percentage"] = 100
        return patch

    def validate(self, row: dict[str, Any]) -> None:
        percentage = row.get("completion_percentage")
        if percentage is None:
            return
        if isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
            raise InvalidPayloadError(
                "completion_percentage must be a number", field_name="completion_percentage"
            )
        if not 0 <= percentage <= 100:
            raise InvalidPayloadError(
                "completion_percentage must be between 0 and 100",
                field_name="completion_percentage",
            )
