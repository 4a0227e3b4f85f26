"""
Per-kind entity policy table.

Handlers share one CRUD implementation; everything that differs between
entity kinds (table, deletion policy, default ordering, accepted read
filters, updatable fields) lives here as data.

How to change safely:
    - A new filter needs a FilterSpec here, nothing in the handler
    - Switching a kind between logical and physical deletion changes what
      deleted rows look like to readers; audit history is unaffected
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..commands import EntityKind


class DeletionPolicy(Enum):
    """How a delete action retires a row."""

    LOGICAL = "logical"  # is_active=false, row stays readable by id
    PHYSICAL = "physical"  # row removed


@dataclass(frozen=True)
class FilterSpec:
    """Maps a read-payload parameter onto an entity field predicate.

    Attributes:
        param: Key in the read payload
        field: Entity field compared against
        op: Comparison operator
    """

    param: str
    field: str
    op: str = "="


@dataclass(frozen=True)
class EntityPolicy:
    """Storage and lifecycle policy for one entity kind."""

    kind: EntityKind
    table: str
    deletion: DeletionPolicy
    order_by: tuple[str, ...]
    filters: tuple[FilterSpec, ...]
    updatable: frozenset[str]


def _eq(*params: str) -> tuple[FilterSpec, ...]:
    return tuple(FilterSpec(p, p) for p in params)


def _range(param_from: str, param_to: str, field: str) -> tuple[FilterSpec, ...]:
    return (FilterSpec(param_from, field, ">="), FilterSpec(param_to, field, "<="))


POLICIES: dict[EntityKind, EntityPolicy] = {
    EntityKind.EVENT: EntityPolicy(
        kind=EntityKind.EVENT,
        table="schedule_blocks",
        deletion=DeletionPolicy.LOGICAL,
        order_by=("specific_date", "start_time"),
        filters=(
            FilterSpec("date", "specific_date"),
            *_range("date_from", "date_to", "specific_date"),
            *_eq("course_id"),
        ),
        updatable=frozenset({
            "title", "specific_date", "start_time", "end_time", "day_of_week",
            "location", "description", "course_id", "is_recurring",
        }),
    ),
    EntityKind.ASSIGNMENT: EntityPolicy(
        kind=EntityKind.ASSIGNMENT,
        table="assignments",
        deletion=DeletionPolicy.PHYSICAL,
        order_by=("due_date",),
        filters=(
            *_eq("course_id", "is_completed"),
            *_range("due_from", "due_to", "due_date"),
        ),
        updatable=frozenset({
            "title", "description", "due_date", "priority", "estimated_hours",
            "assignment_type", "course_id", "is_completed", "completion_percentage",
        }),
    ),
    EntityKind.EXAM: EntityPolicy(
        kind=EntityKind.EXAM,
        table="exams",
        deletion=DeletionPolicy.PHYSICAL,
        order_by=("exam_date",),
        filters=(
            *_eq("course_id", "exam_type"),
            *_range("date_from", "date_to", "exam_date"),
        ),
        updatable=frozenset({
            "title", "exam_date", "duration_minutes", "location", "notes",
            "exam_type", "study_hours_planned", "course_id",
        }),
    ),
    EntityKind.STUDY_SESSION: EntityPolicy(
        kind=EntityKind.STUDY_SESSION,
        table="study_sessions",
        deletion=DeletionPolicy.PHYSICAL,
        order_by=("scheduled_start",),
        filters=(
            *_eq("course_id", "assignment_id", "exam_id", "status"),
            *_range("date_from", "date_to", "scheduled_start"),
        ),
        updatable=frozenset({
            "title", "scheduled_start", "scheduled_end", "status", "notes",
            "course_id", "assignment_id", "exam_id",
        }),
    ),
    EntityKind.COURSE: EntityPolicy(
        kind=EntityKind.COURSE,
        table="courses",
        deletion=DeletionPolicy.LOGICAL,
        order_by=("name",),
        filters=_eq("semester_id"),
        updatable=frozenset({
            "name", "code", "credits", "instructor", "color", "target_grade", "semester_id",
        }),
    ),
}
