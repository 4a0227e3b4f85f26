"""Exam handler."""

from __future__ import annotations

from .base import PolicyHandler


class ExamHandler(PolicyHandler):
    """Exams; physically deleted."""

    defaults = {
        "duration_minutes": 60,
        "exam_type": "midterm",
        "study_hours_planned": 10,
        "exam_date": None,
        "location": None,
        "notes": None,
        "course_id": None,
    }
    required = ("title",)
