"""
Entity handlers, one per entity kind.

The router holds a dict[EntityKind, EntityHandler] built once at startup by
build_handlers(); there is no dispatch on types at request time.
"""

from __future__ import annotations

import httpx

from ..commands import EntityKind
from ..config import ServerConfig
from ..store.entity_store import EntityStore
from .assignment import AssignmentHandler
from .base import EntityHandler, PolicyHandler
from .course import CourseHandler
from .document import DocumentGenerationHandler
from .event import EventHandler, EventSchedule, derive_schedule
from .exam import ExamHandler
from .policy import POLICIES, DeletionPolicy, EntityPolicy
from .study_session import StudySessionHandler

__all__ = [
    "AssignmentHandler",
    "CourseHandler",
    "DeletionPolicy",
    "DocumentGenerationHandler",
    "EntityHandler",
    "EntityPolicy",
    "EventHandler",
    "EventSchedule",
    "ExamHandler",
    "POLICIES",
    "PolicyHandler",
    "StudySessionHandler",
    "build_handlers",
    "derive_schedule",
]


def build_handlers(
    store: EntityStore,
    config: ServerConfig,
    http_client: httpx.AsyncClient,
) -> dict[EntityKind, EntityHandler]:
    """Build the handler table.

    Args:
        store: Owner-scoped entity store
        config: Server configuration
        http_client: Client used for the note-generation service

    Returns:
        Mapping covering every EntityKind
    """
    return {
        EntityKind.EVENT: EventHandler(
            store,
            POLICIES[EntityKind.EVENT],
            default_timezone=config.scheduling.default_timezone,
        ),
        EntityKind.ASSIGNMENT: AssignmentHandler(store, POLICIES[EntityKind.ASSIGNMENT]),
        EntityKind.EXAM: ExamHandler(store, POLICIES[EntityKind.EXAM]),
        EntityKind.STUDY_SESSION: StudySessionHandler(store, POLICIES[EntityKind.STUDY_SESSION]),
        EntityKind.COURSE: CourseHandler(
            store,
            POLICIES[EntityKind.COURSE],
            semester_length_days=config.scheduling.semester_length_days,
        ),
        EntityKind.DOCUMENT_GENERATION: DocumentGenerationHandler(
            http_client,
            url=config.generation.url,
            api_key=config.generation.api_key,
            timeout_seconds=config.generation.timeout_seconds,
        ),
    }
