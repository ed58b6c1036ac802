"""
Background writes issued by the evaluation path.

Sticky assignments and analytics events are persisted off the request
path through the task queue.
"""

from typing import Any

import structlog

from featurekit.core.interfaces.queue import QueueBackend

from .exceptions import AssignmentExistsError
from .interfaces import FeatureEvent, FeatureRepository, UserAssignment

ASSIGNMENT_TASK = "features.create_user_assignment"
EVENT_TASK = "features.create_feature_event"


def register_feature_tasks(
    queue: QueueBackend,
    repository: FeatureRepository,
    logger: Any | None = None,
) -> None:
    """Register the sticky-assignment and event writers on a queue."""
    logger = logger or structlog.get_logger(__name__)

    @queue.register(ASSIGNMENT_TASK)
    async def create_user_assignment(assignment: UserAssignment) -> None:
        try:
            await repository.create_user_assignment(assignment)
        except AssignmentExistsError:
            # Another replica won the race; its record is authoritative
            logger.debug(
                "assignment_exists",
                user_id=assignment.user_id,
                subject_key=assignment.subject_key,
            )

    @queue.register(EVENT_TASK)
    async def create_feature_event(event: FeatureEvent) -> None:
        await repository.create_feature_event(event)
