"""
Enqueue helpers called at the tail of the activity-log create/update handlers.

Notification is best-effort: an unresolvable facilitator or an unreachable
queue is logged and None is returned, so the caller's request still succeeds.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import CourseDirectory, DataResolutionError, require_recipient
from job_queue.message_queue import JobQueue, QueueUnavailable
from models.schemas import JobKind, LogEventPayload
from notifications import templates

logger = structlog.get_logger()


async def publish_log_submitted(
    queue: JobQueue,
    directory: CourseDirectory,
    allocation_id: str,
    week: int,
    message: str = None,
    subject: str = None,
) -> Optional[str]:
    return await _publish(queue, directory, JobKind.LOG_SUBMITTED, templates.log_submitted_message,
                          allocation_id, week, message, subject)


async def publish_grading_updated(
    queue: JobQueue,
    directory: CourseDirectory,
    allocation_id: str,
    week: int,
    message: str = None,
    subject: str = None,
) -> Optional[str]:
    return await _publish(queue, directory, JobKind.GRADING_UPDATED, templates.grading_updated_message,
                          allocation_id, week, message, subject)


async def _publish(
    queue: JobQueue,
    directory: CourseDirectory,
    kind: JobKind,
    defaults: Callable[[int], templates.Email],
    allocation_id: str,
    week: int,
    message: Optional[str],
    subject: Optional[str],
) -> Optional[str]:
    try:
        allocation = await directory.get_allocation(allocation_id)
        if allocation is None:
            raise DataResolutionError(f"Allocation {allocation_id} not found", "allocation", allocation_id)
        facilitator = require_recipient(allocation.facilitator, "allocation", allocation_id)
    except DataResolutionError as e:
        logger.warning("notification_not_published", kind=kind.value, allocation_id=allocation_id, reason=str(e))
        return None
    except Exception as e:
        logger.error("notification_lookup_failed", kind=kind.value, allocation_id=allocation_id, error=str(e))
        return None

    default_subject, default_message = defaults(week)
    payload = LogEventPayload(
        facilitator_email=facilitator.email,
        facilitator_name=facilitator.name,
        week=week,
        allocation_id=allocation_id,
        message=message or default_message,
        subject=subject or default_subject,
    )
    try:
        return await queue.enqueue(kind, payload)
    except QueueUnavailable as e:
        logger.error("notification_enqueue_failed", kind=kind.value, allocation_id=allocation_id, error=str(e))
        return None
