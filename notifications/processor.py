"""
Notification Processor — executes queued notification jobs.

One routine per job kind, registered once at process start:

  log-submitted / grading-updated  facilitator mail, then manager fan-out
  overdue-reminder                 urgent facilitator mail, then manager alert
  weekly-reminder                  facilitator mail only

A failing facilitator mail raises, so the job is marked failed and no
manager is contacted. Manager sends are isolated from each other: a
failure is logged and the remaining managers are still mailed.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable

from channels.base import MailGateway
from database.store_base import CourseDirectory, DataResolutionError, require_recipient
from job_queue.message_queue import Job
from models.schemas import JobKind, parse_payload
from notifications import templates

logger = structlog.get_logger()

Route = Callable[[Job], Awaitable[dict[str, Any]]]


class NotificationProcessor:

    def __init__(self, gateway: MailGateway, directory: CourseDirectory):
        self.gateway = gateway
        self.directory = directory
        self._routes: dict[JobKind, Route] = {
            JobKind.LOG_SUBMITTED: self.handle_log_submitted,
            JobKind.GRADING_UPDATED: self.handle_grading_updated,
            JobKind.OVERDUE_REMINDER: self.handle_overdue_reminder,
            JobKind.WEEKLY_REMINDER: self.handle_weekly_reminder,
        }
        missing = set(JobKind) - set(self._routes)
        if missing:
            raise RuntimeError(f"No notification routine for {sorted(k.value for k in missing)}")

    def register(self, consumer) -> None:
        """Register every routine with a JobConsumer."""
        for kind, route in self._routes.items():
            consumer.register(kind, route)

    async def handle(self, job: Job) -> dict[str, Any]:
        return await self._routes[job.kind](job)

    # ── Routines ──────────────────────────────────────────────

    async def handle_log_submitted(self, job: Job) -> dict[str, Any]:
        payload = parse_payload(job.kind, job.payload)
        await self._send_facilitator(job, *templates.log_submitted_facilitator(payload))
        return await self._notify_managers(job, *templates.log_submitted_manager(payload))

    async def handle_grading_updated(self, job: Job) -> dict[str, Any]:
        payload = parse_payload(job.kind, job.payload)
        await self._send_facilitator(job, *templates.grading_updated_facilitator(payload))
        return await self._notify_managers(job, *templates.grading_updated_manager(payload))

    async def handle_overdue_reminder(self, job: Job) -> dict[str, Any]:
        payload = parse_payload(job.kind, job.payload)
        await self._send_facilitator(job, *templates.overdue_facilitator(payload))
        return await self._notify_managers(job, *templates.overdue_manager(payload))

    async def handle_weekly_reminder(self, job: Job) -> dict[str, Any]:
        payload = parse_payload(job.kind, job.payload)
        await self._send_facilitator(job, *templates.weekly_facilitator(payload))
        return {"facilitator": 1, "managers_sent": 0, "managers_failed": 0, "managers_skipped": 0}

    # ── Delivery ──────────────────────────────────────────────

    async def _send_facilitator(self, job: Job, subject: str, body: str) -> None:
        to = job.payload.get("facilitatorEmail", "")
        await self.gateway.send(to, subject, body)
        logger.info("facilitator_notified", job_id=job.job_id, kind=job.kind.value, to=to)

    async def _notify_managers(self, job: Job, subject: str, body: str) -> dict[str, Any]:
        """Mail every manager independently. Never raises."""
        stats = {"facilitator": 1, "managers_sent": 0, "managers_failed": 0, "managers_skipped": 0}
        try:
            managers = await self.directory.managers()
        except Exception as e:
            logger.error("manager_lookup_failed", job_id=job.job_id, error=str(e))
            return stats

        recipients = []
        for manager in managers:
            try:
                recipients.append(require_recipient(manager.user, "manager", manager.id).email)
            except DataResolutionError as e:
                stats["managers_skipped"] += 1
                logger.warning("manager_skipped", job_id=job.job_id, manager_id=manager.id, reason=str(e))

        results = await asyncio.gather(
            *(self.gateway.send(to, subject, body) for to in recipients),
            return_exceptions=True,
        )
        for to, result in zip(recipients, results):
            if isinstance(result, BaseException):
                stats["managers_failed"] += 1
                logger.error("manager_notification_failed", job_id=job.job_id, to=to, error=str(result))
            else:
                stats["managers_sent"] += 1
                logger.info("manager_notified", job_id=job.job_id, kind=job.kind.value, to=to)
        return stats
