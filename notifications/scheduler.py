"""
Reminder Scheduler — timer-driven producer of reminder jobs.

Two background tasks while running:

  overdue loop   one scan at start(), then every overdue_interval seconds
  weekly loop    sleeps until the next weekday/hour (Monday 09:00), then
                 broadcasts every weekly_interval after that wall-clock time

A scan that raises is logged as SchedulerTickError and the loop carries on.
Wall-clock values come from the injected clock, in the configured timezone.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from database.store_base import CourseDirectory, DataResolutionError, require_recipient
from job_queue.message_queue import JobQueue
from models.schemas import JobKind, OverdueReminderPayload, WeeklyReminderPayload
from notifications.weeks import current_week, format_deadline, next_weekly_run, reporting_deadline

logger = structlog.get_logger()

Clock = Callable[[], datetime]


class SchedulerTickError(Exception):
    """A scan failed; the scheduler keeps running."""

    def __init__(self, tick: str, cause: BaseException):
        self.tick = tick
        self.cause = cause
        super().__init__(f"{tick} failed: {cause}")


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class ReminderScheduler:
    """
    Usage:
        scheduler = ReminderScheduler(queue, directory, tz="Africa/Kigali")
        await scheduler.start()     # scans once, then arms both loops
        await scheduler.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        directory: CourseDirectory,
        *,
        overdue_interval: float = 3600,
        weekly_weekday: int = 0,
        weekly_hour: int = 9,
        weekly_interval: float = 7 * 24 * 3600,
        tz: str = "UTC",
        clock: Clock = None,
    ):
        self.queue = queue
        self.directory = directory
        self.overdue_interval = overdue_interval
        self.weekly_weekday = weekly_weekday
        self.weekly_hour = weekly_hour
        self.weekly_interval = weekly_interval
        self.tz = ZoneInfo(tz)
        self._clock = clock or (lambda: datetime.now(self.tz))
        self.state = SchedulerState.STOPPED
        self._tasks: list[asyncio.Task] = []
        self._generation = 0

    @property
    def running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self.running:
            logger.info("scheduler_already_running")
            return
        self.state = SchedulerState.RUNNING
        self._generation += 1
        generation = self._generation
        logger.info("scheduler_started",
                    overdue_interval=self.overdue_interval,
                    weekly_weekday=self.weekly_weekday,
                    weekly_hour=self.weekly_hour,
                    timezone=str(self.tz))

        await self._safe_tick(self.overdue_scan)
        if generation != self._generation:
            # stop() (and maybe another start()) ran during the first scan
            logger.info("scheduler_start_superseded")
            return
        self._tasks = [
            asyncio.create_task(self._overdue_loop(), name="scheduler:overdue"),
            asyncio.create_task(self._weekly_loop(), name="scheduler:weekly"),
        ]

    async def stop(self) -> None:
        if not self.running:
            logger.info("scheduler_not_running")
            return
        self.state = SchedulerState.STOPPED
        self._generation += 1
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    async def _overdue_loop(self) -> None:
        # fixed rate: the next scan is due one interval after the previous was due
        due = self.now().timestamp() + self.overdue_interval
        while True:
            await asyncio.sleep(max(0.0, due - self.now().timestamp()))
            await self._safe_tick(self.overdue_scan)
            due += self.overdue_interval
            if due <= self.now().timestamp():
                due = self.now().timestamp() + self.overdue_interval

    async def _weekly_loop(self) -> None:
        due = next_weekly_run(self.now(), self.weekly_weekday, self.weekly_hour)
        while True:
            logger.info("weekly_broadcast_armed", next_run=due.isoformat())
            await asyncio.sleep(max(0.0, due.timestamp() - self.now().timestamp()))
            await self._safe_tick(self.weekly_broadcast)
            # aware datetime arithmetic keeps the local wall-clock hour across DST
            due += timedelta(seconds=self.weekly_interval)
            if due <= self.now():
                due = next_weekly_run(self.now(), self.weekly_weekday, self.weekly_hour)

    async def _safe_tick(self, tick: Callable[[], Awaitable[int]]) -> Optional[int]:
        try:
            return await tick()
        except SchedulerTickError as e:
            logger.error("scheduler_tick_failed", tick=e.tick, error=str(e.cause))
            return None

    # ── Scans ─────────────────────────────────────────────────

    async def overdue_scan(self) -> int:
        """
        Enqueue one overdue-reminder per activity log from an earlier week.

        Logs whose facilitator chain has no email are skipped. Returns the
        number of jobs enqueued.
        """
        try:
            now = self.now()
            week = current_week(now)
            deadline = format_deadline(reporting_deadline(now))
            logs = await self.directory.overdue_logs(week)
            logger.info("overdue_logs_found", count=len(logs), current_week=week)

            enqueued = 0
            for log in logs:
                try:
                    facilitator = require_recipient(log.facilitator, "activity_log", log.id)
                except DataResolutionError as e:
                    logger.info("overdue_log_skipped", log_id=log.id, reason=str(e))
                    continue
                await self.queue.enqueue(JobKind.OVERDUE_REMINDER, OverdueReminderPayload(
                    facilitator_email=facilitator.email,
                    facilitator_name=facilitator.name,
                    week=log.week,
                    allocation_id=log.allocation_id,
                    deadline=deadline,
                ))
                enqueued += 1
        except Exception as e:
            raise SchedulerTickError("overdue_scan", e) from e

        logger.info("overdue_scan_complete", enqueued=enqueued, deadline=deadline)
        return enqueued

    async def weekly_broadcast(self) -> int:
        """Enqueue one weekly-reminder per allocation of every reachable facilitator."""
        try:
            week = current_week(self.now())
            facilitators = await self.directory.facilitators_with_allocations()

            enqueued = 0
            for facilitator in facilitators:
                if not facilitator.allocation_ids:
                    continue
                try:
                    user = require_recipient(facilitator.user, "facilitator", facilitator.id)
                except DataResolutionError as e:
                    logger.info("weekly_reminder_skipped", facilitator_id=facilitator.id, reason=str(e))
                    continue
                for allocation_id in facilitator.allocation_ids:
                    await self.queue.enqueue(JobKind.WEEKLY_REMINDER, WeeklyReminderPayload(
                        facilitator_email=user.email,
                        facilitator_name=user.name,
                        week=week,
                        allocation_id=allocation_id,
                    ))
                    enqueued += 1
        except Exception as e:
            raise SchedulerTickError("weekly_broadcast", e) from e

        logger.info("weekly_broadcast_complete",
                    facilitators=len(facilitators), enqueued=enqueued, week=week)
        return enqueued
