"""
Queue Consumer — Pulls notification jobs from the queue and runs their handlers.

Runs as async tasks inside the application process, one set of workers per
job kind. With several workers (or several processes) on the same kind,
the queue's atomic claim guarantees a job is leased to one worker at a time.

Topology:
  ┌──────────────┐        ┌──────────────────┐        ┌────────────┐
  │ Log handlers │──add──▶│ wait:<kind> FIFO │──claim▶│  Consumer  │
  │ Scheduler    │        └──────────────────┘        │  Worker(s) │
  └──────────────┘                                    └─────┬──────┘
                                                            │
                          ┌──────────────────┐              │
                          │ completed/failed │◀── outcome ──┘
                          └────────┬─────────┘
                                   │ clean (older than retention),
                                   │ re-run expired active leases
                                   ▼
                          ┌──────────────────┐
                          │  QueueJanitor    │
                          └──────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from job_queue.message_queue import JobHandler, JobQueue, TERMINAL_STATES
from models.schemas import JobKind

logger = structlog.get_logger()


class JobConsumer:
    """
    Runs the registered handler of every job kind against the queue.

    Usage:
        consumer = JobConsumer(queue, concurrency=1)
        consumer.register(JobKind.WEEKLY_REMINDER, handler)
        await consumer.start()       # returns immediately, workers run as tasks
        await consumer.stop()
    """

    def __init__(self, queue: JobQueue, concurrency: int = 1):
        self.queue = queue
        self.concurrency = max(1, concurrency)
        self._handlers: dict[JobKind, JobHandler] = {}
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def kinds(self) -> list[JobKind]:
        return list(self._handlers)

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        """Register the handler for a kind. One handler per kind."""
        kind = JobKind(kind)
        if kind in self._handlers:
            raise ValueError(f"A handler is already registered for {kind.value}")
        self._handlers[kind] = handler
        logger.info("consumer_registered", kind=kind.value)

    async def start(self) -> None:
        if self._tasks:
            logger.info("job_consumer_already_running")
            return
        for kind, handler in self._handlers.items():
            for i in range(self.concurrency):
                name = f"{kind.value}-{i}"
                self._tasks.append(asyncio.create_task(
                    self.queue.consume(kind, handler, consumer_name=name),
                    name=f"consumer:{name}",
                ))
        logger.info("job_consumer_started",
                    kinds=[k.value for k in self._handlers],
                    concurrency=self.concurrency)

    async def stop(self) -> None:
        """Cancel all worker tasks and wait for them to exit."""
        if not self._tasks:
            logger.info("job_consumer_not_running")
            return
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("job_consumer_stopped")


# ──────────────────────────────────────────────────────────────
#  Janitor
# ──────────────────────────────────────────────────────────────

class QueueJanitor:
    """
    Background task that periodically re-runs jobs whose lease expired
    (their worker died mid-job) and deletes completed and failed jobs
    older than the retention window. The first sweep runs at start.
    """

    def __init__(self, queue: JobQueue, interval_seconds: int = 3600, retention_seconds: int = 86400):
        self.queue = queue
        self.interval = interval_seconds
        self.retention = retention_seconds
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> Optional[asyncio.Task]:
        if self._task and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self._run(), name="queue_janitor")
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def sweep(self) -> int:
        """Recover stalled leases, then clean. Returns the number of jobs removed."""
        await self.queue.recover_stalled()
        removed = await self.queue.clean(self.retention, TERMINAL_STATES)
        if removed:
            logger.info("queue_cleaned", removed=removed, retention_s=self.retention)
        return removed

    async def _run(self):
        logger.info("queue_janitor_started", interval=self.interval)
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_janitor_error", error=str(e))
            await asyncio.sleep(self.interval)
