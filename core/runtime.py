"""
Notification Runtime — owns the lifecycle of the notification subsystem.

    runtime = NotificationRuntime.from_settings(get_settings())
    await runtime.start()    # queue.connect → consumers → janitor → scheduler
    ...
    await runtime.stop()     # reverse order, then close gateway, queue and engine

Nothing here is a module-level singleton; the process that wires the
runtime (the FastAPI lifespan, the ops CLI, a test) owns the instance.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from channels.base import MailGateway
from channels.email_adapter import create_mail_gateway
from config.settings import Settings
from database.session import create_engine_for, create_session_factory
from database.store_base import CourseDirectory
from database.store_factory import create_directory
from job_queue.consumer import JobConsumer, QueueJanitor
from job_queue.message_queue import JobQueue, create_message_queue
from notifications.processor import NotificationProcessor
from notifications.scheduler import ReminderScheduler

logger = structlog.get_logger()


class NotificationRuntime:

    def __init__(
        self,
        queue: JobQueue,
        directory: CourseDirectory,
        gateway: MailGateway,
        scheduler: Optional[ReminderScheduler] = None,
        concurrency: int = 1,
        clean_interval: int = 3600,
        retention: int = 86400,
        engine: Optional[AsyncEngine] = None,
    ):
        self.queue = queue
        self.directory = directory
        self.gateway = gateway
        self.scheduler = scheduler
        self.processor = NotificationProcessor(gateway, directory)
        self.consumer = JobConsumer(queue, concurrency=concurrency)
        self.processor.register(self.consumer)
        self.janitor = QueueJanitor(queue, interval_seconds=clean_interval, retention_seconds=retention)
        # owned engine behind the SQL queue/directory; disposed on stop()
        self.engine = engine
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings, clock=None) -> NotificationRuntime:
        engine = session_factory = None
        if settings.queue.backend == "sql" or settings.database.directory_backend == "sql":
            engine = create_engine_for(settings.database.url, echo=settings.debug)
            session_factory = create_session_factory(engine)

        queue = create_message_queue(asdict(settings.queue), session_factory=session_factory)
        directory = create_directory(
            {"directory_backend": settings.database.directory_backend},
            session_factory=session_factory,
        )
        gateway = create_mail_gateway(settings.mail)

        scheduler = None
        if settings.scheduler.enabled:
            scheduler = ReminderScheduler(
                queue, directory,
                overdue_interval=settings.scheduler.overdue_interval,
                weekly_weekday=settings.scheduler.weekly_weekday,
                weekly_hour=settings.scheduler.weekly_hour,
                weekly_interval=settings.scheduler.weekly_interval,
                tz=settings.timezone,
                clock=clock,
            )

        return cls(
            queue, directory, gateway, scheduler,
            concurrency=settings.queue.consumer_concurrency,
            clean_interval=settings.queue.clean_interval,
            retention=settings.queue.retention,
            engine=engine,
        )

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            logger.info("notification_runtime_already_running")
            return
        await self.queue.connect()
        await self.consumer.start()
        await self.janitor.start()
        if self.scheduler:
            await self.scheduler.start()
        self._started = True
        logger.info("notification_runtime_started",
                    queue_backend=type(self.queue).__name__,
                    gateway=self.gateway.name,
                    scheduler=self.scheduler is not None)

    async def stop(self) -> None:
        if not self._started:
            logger.info("notification_runtime_not_running")
            return
        if self.scheduler:
            await self.scheduler.stop()
        await self.janitor.stop()
        await self.consumer.stop()
        await self.gateway.close()
        await self.directory.close()
        await self.queue.close()
        if self.engine is not None:
            await self.engine.dispose()
        self._started = False
        logger.info("notification_runtime_stopped")

    async def health(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "queue": self.queue.name,
            "queue_backend": type(self.queue).__name__,
            "consumers": [k.value for k in self.consumer.kinds] if self.consumer.running else [],
            "scheduler": self.scheduler.state.value if self.scheduler else "disabled",
            "mail_gateway": self.gateway.name,
            "mail_configured": self.gateway.configured,
            "mail_metrics": self.gateway.metrics.to_dict(),
        }
