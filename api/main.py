"""
FastAPI Application — operational API of the notification subsystem.

Provides:
- Health and queue introspection (per-kind counts, job listing)
- Operator actions: requeue a failed job, clean old jobs
- Manual triggers for the overdue scan and the weekly broadcast
- Publish endpoints called by the course-management API after an
  activity log is created or updated

The lifespan owns a NotificationRuntime: it is started before the first
request and stopped on shutdown.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from core.runtime import NotificationRuntime
from job_queue.message_queue import TERMINAL_STATES, InvalidTransition, JobNotFound
from models.schemas import JobKind, JobState
from notifications.publisher import publish_grading_updated, publish_log_submitted
from notifications.scheduler import SchedulerTickError

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class CleanRequest(BaseModel):
    older_than_seconds: int = 86400
    states: list[JobState] = list(TERMINAL_STATES)


class LogEventRequest(BaseModel):
    allocation_id: str
    week: int
    message: Optional[str] = None
    subject: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(runtime: NotificationRuntime = None) -> FastAPI:
    """Build the app. Without a runtime one is built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = NotificationRuntime.from_settings(get_settings())
        await app.state.runtime.start()
        logger.info("course_notify_started", app=get_settings().app_name)
        yield
        await app.state.runtime.stop()
        logger.info("course_notify_stopped")

    app = FastAPI(
        title="CourseNotify API",
        description="Activity-log reminders and notifications for the course platform",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _runtime(request: Request) -> NotificationRuntime:
    return request.app.state.runtime


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **await _runtime(request).health(),
        }

    # ══════════════════════════════════════════════════════════
    #  QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/queue/stats")
    async def queue_stats(request: Request):
        queue = _runtime(request).queue
        totals = await queue.counts()
        return {
            "queue": queue.name,
            "totals": {state.value: n for state, n in totals.items()},
            "by_kind": await queue.stats(),
        }

    @app.get("/api/v1/queue/jobs")
    async def list_jobs(
        request: Request,
        kind: Optional[JobKind] = None,
        state: Optional[JobState] = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        jobs = await _runtime(request).queue.list_jobs(kind=kind, state=state, limit=limit)
        return {"jobs": [job.summary() for job in jobs], "count": len(jobs)}

    @app.get("/api/v1/queue/jobs/{job_id}")
    async def get_job(request: Request, job_id: str):
        job = await _runtime(request).queue.get_job(job_id)
        if not job:
            raise HTTPException(404, "Job not found")
        return job.summary()

    @app.post("/api/v1/queue/jobs/{job_id}/requeue")
    async def requeue_job(request: Request, job_id: str):
        try:
            new_id = await _runtime(request).queue.requeue(job_id)
        except JobNotFound:
            raise HTTPException(404, "Job not found")
        except InvalidTransition as e:
            raise HTTPException(409, f"Only failed jobs can be requeued (job is {e.from_state.value})")
        logger.info("job_requeued", job_id=job_id, new_job_id=new_id)
        return {"job_id": new_id, "retry_of": job_id}

    @app.post("/api/v1/queue/clean")
    async def clean_queue(request: Request, req: Optional[CleanRequest] = None):
        req = req or CleanRequest()
        removed = await _runtime(request).queue.clean(req.older_than_seconds, req.states)
        return {"removed": removed}

    # ══════════════════════════════════════════════════════════
    #  SCHEDULER
    # ══════════════════════════════════════════════════════════

    def _scheduler(request: Request):
        scheduler = _runtime(request).scheduler
        if scheduler is None:
            raise HTTPException(503, "Scheduler is disabled")
        return scheduler

    @app.post("/api/v1/scheduler/overdue-scan")
    async def trigger_overdue_scan(request: Request):
        try:
            enqueued = await _scheduler(request).overdue_scan()
        except SchedulerTickError as e:
            raise HTTPException(502, str(e))
        return {"enqueued": enqueued}

    @app.post("/api/v1/scheduler/weekly-broadcast")
    async def trigger_weekly_broadcast(request: Request):
        try:
            enqueued = await _scheduler(request).weekly_broadcast()
        except SchedulerTickError as e:
            raise HTTPException(502, str(e))
        return {"enqueued": enqueued}

    # ══════════════════════════════════════════════════════════
    #  PUBLISH (called after activity-log create / update)
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/notifications/log-submitted", status_code=202)
    async def log_submitted(request: Request, req: LogEventRequest):
        runtime = _runtime(request)
        job_id = await publish_log_submitted(
            runtime.queue, runtime.directory, req.allocation_id, req.week, req.message, req.subject,
        )
        return {"queued": job_id is not None, "job_id": job_id}

    @app.post("/api/v1/notifications/grading-updated", status_code=202)
    async def grading_updated(request: Request, req: LogEventRequest):
        runtime = _runtime(request)
        job_id = await publish_grading_updated(
            runtime.queue, runtime.directory, req.allocation_id, req.week, req.message, req.subject,
        )
        return {"queued": job_id is not None, "job_id": job_id}


app = create_app()
