"""
Job Queue — Abstract interface with in-memory, SQL and Redis backends.

Jobs are grouped by kind (log-submitted, grading-updated, overdue-reminder,
weekly-reminder). Each kind is an independent FIFO; there are no priorities.

State machine (forward only):

    waiting ──claim──▶ active ──complete──▶ completed
                          └─────fail──────▶ failed

A claim is an atomic lease: two consumers never receive the same waiting
job. Failed jobs stay failed. A retry (opt-in via max_attempts > 1) or an
operator requeue creates a NEW waiting job that points back at the failed
one through retry_of and carries its attempt count forward.

Job Schema:
  {
      "job_id":        unique job identifier,
      "kind":          job kind contract name,
      "payload":       kind-specific dict (camelCase keys),
      "state":         waiting|active|completed|failed,
      "attempts":      failed executions so far,
      "max_attempts":  executions allowed before failure is terminal,
      "created_at":    ISO timestamp when the job was enqueued,
      "updated_at":    ISO timestamp of the last transition,
      "run_at":        ISO timestamp before which the job is not claimed,
      "last_error":    message of the last failure,
      "retry_of":      job_id this job was retried/requeued from,
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import delete, func, select, update

from database.models import NotificationJobRow as Row
from database.session import session_scope
from models.schemas import ALLOWED_TRANSITIONS, JobKind, JobState, parse_payload

logger = structlog.get_logger()

JobHandler = Callable[["Job"], Awaitable[Any]]

TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)

STALLED_ERROR = "lease expired: worker stopped before finishing the job"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _snapshot(job: Job) -> Job:
    return replace(job, payload=dict(job.payload))


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class QueueError(Exception):
    """Base exception for all queue operations."""


class QueueUnavailable(QueueError):
    """The queue's backing store cannot be reached."""


class InvalidTransition(QueueError):
    """A state change that would move a job backwards or skip a state."""

    def __init__(self, job_id: str, from_state: JobState, to_state: JobState):
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Job {job_id}: illegal transition {from_state.value} -> {to_state.value}")


class JobNotFound(QueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class Job:
    """A unit of work on the queue."""
    kind: JobKind
    payload: dict[str, Any]
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    run_at: Optional[datetime] = None
    last_error: str = ""
    retry_of: Optional[str] = None
    job_id: str = ""

    def __post_init__(self):
        self.kind = JobKind(self.kind)
        self.state = JobState(self.state)
        if not self.job_id:
            self.job_id = uuid.uuid4().hex
        if self.created_at is None:
            self.created_at = _utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.run_at is None:
            self.run_at = self.created_at

    def transition(self, to_state: JobState, now: datetime = None) -> None:
        """Move to to_state, refusing anything but the forward path."""
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(self.job_id, self.state, to_state)
        self.state = to_state
        self.updated_at = now or _utcnow()

    def is_ready(self, now: datetime = None) -> bool:
        return self.run_at <= (now or _utcnow())

    @property
    def can_retry(self) -> bool:
        return self.state == JobState.FAILED and self.attempts < self.max_attempts

    def retry_delay(self, backoff_base: int) -> timedelta:
        """Exponential backoff: base * 2**(attempts-1) seconds."""
        return timedelta(seconds=backoff_base * (2 ** max(self.attempts - 1, 0)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "payload": json.dumps(self.payload),
            "state": self.state.value,
            "attempts": str(self.attempts),
            "max_attempts": str(self.max_attempts),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "run_at": self.run_at.isoformat(),
            "last_error": self.last_error,
            "retry_of": self.retry_of or "",
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        for key in ("created_at", "updated_at", "run_at"):
            if isinstance(data.get(key), str) and data[key]:
                data[key] = _as_utc(datetime.fromisoformat(data[key]))
        data["attempts"] = int(data.get("attempts", 0))
        data["max_attempts"] = int(data.get("max_attempts", 1))
        data["retry_of"] = data.get("retry_of") or None
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view for APIs and the ops CLI."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "run_at": self.run_at.isoformat(),
            "last_error": self.last_error,
            "retry_of": self.retry_of,
            "payload": self.payload,
        }


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobQueue(ABC):
    """
    Abstract job queue.

    Backends implement storage and the atomic claim; enqueue, requeue,
    stats and the consume loop are shared.
    """

    def __init__(
        self,
        name: str = "log-reminders",
        max_attempts: int = 1,
        handler_timeout: float = 60.0,
        poll_interval: float = 1.0,
        retry_backoff_base: int = 30,
        stalled_after: float = 300.0,
    ):
        self.name = name
        self.max_attempts = max(1, int(max_attempts))
        self.handler_timeout = handler_timeout
        self.poll_interval = poll_interval
        self.retry_backoff_base = retry_backoff_base
        # a lease never expires while its handler may still be inside handler_timeout
        self.stalled_after = max(stalled_after, handler_timeout)

    # ── Backend hooks ─────────────────────────────────────────

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def _insert(self, job: Job) -> None:
        """Persist a new waiting job."""
        ...

    @abstractmethod
    async def claim(self, kind: JobKind) -> Optional[Job]:
        """Atomically lease the oldest ready waiting job of a kind."""
        ...

    @abstractmethod
    async def complete(self, job_id: str) -> Job:
        ...

    @abstractmethod
    async def fail(self, job_id: str, error: str) -> Job:
        """Mark an active job failed, counting the attempt."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(
        self, kind: JobKind = None, state: JobState = None, limit: int = 50,
    ) -> list[Job]:
        """Jobs in enqueue order, optionally filtered."""
        ...

    @abstractmethod
    async def counts(self, kind: JobKind = None) -> dict[JobState, int]:
        ...

    @abstractmethod
    async def clean(
        self, older_than_seconds: float,
        states: Iterable[JobState] = TERMINAL_STATES,
    ) -> int:
        """Delete terminal jobs last updated before the cutoff. Returns count."""
        ...

    @abstractmethod
    async def _expired_leases(self, cutoff: datetime) -> list[Job]:
        """Active jobs whose last transition is older than cutoff."""
        ...

    # ── Producer side ─────────────────────────────────────────

    async def enqueue(
        self,
        kind: JobKind,
        payload: Any,
        *,
        max_attempts: int = None,
        run_at: datetime = None,
        attempts: int = 0,
        retry_of: str = None,
    ) -> str:
        """
        Add a job and return its id. The job is visible as waiting at once.

        Raises QueueUnavailable when the backing store cannot be reached and
        pydantic.ValidationError when the payload lacks required fields.
        """
        kind = JobKind(kind)
        wire = parse_payload(kind, payload).to_wire()
        job = Job(
            kind=kind,
            payload=wire,
            attempts=attempts,
            max_attempts=max_attempts or self.max_attempts,
            run_at=run_at,
            retry_of=retry_of,
        )
        try:
            await self._insert(job)
        except QueueError:
            raise
        except Exception as e:
            logger.error("job_enqueue_failed", kind=kind.value, error=str(e))
            raise QueueUnavailable(f"Cannot enqueue {kind.value}: {e}") from e

        logger.info("job_enqueued",
                    queue=self.name,
                    job_id=job.job_id,
                    kind=kind.value,
                    retry_of=retry_of)
        return job.job_id

    async def requeue(self, job_id: str) -> str:
        """Operator action: enqueue a fresh copy of a failed job."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.state != JobState.FAILED:
            raise InvalidTransition(job_id, job.state, JobState.WAITING)
        return await self.enqueue(
            job.kind, job.payload,
            max_attempts=max(job.max_attempts, job.attempts + 1),
            attempts=job.attempts,
            retry_of=job.job_id,
        )

    async def recover_stalled(self, lease_seconds: float = None) -> list[str]:
        """
        Fail active jobs whose worker went away and enqueue a fresh copy.

        A lease expires stalled_after seconds after the claim. The stalled
        job is failed with the attempt counted; a copy is enqueued while
        its attempts do not exceed max_attempts, so a job whose worker died
        runs again even when retries are off. Returns the new job ids.
        """
        lease = self.stalled_after if lease_seconds is None else lease_seconds
        cutoff = _utcnow() - timedelta(seconds=lease)
        recovered = []
        for job in await self._expired_leases(cutoff):
            try:
                stalled = await self.fail(job.job_id, STALLED_ERROR)
            except (InvalidTransition, JobNotFound):
                continue    # finished or cleaned meanwhile
            logger.warning("job_stalled",
                           job_id=stalled.job_id,
                           kind=stalled.kind.value,
                           attempts=stalled.attempts)
            if stalled.attempts > stalled.max_attempts:
                continue
            recovered.append(await self.enqueue(
                stalled.kind, stalled.payload,
                max_attempts=stalled.max_attempts,
                attempts=stalled.attempts,
                retry_of=stalled.job_id,
            ))
        if recovered:
            logger.info("stalled_jobs_recovered", queue=self.name, count=len(recovered))
        return recovered

    # ── Introspection ─────────────────────────────────────────

    async def stats(self) -> dict[str, dict[str, int]]:
        """Per-kind job counts by state."""
        result = {}
        for kind in JobKind:
            counts = await self.counts(kind)
            result[kind.value] = {state.value: counts.get(state, 0) for state in JobState}
        return result

    # ── Consumer side ─────────────────────────────────────────

    async def consume(self, kind: JobKind, handler: JobHandler, consumer_name: str = ""):
        """
        Claim and execute jobs of one kind until cancelled.

        The handler is awaited with handler_timeout. Returning normally
        completes the job; raising fails it.
        """
        kind = JobKind(kind)
        consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        logger.info("consumer_started", queue=self.name, kind=kind.value, consumer=consumer_name)

        while True:
            try:
                job = await self.claim(kind)
                if job is None:
                    await asyncio.sleep(self.poll_interval)
                    continue
                await self.execute(job, handler)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=self.name, kind=kind.value, error=str(e))
                await asyncio.sleep(self.poll_interval)

        logger.info("consumer_stopped", queue=self.name, kind=kind.value, consumer=consumer_name)

    async def execute(self, job: Job, handler: JobHandler) -> Job:
        """Run the handler for an already claimed job and record the outcome."""
        logger.info("processing_job",
                    job_id=job.job_id,
                    kind=job.kind.value,
                    attempt=job.attempts + 1)
        try:
            await asyncio.wait_for(handler(job), timeout=self.handler_timeout)
        except asyncio.CancelledError:
            await self._fail_quietly(job, "consumer stopped while job was active")
            raise
        except asyncio.TimeoutError:
            return await self._handle_failure(job, f"timed out after {self.handler_timeout}s")
        except Exception as e:
            return await self._handle_failure(job, str(e) or type(e).__name__)

        done = await self.complete(job.job_id)
        logger.info("job_completed", job_id=job.job_id, kind=job.kind.value)
        return done

    async def _handle_failure(self, job: Job, error: str) -> Job:
        failed = await self.fail(job.job_id, error)
        logger.error("job_failed",
                     job_id=failed.job_id,
                     kind=failed.kind.value,
                     attempts=failed.attempts,
                     error=error)

        if failed.can_retry:
            run_at = _utcnow() + failed.retry_delay(self.retry_backoff_base)
            retry_id = await self.enqueue(
                failed.kind, failed.payload,
                max_attempts=failed.max_attempts,
                run_at=run_at,
                attempts=failed.attempts,
                retry_of=failed.job_id,
            )
            logger.info("job_scheduled_for_retry",
                        job_id=failed.job_id,
                        retry_job_id=retry_id,
                        attempt=failed.attempts + 1,
                        run_at=run_at.isoformat())
        return failed

    async def _fail_quietly(self, job: Job, error: str) -> None:
        try:
            await self.fail(job.job_id, error)
        except Exception as e:
            logger.warning("job_fail_on_cancel_error", job_id=job.job_id, error=str(e))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(JobQueue):
    """
    Development/test queue backed by dicts and deques.
    Single-process only, nothing is persisted. An asyncio.Lock serialises
    every transition so claims are exclusive; callers only ever receive
    copies of the stored jobs.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs: dict[str, Job] = {}
        self._order: list[str] = []
        self._waiting: dict[JobKind, deque[str]] = {kind: deque() for kind in JobKind}
        self._lock = asyncio.Lock()

    async def connect(self):
        logger.info("inmemory_queue_connected", queue=self.name)

    async def close(self):
        pass

    async def _insert(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.job_id] = job
            self._order.append(job.job_id)
            self._waiting[job.kind].append(job.job_id)

    async def claim(self, kind: JobKind) -> Optional[Job]:
        now = _utcnow()
        async with self._lock:
            waiting = self._waiting[JobKind(kind)]
            for job_id in waiting:
                job = self._jobs[job_id]
                if job.is_ready(now):
                    waiting.remove(job_id)
                    job.transition(JobState.ACTIVE, now)
                    return _snapshot(job)
        return None

    async def complete(self, job_id: str) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.transition(JobState.COMPLETED)
            return _snapshot(job)

    async def fail(self, job_id: str, error: str) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.transition(JobState.FAILED)
            job.attempts += 1
            job.last_error = error
            return _snapshot(job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return _snapshot(job) if job else None

    async def list_jobs(self, kind: JobKind = None, state: JobState = None, limit: int = 50) -> list[Job]:
        jobs = [
            _snapshot(self._jobs[job_id]) for job_id in self._order
            if (kind is None or self._jobs[job_id].kind == JobKind(kind))
            and (state is None or self._jobs[job_id].state == JobState(state))
        ]
        return jobs[:limit]

    async def counts(self, kind: JobKind = None) -> dict[JobState, int]:
        result = {state: 0 for state in JobState}
        for job in self._jobs.values():
            if kind is None or job.kind == JobKind(kind):
                result[job.state] += 1
        return result

    async def clean(self, older_than_seconds: float, states: Iterable[JobState] = TERMINAL_STATES) -> int:
        cutoff = _utcnow() - timedelta(seconds=older_than_seconds)
        states = {JobState(s) for s in states if JobState(s).is_terminal}
        async with self._lock:
            doomed = [
                job_id for job_id, job in self._jobs.items()
                if job.state in states and job.updated_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            if doomed:
                gone = set(doomed)
                self._order = [job_id for job_id in self._order if job_id not in gone]
        return len(doomed)

    async def _expired_leases(self, cutoff: datetime) -> list[Job]:
        async with self._lock:
            return [
                _snapshot(job) for job in self._jobs.values()
                if job.state == JobState.ACTIVE and job.updated_at < cutoff
            ]

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job


# ──────────────────────────────────────────────────────────────
#  SQL Implementation (durable, single table)
# ──────────────────────────────────────────────────────────────

class SqlJobQueue(JobQueue):
    """
    Durable queue stored in the notification_jobs table.

    The claim is a conditional UPDATE ... WHERE state = 'waiting'; a
    consumer that loses the race simply looks at the next row.
    """

    _CLAIM_RACES = 5

    def __init__(self, session_factory=None, **kwargs):
        super().__init__(**kwargs)
        self._session = session_scope(session_factory)

    async def connect(self):
        async with self._session() as db:
            conn = await db.connection()
            await conn.run_sync(Row.__table__.create, checkfirst=True)
        logger.info("sql_queue_connected", queue=self.name)

    async def close(self):
        pass

    async def _insert(self, job: Job) -> None:
        async with self._session() as db:
            db.add(Row(
                id=job.job_id,
                queue=self.name,
                kind=job.kind.value,
                payload=job.payload,
                state=job.state.value,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                last_error=job.last_error,
                retry_of=job.retry_of,
                created_at=job.created_at,
                updated_at=job.updated_at,
                run_at=job.run_at,
            ))

    async def claim(self, kind: JobKind) -> Optional[Job]:

        now = _utcnow()
        async with self._session() as db:
            for _ in range(self._CLAIM_RACES):
                candidate = await db.execute(
                    select(Row.id)
                    .where(
                        Row.queue == self.name,
                        Row.kind == JobKind(kind).value,
                        Row.state == JobState.WAITING.value,
                        Row.run_at <= now,
                    )
                    .order_by(Row.seq)
                    .limit(1)
                )
                job_id = candidate.scalar_one_or_none()
                if job_id is None:
                    return None

                claimed = await db.execute(
                    update(Row)
                    .where(Row.id == job_id, Row.state == JobState.WAITING.value)
                    .values(state=JobState.ACTIVE.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    row = (await db.execute(select(Row).where(Row.id == job_id))).scalar_one()
                    return self._row_to_job(row)
        return None

    async def complete(self, job_id: str) -> Job:
        return await self._transition(job_id, JobState.ACTIVE, JobState.COMPLETED)

    async def fail(self, job_id: str, error: str) -> Job:
        return await self._transition(
            job_id, JobState.ACTIVE, JobState.FAILED,
            attempts=Row.attempts + 1, last_error=error,
        )

    async def _transition(self, job_id: str, expected: JobState, target: JobState, **values) -> Job:

        async with self._session() as db:
            result = await db.execute(
                update(Row)
                .where(Row.id == job_id, Row.state == expected.value)
                .values(state=target.value, updated_at=_utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            row = (await db.execute(select(Row).where(Row.id == job_id))).scalar_one_or_none()
            if row is None:
                raise JobNotFound(job_id)
            if result.rowcount != 1:
                raise InvalidTransition(job_id, JobState(row.state), target)
            return self._row_to_job(row)

    async def get_job(self, job_id: str) -> Optional[Job]:

        async with self._session() as db:
            row = (await db.execute(
                select(Row).where(Row.id == job_id, Row.queue == self.name)
            )).scalar_one_or_none()
            return self._row_to_job(row) if row else None

    async def list_jobs(self, kind: JobKind = None, state: JobState = None, limit: int = 50) -> list[Job]:

        stmt = select(Row).where(Row.queue == self.name)
        if kind is not None:
            stmt = stmt.where(Row.kind == JobKind(kind).value)
        if state is not None:
            stmt = stmt.where(Row.state == JobState(state).value)
        async with self._session() as db:
            result = await db.execute(stmt.order_by(Row.seq).limit(limit))
            return [self._row_to_job(row) for row in result.scalars()]

    async def counts(self, kind: JobKind = None) -> dict[JobState, int]:

        stmt = select(Row.state, func.count()).where(Row.queue == self.name)
        if kind is not None:
            stmt = stmt.where(Row.kind == JobKind(kind).value)
        result = {state: 0 for state in JobState}
        async with self._session() as db:
            for state, count in (await db.execute(stmt.group_by(Row.state))).all():
                result[JobState(state)] = count
        return result

    async def clean(self, older_than_seconds: float, states: Iterable[JobState] = TERMINAL_STATES) -> int:

        cutoff = _utcnow() - timedelta(seconds=older_than_seconds)
        values = [JobState(s).value for s in states if JobState(s).is_terminal]
        async with self._session() as db:
            result = await db.execute(
                delete(Row)
                .where(Row.queue == self.name, Row.state.in_(values), Row.updated_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def _expired_leases(self, cutoff: datetime) -> list[Job]:
        async with self._session() as db:
            result = await db.execute(
                select(Row)
                .where(
                    Row.queue == self.name,
                    Row.state == JobState.ACTIVE.value,
                    Row.updated_at < cutoff,
                )
                .order_by(Row.seq)
            )
            return [self._row_to_job(row) for row in result.scalars()]

    @staticmethod
    def _row_to_job(row) -> Job:
        return Job(
            job_id=row.id,
            kind=JobKind(row.kind),
            payload=dict(row.payload or {}),
            state=JobState(row.state),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
            run_at=_as_utc(row.run_at),
            last_error=row.last_error or "",
            retry_of=row.retry_of,
        )


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(JobQueue):
    """
    Production queue backed by Redis lists, sorted sets and hashes.

    Keys (prefix = queue name):
      {name}:job:{id}          hash with the job fields
      {name}:wait:{kind}       list of waiting ids (LPUSH in, claimed from the right)
      {name}:delayed:{kind}    sorted set of waiting ids not ready yet (score = run_at)
      {name}:active:{kind}     list of leased ids
      {name}:completed:{kind}  sorted set (score = finished at)
      {name}:failed:{kind}     sorted set (score = finished at)

    LMOVE from wait to active is atomic, which makes the lease exclusive.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._redis = None

    def _key(self, *parts: str) -> str:
        return ":".join((self.name, *parts))

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url, queue=self.name)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _client(self):
        if self._redis is None:
            raise QueueUnavailable("Redis queue is not connected")
        return self._redis

    async def _insert(self, job: Job) -> None:
        redis = self._client()
        pipe = redis.pipeline(transaction=True)
        pipe.hset(self._key("job", job.job_id), mapping=job.to_dict())
        if job.run_at > _utcnow():
            pipe.zadd(self._key("delayed", job.kind.value), {job.job_id: job.run_at.timestamp()})
        else:
            pipe.lpush(self._key("wait", job.kind.value), job.job_id)
        await pipe.execute()

    async def _promote_delayed(self, kind: JobKind) -> None:
        """Move delayed ids whose run_at has arrived onto the wait list."""
        redis = self._client()
        delayed_key = self._key("delayed", kind.value)
        ready = await redis.zrangebyscore(delayed_key, "-inf", _utcnow().timestamp())
        for job_id in ready:
            # ZREM succeeds for exactly one promoter
            if await redis.zrem(delayed_key, job_id):
                await redis.lpush(self._key("wait", kind.value), job_id)

    async def claim(self, kind: JobKind) -> Optional[Job]:
        kind = JobKind(kind)
        redis = self._client()
        await self._promote_delayed(kind)
        job_id = await redis.lmove(
            self._key("wait", kind.value), self._key("active", kind.value), "RIGHT", "LEFT",
        )
        if job_id is None:
            return None
        now = _utcnow()
        await redis.hset(self._key("job", job_id), mapping={
            "state": JobState.ACTIVE.value, "updated_at": now.isoformat(),
        })
        return await self.get_job(job_id)

    async def complete(self, job_id: str) -> Job:
        return await self._finish(job_id, JobState.COMPLETED)

    async def fail(self, job_id: str, error: str) -> Job:
        return await self._finish(job_id, JobState.FAILED, error=error)

    async def _finish(self, job_id: str, target: JobState, error: str = None) -> Job:
        redis = self._client()
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        job.transition(target)
        fields = {"state": job.state.value, "updated_at": job.updated_at.isoformat()}
        if error is not None:
            job.attempts += 1
            job.last_error = error
            fields.update({"attempts": str(job.attempts), "last_error": error})

        # LREM is the ownership check: only one finisher removes the lease
        if not await redis.lrem(self._key("active", job.kind.value), 1, job_id):
            raise InvalidTransition(job_id, JobState.ACTIVE, target)
        pipe = redis.pipeline(transaction=True)
        pipe.zadd(self._key(target.value, job.kind.value), {job_id: job.updated_at.timestamp()})
        pipe.hset(self._key("job", job_id), mapping=fields)
        await pipe.execute()
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self._client().hgetall(self._key("job", job_id))
        return Job.from_dict(data) if data else None

    async def _ids(self, kind: JobKind, state: JobState) -> list[str]:
        redis = self._client()
        if state == JobState.WAITING:
            waiting = list(reversed(await redis.lrange(self._key("wait", kind.value), 0, -1)))
            return waiting + await redis.zrange(self._key("delayed", kind.value), 0, -1)
        if state == JobState.ACTIVE:
            return list(reversed(await redis.lrange(self._key("active", kind.value), 0, -1)))
        return await redis.zrange(self._key(state.value, kind.value), 0, -1)

    async def list_jobs(self, kind: JobKind = None, state: JobState = None, limit: int = 50) -> list[Job]:
        kinds = [JobKind(kind)] if kind is not None else list(JobKind)
        states = [JobState(state)] if state is not None else list(JobState)
        jobs = []
        for k in kinds:
            for s in states:
                for job_id in await self._ids(k, s):
                    job = await self.get_job(job_id)
                    if job is not None:
                        jobs.append(job)
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    async def counts(self, kind: JobKind = None) -> dict[JobState, int]:
        redis = self._client()
        kinds = [JobKind(kind)] if kind is not None else list(JobKind)
        result = {state: 0 for state in JobState}
        for k in kinds:
            result[JobState.WAITING] += (
                await redis.llen(self._key("wait", k.value))
                + await redis.zcard(self._key("delayed", k.value))
            )
            result[JobState.ACTIVE] += await redis.llen(self._key("active", k.value))
            result[JobState.COMPLETED] += await redis.zcard(self._key("completed", k.value))
            result[JobState.FAILED] += await redis.zcard(self._key("failed", k.value))
        return result

    async def clean(self, older_than_seconds: float, states: Iterable[JobState] = TERMINAL_STATES) -> int:
        redis = self._client()
        cutoff = (_utcnow() - timedelta(seconds=older_than_seconds)).timestamp()
        removed = 0
        for state in {JobState(s) for s in states if JobState(s).is_terminal}:
            for kind in JobKind:
                key = self._key(state.value, kind.value)
                doomed = await redis.zrangebyscore(key, "-inf", cutoff)
                if not doomed:
                    continue
                pipe = redis.pipeline(transaction=True)
                pipe.zrem(key, *doomed)
                pipe.delete(*[self._key("job", job_id) for job_id in doomed])
                await pipe.execute()
                removed += len(doomed)
        return removed

    async def _expired_leases(self, cutoff: datetime) -> list[Job]:
        expired = []
        for kind in JobKind:
            for job_id in await self._ids(kind, JobState.ACTIVE):
                job = await self.get_job(job_id)
                if job is not None and job.state == JobState.ACTIVE and job.updated_at < cutoff:
                    expired.append(job)
        return expired


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: dict[str, Any] = None, session_factory=None) -> JobQueue:
    """Factory: create the appropriate queue backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")
    options = {
        key: config[key]
        for key in ("name", "max_attempts", "handler_timeout", "poll_interval", "retry_backoff_base",
                    "stalled_after")
        if key in config
    }

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        queue = RedisMessageQueue(redis_url=url, **options)
    elif backend == "sql":
        queue = SqlJobQueue(session_factory=session_factory, **options)
    else:
        queue = InMemoryMessageQueue(**options)

    logger.info("queue_created", backend=backend, queue=queue.name)
    return queue
