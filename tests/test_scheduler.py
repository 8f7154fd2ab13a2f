"""
Tests for the ReminderScheduler.

Clock used throughout: Wednesday 2024-03-06 12:00 UTC, reporting week 10,
deadline Mon Mar 04 2024.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from job_queue.message_queue import InMemoryMessageQueue, JobQueue
from models.schemas import JobKind, JobState
from notifications.scheduler import ReminderScheduler, SchedulerState, SchedulerTickError

WEDNESDAY = (2024, 3, 6, 12, 0)


async def jobs_of(queue: JobQueue, kind: JobKind):
    return await queue.list_jobs(kind=kind, limit=500)


async def eventually(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def live_scheduler_tasks() -> list[str]:
    return sorted(
        t.get_name() for t in asyncio.all_tasks()
        if t.get_name().startswith("scheduler:") and not t.done()
    )


def slow_overdue_logs(directory, started: asyncio.Event, delay: float = 0.1):
    original = directory.overdue_logs

    async def slow(current_week):
        started.set()
        await asyncio.sleep(delay)
        return await original(current_week)
    return slow


class ManualClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


async def recorded_sleeps(monkeypatch, clock: ManualClock, loop_coro, count: int = 2) -> list[float]:
    """Run a timer loop on the manual clock and return its first count sleep durations."""
    real_sleep = asyncio.sleep
    sleeps = []

    async def fake_sleep(seconds, *args, **kwargs):
        sleeps.append(seconds)
        if len(sleeps) >= count:
            await asyncio.Event().wait()
        clock.advance(seconds)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    task = asyncio.create_task(loop_coro)
    try:
        while len(sleeps) < count:
            await real_sleep(0.001)
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    return sleeps


@pytest.fixture
def scheduler(queue, directory, fixed_clock):
    return ReminderScheduler(queue, directory, clock=fixed_clock(*WEDNESDAY))


# ──────────────────────────────────────────────────────────────
#  Overdue scan
# ──────────────────────────────────────────────────────────────

class TestOverdueScan:

    @pytest.mark.asyncio
    async def test_enqueues_one_reminder_per_overdue_log(self, scheduler, queue):
        assert await scheduler.overdue_scan() == 1

        [job] = await jobs_of(queue, JobKind.OVERDUE_REMINDER)
        assert job.state == JobState.WAITING
        assert job.payload == {
            "facilitatorEmail": "jane@school.edu",
            "facilitatorName": "Jane Doe",
            "week": 2,
            "allocationId": "A1",
            "deadline": "Mon Mar 04 2024",
        }

    @pytest.mark.asyncio
    async def test_current_week_log_is_not_overdue(self, queue, fixed_clock):
        from database.store_memory import InMemoryCourseDirectory
        d = InMemoryCourseDirectory()
        fac = d.add_facilitator("Jane Doe", "jane@school.edu")
        d.add_log(d.add_allocation(fac, allocation_id="A1"), week=10)
        d.add_log(d.add_allocation(fac, allocation_id="A2"), week=9)

        s = ReminderScheduler(queue, d, clock=fixed_clock(*WEDNESDAY))
        assert await s.overdue_scan() == 1
        [job] = await jobs_of(queue, JobKind.OVERDUE_REMINDER)
        assert job.payload["allocationId"] == "A2"
        assert job.payload["week"] == 9

    @pytest.mark.asyncio
    async def test_each_tick_enqueues_again(self, scheduler, queue):
        await scheduler.overdue_scan()
        await scheduler.overdue_scan()
        assert len(await jobs_of(queue, JobKind.OVERDUE_REMINDER)) == 2

    @pytest.mark.asyncio
    async def test_unresolvable_chain_is_skipped(self, queue, directory, fixed_clock):
        # allocation without facilitator, and a log pointing at a missing allocation
        directory.add_log(directory.add_allocation(None, allocation_id="A-none"), week=1)
        directory.add_log("A-missing", week=1)
        s = ReminderScheduler(queue, directory, clock=fixed_clock(*WEDNESDAY))
        assert await s.overdue_scan() == 1

    @pytest.mark.asyncio
    async def test_deadline_uses_configured_timezone(self, queue, directory, fixed_clock):
        # Sunday 23:30 UTC is already Monday 01:30 in Kigali
        s = ReminderScheduler(queue, directory, tz="Africa/Kigali", clock=fixed_clock(2024, 3, 3, 23, 30))
        await s.overdue_scan()
        [job] = await jobs_of(queue, JobKind.OVERDUE_REMINDER)
        assert job.payload["deadline"] == "Mon Mar 04 2024"

    @pytest.mark.asyncio
    async def test_directory_error_raises_tick_error(self, queue, directory, fixed_clock):
        async def broken(current_week):
            raise ConnectionError("db down")

        directory.overdue_logs = broken
        s = ReminderScheduler(queue, directory, clock=fixed_clock(*WEDNESDAY))
        with pytest.raises(SchedulerTickError) as exc:
            await s.overdue_scan()
        assert exc.value.tick == "overdue_scan"
        assert isinstance(exc.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_queue_unavailable_raises_tick_error(self, directory, fixed_clock):
        class DownQueue(InMemoryMessageQueue):
            async def _insert(self, job):
                raise OSError("connection refused")

        s = ReminderScheduler(DownQueue(), directory, clock=fixed_clock(*WEDNESDAY))
        with pytest.raises(SchedulerTickError):
            await s.overdue_scan()


# ──────────────────────────────────────────────────────────────
#  Weekly broadcast
# ──────────────────────────────────────────────────────────────

class TestWeeklyBroadcast:

    @pytest.mark.asyncio
    async def test_one_reminder_per_allocation(self, scheduler, queue):
        assert await scheduler.weekly_broadcast() == 3

        jobs = await jobs_of(queue, JobKind.WEEKLY_REMINDER)
        assert [j.payload["allocationId"] for j in jobs] == ["A1", "A2", "A3"]
        assert {j.payload["facilitatorEmail"] for j in jobs} == {"jane@school.edu"}
        assert {j.payload["week"] for j in jobs} == {10}

    @pytest.mark.asyncio
    async def test_skips_facilitators_without_email_or_allocations(self, scheduler, queue):
        await scheduler.weekly_broadcast()
        emails = {j.payload["facilitatorEmail"] for j in await jobs_of(queue, JobKind.WEEKLY_REMINDER)}
        assert "idle@school.edu" not in emails
        assert "" not in emails


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_scans_immediately(self, scheduler, queue):
        await scheduler.start()
        try:
            assert scheduler.state == SchedulerState.RUNNING
            assert len(await jobs_of(queue, JobKind.OVERDUE_REMINDER)) == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_second_start_is_a_no_op(self, scheduler, queue):
        await scheduler.start()
        tasks = list(scheduler._tasks)
        await scheduler.start()
        try:
            assert scheduler._tasks == tasks
            assert len(tasks) == 2
            assert len(await jobs_of(queue, JobKind.OVERDUE_REMINDER)) == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_timers_and_is_idempotent(self, scheduler):
        await scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED
        await scheduler.start()
        tasks = list(scheduler._tasks)
        await scheduler.stop()
        await scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED
        assert all(t.done() for t in tasks)
        assert scheduler._tasks == []

    @pytest.mark.asyncio
    async def test_can_restart_after_stop(self, scheduler, queue):
        await scheduler.start()
        await scheduler.stop()
        await scheduler.start()
        await scheduler.stop()
        assert len(await jobs_of(queue, JobKind.OVERDUE_REMINDER)) == 2

    @pytest.mark.asyncio
    async def test_overdue_timer_repeats(self, queue, directory, fixed_clock):
        s = ReminderScheduler(queue, directory, overdue_interval=0.02, clock=fixed_clock(*WEDNESDAY))
        await s.start()
        try:
            async def three_scans():
                return len(await jobs_of(queue, JobKind.OVERDUE_REMINDER)) >= 3
            await eventually(three_scans)
        finally:
            await s.stop()

    @pytest.mark.asyncio
    async def test_weekly_timer_fires_at_monday_nine(self, queue, directory, fixed_clock):
        # 50ms before Monday 09:00
        s = ReminderScheduler(queue, directory, clock=fixed_clock(2024, 3, 4, 8, 59, 59, 950000))
        await s.start()
        try:
            assert await jobs_of(queue, JobKind.WEEKLY_REMINDER) == []

            async def broadcast_done():
                return len(await jobs_of(queue, JobKind.WEEKLY_REMINDER)) == 3
            await eventually(broadcast_done)
        finally:
            await s.stop()

    @pytest.mark.asyncio
    async def test_weekly_timer_not_fired_midweek(self, scheduler, queue):
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert await jobs_of(queue, JobKind.WEEKLY_REMINDER) == []

    @pytest.mark.asyncio
    async def test_failed_tick_keeps_scheduler_running(self, queue, directory, fixed_clock):
        calls = []

        async def flaky(current_week):
            calls.append(current_week)
            raise ConnectionError("db down")

        directory.overdue_logs = flaky
        s = ReminderScheduler(queue, directory, overdue_interval=0.02, clock=fixed_clock(*WEDNESDAY))
        await s.start()                               # initial scan fails, start still succeeds
        try:
            assert s.running

            async def retried():
                return len(calls) >= 3
            await eventually(retried)
        finally:
            await s.stop()

    @pytest.mark.asyncio
    async def test_stop_during_first_scan_arms_no_timers(self, scheduler, directory):
        scanning = asyncio.Event()
        directory.overdue_logs = slow_overdue_logs(directory, scanning)

        starting = asyncio.create_task(scheduler.start())
        await scanning.wait()
        await scheduler.stop()
        await starting

        assert scheduler.state == SchedulerState.STOPPED
        assert scheduler._tasks == []
        assert live_scheduler_tasks() == []

    @pytest.mark.asyncio
    async def test_restart_during_first_scan_keeps_one_set_of_timers(self, scheduler, directory):
        scanning = asyncio.Event()
        directory.overdue_logs = slow_overdue_logs(directory, scanning)

        first = asyncio.create_task(scheduler.start())
        await scanning.wait()
        await scheduler.stop()
        second = asyncio.create_task(scheduler.start())
        await asyncio.gather(first, second)

        assert scheduler.running
        assert live_scheduler_tasks() == ["scheduler:overdue", "scheduler:weekly"]
        await scheduler.stop()
        assert live_scheduler_tasks() == []


# ──────────────────────────────────────────────────────────────
#  Timer cadence
# ──────────────────────────────────────────────────────────────

class TestFixedRate:
    """A slow tick does not push the following ticks back."""

    @pytest.mark.asyncio
    async def test_weekly_broadcast_stays_on_monday_nine(self, queue, directory, monkeypatch):
        clock = ManualClock(datetime(2024, 3, 4, 8, 59, tzinfo=timezone.utc))
        s = ReminderScheduler(queue, directory, clock=clock)
        broadcast = s.weekly_broadcast

        async def slow_broadcast():
            clock.advance(1800)
            return await broadcast()

        s.weekly_broadcast = slow_broadcast
        sleeps = await recorded_sleeps(monkeypatch, clock, s._weekly_loop())

        # 60s to 09:00, then the rest of the week minus the 30 minutes the broadcast took
        assert sleeps == pytest.approx([60, 7 * 24 * 3600 - 1800])
        assert len(await jobs_of(queue, JobKind.WEEKLY_REMINDER)) == 3

    @pytest.mark.asyncio
    async def test_overdue_scan_interval_includes_scan_time(self, queue, directory, monkeypatch):
        clock = ManualClock(datetime(*WEDNESDAY, tzinfo=timezone.utc))
        s = ReminderScheduler(queue, directory, overdue_interval=3600, clock=clock)
        scan = s.overdue_scan

        async def slow_scan():
            clock.advance(600)
            return await scan()

        s.overdue_scan = slow_scan
        sleeps = await recorded_sleeps(monkeypatch, clock, s._overdue_loop())

        assert sleeps == pytest.approx([3600, 3000])
