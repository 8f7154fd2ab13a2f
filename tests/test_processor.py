"""
Tests for the NotificationProcessor.

Covers:
  - Routing of every job kind
  - Facilitator leg short-circuits the manager fan-out on failure
  - Manager fan-out isolation (one bad mailbox, missing users, lookup errors)
  - End-to-end through the queue and a running consumer
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from job_queue.consumer import JobConsumer
from job_queue.message_queue import Job
from models.schemas import JobKind, JobState
from notifications.processor import NotificationProcessor

MANAGERS = {"alice@school.edu", "bob@school.edu"}


async def run_one(queue, processor, kind, payload):
    await queue.enqueue(kind, payload)
    job = await queue.claim(kind)
    return await queue.execute(job, processor.handle)


class TestRouting:

    def test_register_covers_every_kind(self, queue, gateway, directory):
        consumer = JobConsumer(queue)
        NotificationProcessor(gateway, directory).register(consumer)
        assert set(consumer.kinds) == set(JobKind)

    @pytest.mark.asyncio
    async def test_log_submitted(self, queue, gateway, directory, log_payload):
        result = await run_one(queue, NotificationProcessor(gateway, directory),
                               JobKind.LOG_SUBMITTED, log_payload)

        assert result.state == JobState.COMPLETED
        assert gateway.sent[0] == ("jane@school.edu", "Activity Log Submitted", "Activity log submitted for week 5")
        manager_mail = gateway.sent[1:]
        assert {m[0] for m in manager_mail} == MANAGERS
        for _, subject, body in manager_mail:
            assert subject == "Activity Log Submitted - Manager Notification"
            assert "Jane Doe" in body and "week 5" in body and "A1" in body

    @pytest.mark.asyncio
    async def test_log_submitted_default_subject(self, queue, gateway, directory, log_payload):
        await run_one(queue, NotificationProcessor(gateway, directory),
                      JobKind.LOG_SUBMITTED, {**log_payload, "subject": ""})
        assert gateway.sent[0][1] == "Log Submission Confirmation"

    @pytest.mark.asyncio
    async def test_grading_updated(self, queue, gateway, directory, log_payload):
        payload = {**log_payload, "subject": "Grading Status Updated", "message": "Grading status updated for week 5"}
        await run_one(queue, NotificationProcessor(gateway, directory), JobKind.GRADING_UPDATED, payload)

        assert gateway.sent[0] == ("jane@school.edu", "Grading Status Updated", "Grading status updated for week 5")
        assert {m[1] for m in gateway.sent[1:]} == {"Grading Status Updated - Manager Notification"}
        assert len(gateway.sent) == 3

    @pytest.mark.asyncio
    async def test_weekly_reminder_has_no_fan_out(self, queue, gateway, directory):
        payload = {"facilitatorEmail": "jane@school.edu", "facilitatorName": "Jane Doe",
                   "week": 7, "allocationId": "A2"}
        result = await run_one(queue, NotificationProcessor(gateway, directory),
                               JobKind.WEEKLY_REMINDER, payload)

        assert result.state == JobState.COMPLETED
        assert len(gateway.sent) == 1
        to, subject, body = gateway.sent[0]
        assert to == "jane@school.edu"
        assert subject == "Weekly Activity Log Reminder"
        assert "week 7" in body and "A2" in body

    @pytest.mark.asyncio
    async def test_overdue_end_to_end_example(self, queue, gateway, directory, overdue_payload):
        result = await run_one(queue, NotificationProcessor(gateway, directory),
                               JobKind.OVERDUE_REMINDER, overdue_payload)

        assert result.state == JobState.COMPLETED
        to, subject, body = gateway.sent[0]
        assert to == "f@x.com"
        assert "Overdue" in subject
        assert "week 3" in body
        assert "Mon Jan 01 2024" in body
        alerts = gateway.sent[1:]
        assert len(alerts) == 2                       # the orphan manager has no user
        assert {m[0] for m in alerts} == MANAGERS
        assert all("Overdue Activity Log Alert" in m[1] for m in alerts)


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_facilitator_failure_fails_job_without_fan_out(
        self, queue, make_gateway, directory, log_payload,
    ):
        gateway = make_gateway(fail_for={"jane@school.edu"})
        result = await run_one(queue, NotificationProcessor(gateway, directory),
                               JobKind.LOG_SUBMITTED, log_payload)

        assert result.state == JobState.FAILED
        assert result.attempts == 1
        assert "jane@school.edu" in result.last_error
        assert gateway.attempted == ["jane@school.edu"]

    @pytest.mark.asyncio
    async def test_one_manager_failure_does_not_block_others(
        self, make_gateway, directory, overdue_payload,
    ):
        gateway = make_gateway(fail_for={"alice@school.edu"})
        processor = NotificationProcessor(gateway, directory)
        job = Job(kind=JobKind.OVERDUE_REMINDER, payload=overdue_payload)

        stats = await processor.handle(job)

        assert stats == {"facilitator": 1, "managers_sent": 1, "managers_failed": 1, "managers_skipped": 1}
        assert [m[0] for m in gateway.sent] == ["f@x.com", "bob@school.edu"]

    @pytest.mark.asyncio
    async def test_manager_failure_does_not_fail_job(self, queue, make_gateway, directory, log_payload):
        gateway = make_gateway(fail_for=MANAGERS)
        result = await run_one(queue, NotificationProcessor(gateway, directory),
                               JobKind.LOG_SUBMITTED, log_payload)
        assert result.state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_manager_lookup_failure_does_not_fail_job(self, queue, gateway, directory, log_payload):
        lookup = AsyncMock(side_effect=ConnectionError("directory offline"))
        with patch.object(directory, "managers", lookup):
            result = await run_one(queue, NotificationProcessor(gateway, directory),
                                   JobKind.LOG_SUBMITTED, log_payload)

        lookup.assert_awaited_once()
        assert result.state == JobState.COMPLETED
        assert [m[0] for m in gateway.sent] == ["jane@school.edu"]

    @pytest.mark.asyncio
    async def test_missing_facilitator_email_fails_job(self, queue, gateway, directory, log_payload):
        result = await run_one(queue, NotificationProcessor(gateway, directory),
                               JobKind.LOG_SUBMITTED, {**log_payload, "facilitatorEmail": ""})
        assert result.state == JobState.FAILED
        assert gateway.sent == []


class TestWithRunningConsumer:

    @pytest.mark.asyncio
    async def test_each_job_delivered_once(self, queue, gateway, directory):
        consumer = JobConsumer(queue)
        NotificationProcessor(gateway, directory).register(consumer)
        await consumer.start()
        try:
            for alloc in ("A1", "A2", "A3"):
                await queue.enqueue(JobKind.WEEKLY_REMINDER, {
                    "facilitatorEmail": "jane@school.edu", "facilitatorName": "Jane Doe",
                    "week": 7, "allocationId": alloc,
                })
            for _ in range(200):
                if (await queue.counts())[JobState.COMPLETED] == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await consumer.stop()

        bodies = [m[2] for m in gateway.sent]
        assert len(bodies) == 3
        assert ["A1" in bodies[0], "A2" in bodies[1], "A3" in bodies[2]] == [True, True, True]
