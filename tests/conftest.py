"""Shared test fixtures for CourseNotify."""
from __future__ import annotations

import pytest
from datetime import datetime, timezone

from channels.base import MailGateway, MailTransportError
from database.store_memory import InMemoryCourseDirectory
from job_queue.message_queue import InMemoryMessageQueue


class RecordingMailGateway(MailGateway):
    """Captures every send; addresses in fail_for raise MailTransportError."""

    name = "recording"

    def __init__(self, fail_for: set[str] = None):
        super().__init__()
        self.sent: list[tuple[str, str, str]] = []
        self.attempted: list[str] = []
        self.fail_for = set(fail_for or ())

    async def _do_send(self, to: str, subject: str, body: str) -> None:
        self.attempted.append(to)
        if to in self.fail_for:
            raise MailTransportError(f"mailbox {to} rejected", recipient=to, status_code=550)
        self.sent.append((to, subject, body))

    def to(self, address: str) -> list[tuple[str, str, str]]:
        return [m for m in self.sent if m[0] == address]


@pytest.fixture
def fixed_clock():
    """Factory: clock returning a constant UTC datetime built from datetime(*args)."""
    def make(*args):
        moment = datetime(*args, tzinfo=timezone.utc)
        return lambda: moment
    return make


@pytest.fixture
def directory() -> InMemoryCourseDirectory:
    """
    Managers: Alice, Bob (reachable) and one without a user record.
    Facilitators:
      fac-jane   jane@school.edu, allocations A1, A2, A3
      fac-ghost  no user, allocation A4
      fac-idle   idle@school.edu, no allocations
    Logs: A1 week 2, A1 week 10, A4 week 2
    """
    d = InMemoryCourseDirectory()
    d.add_manager("Alice Manager", "alice@school.edu", manager_id="mgr-alice")
    d.add_manager("Bob Manager", "bob@school.edu", manager_id="mgr-bob")
    d.add_manager("Orphan Manager", manager_id="mgr-orphan")

    d.add_facilitator("Jane Doe", "jane@school.edu", facilitator_id="fac-jane")
    d.add_facilitator("Ghost", facilitator_id="fac-ghost")
    d.add_facilitator("Idle Ian", "idle@school.edu", facilitator_id="fac-idle")

    module = d.add_module("Web Development", module_id="mod-web")
    for alloc_id in ("A1", "A2", "A3"):
        d.add_allocation("fac-jane", module, allocation_id=alloc_id)
    d.add_allocation("fac-ghost", module, allocation_id="A4")

    d.add_log("A1", week=2, log_id="log-a1-w2")
    d.add_log("A1", week=10, log_id="log-a1-w10")
    d.add_log("A4", week=2, log_id="log-a4-w2")
    return d


@pytest.fixture
def gateway() -> RecordingMailGateway:
    return RecordingMailGateway()


@pytest.fixture
def make_gateway():
    return RecordingMailGateway


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(poll_interval=0.01, handler_timeout=2.0)


@pytest.fixture
def overdue_payload() -> dict:
    return {
        "facilitatorEmail": "f@x.com",
        "facilitatorName": "F",
        "week": 3,
        "allocationId": "A1",
        "deadline": "Mon Jan 01 2024",
    }


@pytest.fixture
def log_payload() -> dict:
    return {
        "facilitatorEmail": "jane@school.edu",
        "facilitatorName": "Jane Doe",
        "week": 5,
        "allocationId": "A1",
        "message": "Activity log submitted for week 5",
        "subject": "Activity Log Submitted",
    }
