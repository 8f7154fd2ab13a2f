"""
Core data models for the CourseNotify service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobKind(str, Enum):
    """Job kinds. The values are the stable contract names."""
    LOG_SUBMITTED = "log-submitted"
    GRADING_UPDATED = "grading-updated"
    OVERDUE_REMINDER = "overdue-reminder"
    WEEKLY_REMINDER = "weekly-reminder"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


# Forward-only state machine: waiting → active → completed | failed
ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.WAITING: {JobState.ACTIVE},
    JobState.ACTIVE: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class GradingStatus(str, Enum):
    DONE = "Done"
    PENDING = "Pending"
    NOT_STARTED = "Not Started"


class UserRole(str, Enum):
    MANAGER = "manager"
    FACILITATOR = "facilitator"
    STUDENT = "student"


# ──────────────────────────────────────────────────────────────
#  Job payloads (serialized with camelCase keys)
# ──────────────────────────────────────────────────────────────

class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    facilitator_email: str
    facilitator_name: str
    week: int
    allocation_id: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class LogEventPayload(_Payload):
    """Payload of log-submitted and grading-updated jobs."""
    message: str
    subject: str = ""


class OverdueReminderPayload(_Payload):
    deadline: str                     # e.g. "Mon Jan 01 2024"


class WeeklyReminderPayload(_Payload):
    pass


JobPayload = Union[LogEventPayload, OverdueReminderPayload, WeeklyReminderPayload]

PAYLOAD_TYPES: dict[JobKind, type[_Payload]] = {
    JobKind.LOG_SUBMITTED: LogEventPayload,
    JobKind.GRADING_UPDATED: LogEventPayload,
    JobKind.OVERDUE_REMINDER: OverdueReminderPayload,
    JobKind.WEEKLY_REMINDER: WeeklyReminderPayload,
}


def parse_payload(kind: JobKind, data: Union[dict[str, Any], BaseModel]) -> JobPayload:
    """Validate the structural shape of a payload for the given kind."""
    model = PAYLOAD_TYPES[JobKind(kind)]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return model.model_validate(data)


# ──────────────────────────────────────────────────────────────
#  Course directory records (read-only views of the relational store)
# ──────────────────────────────────────────────────────────────

class Person(BaseModel):
    """The user account behind a manager or facilitator."""
    id: str
    name: str = ""
    email: str = ""


class AllocationRecord(BaseModel):
    id: str
    module_name: str = ""
    facilitator: Optional[Person] = None


class ActivityLogRecord(BaseModel):
    id: str
    week: int
    allocation_id: str
    allocation: Optional[AllocationRecord] = None

    @property
    def facilitator(self) -> Optional[Person]:
        return self.allocation.facilitator if self.allocation else None


class FacilitatorRecord(BaseModel):
    id: str
    user: Optional[Person] = None
    allocation_ids: list[str] = []


class ManagerRecord(BaseModel):
    id: str
    user: Optional[Person] = None
