"""
Abstract Course Directory — read-only view of the course-management store.

Implementations:
  - SqlCourseDirectory      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryCourseDirectory (dict-based, single-process, no persistence)

The notification service never writes to these tables. Every query
returns the joined Allocation → Facilitator → User chain as far as it can
be resolved; callers decide what to do with a broken chain.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import (
    ActivityLogRecord, AllocationRecord, FacilitatorRecord, ManagerRecord, Person,
)


class DataResolutionError(LookupError):
    """A facilitator, manager or user record needed for a notification is missing."""

    def __init__(self, message: str, entity: str = "", entity_id: str = ""):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message)


def require_recipient(person: Optional[Person], entity: str, entity_id: str) -> Person:
    """Return the person if they can receive email, else raise DataResolutionError."""
    if person is None or not person.email:
        raise DataResolutionError(
            f"No reachable user for {entity} {entity_id}",
            entity=entity, entity_id=entity_id,
        )
    return person


class CourseDirectory(ABC):
    """Interface that all directory backends must implement."""

    @abstractmethod
    async def overdue_logs(self, current_week: int) -> list[ActivityLogRecord]:
        """Activity logs whose week is strictly before current_week."""
        ...

    @abstractmethod
    async def facilitators_with_allocations(self) -> list[FacilitatorRecord]:
        """All facilitators with their user and allocation ids."""
        ...

    @abstractmethod
    async def managers(self) -> list[ManagerRecord]:
        """All managers with their user."""
        ...

    @abstractmethod
    async def get_allocation(self, allocation_id: str) -> Optional[AllocationRecord]:
        ...

    async def close(self) -> None:
        pass
