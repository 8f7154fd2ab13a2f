"""
SqlCourseDirectory — Portable SQL queries for PostgreSQL and SQLite.

Relationships are loaded with selectinload so a scan issues a fixed number
of queries regardless of how many logs or facilitators it touches.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from database.models import (
    ActivityLogRow, AllocationRow, FacilitatorRow, ManagerRow, UserRow,
)
from database.session import session_scope
from database.store_base import CourseDirectory
from models.schemas import (
    ActivityLogRecord, AllocationRecord, FacilitatorRecord, ManagerRecord, Person,
)

logger = structlog.get_logger()


class SqlCourseDirectory(CourseDirectory):
    """
    Read-only directory backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = None):
        self._session = session_scope(session_factory)

    async def overdue_logs(self, current_week: int) -> list[ActivityLogRecord]:
        async with self._session() as db:
            stmt = (
                select(ActivityLogRow)
                .where(ActivityLogRow.week < current_week)
                .options(
                    selectinload(ActivityLogRow.allocation).selectinload(AllocationRow.module),
                    selectinload(ActivityLogRow.allocation)
                    .selectinload(AllocationRow.facilitator)
                    .selectinload(FacilitatorRow.user),
                )
                .order_by(ActivityLogRow.week, ActivityLogRow.created_at)
            )
            result = await db.execute(stmt)
            return [
                ActivityLogRecord(
                    id=row.id,
                    week=row.week,
                    allocation_id=row.allocation_id,
                    allocation=self._allocation_to_record(row.allocation),
                )
                for row in result.scalars()
            ]

    async def facilitators_with_allocations(self) -> list[FacilitatorRecord]:
        async with self._session() as db:
            stmt = select(FacilitatorRow).options(
                selectinload(FacilitatorRow.user),
                selectinload(FacilitatorRow.allocations),
            )
            result = await db.execute(stmt)
            return [
                FacilitatorRecord(
                    id=row.id,
                    user=self._user_to_person(row.user),
                    allocation_ids=[a.id for a in row.allocations],
                )
                for row in result.scalars()
            ]

    async def managers(self) -> list[ManagerRecord]:
        async with self._session() as db:
            stmt = select(ManagerRow).options(selectinload(ManagerRow.user))
            result = await db.execute(stmt)
            return [
                ManagerRecord(id=row.id, user=self._user_to_person(row.user))
                for row in result.scalars()
            ]

    async def get_allocation(self, allocation_id: str) -> Optional[AllocationRecord]:
        async with self._session() as db:
            stmt = (
                select(AllocationRow)
                .where(AllocationRow.id == allocation_id)
                .options(
                    selectinload(AllocationRow.module),
                    selectinload(AllocationRow.facilitator).selectinload(FacilitatorRow.user),
                )
            )
            result = await db.execute(stmt)
            return self._allocation_to_record(result.scalar_one_or_none())

    # ── Row → record mapping ───────────────────────────────

    @staticmethod
    def _user_to_person(user: Optional[UserRow]) -> Optional[Person]:
        if user is None:
            return None
        return Person(id=user.id, name=user.name or "", email=user.email or "")

    @classmethod
    def _allocation_to_record(cls, row: Optional[AllocationRow]) -> Optional[AllocationRecord]:
        if row is None:
            return None
        facilitator = row.facilitator
        return AllocationRecord(
            id=row.id,
            module_name=row.module.name if row.module else "",
            facilitator=cls._user_to_person(facilitator.user) if facilitator else None,
        )
