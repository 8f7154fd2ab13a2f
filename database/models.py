"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

The course tables (users, managers, facilitators, modules, allocations,
activity_logs) are owned by the course-management API; this service only
reads them. notification_jobs is the durable job table of SqlJobQueue.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from models.schemas import GradingStatus, UserRole


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


_GRADING_DEFAULT = GradingStatus.NOT_STARTED.value


# ──────────────────────────────────────────────────────────────
#  Users and roles
# ──────────────────────────────────────────────────────────────

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(256), unique=True, nullable=True)
    role: Mapped[str] = mapped_column(String(32), default=UserRole.STUDENT.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ManagerRow(Base):
    __tablename__ = "managers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)

    user: Mapped[Optional["UserRow"]] = relationship(lazy="selectin")


class FacilitatorRow(Base):
    __tablename__ = "facilitators"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    qualification: Mapped[str] = mapped_column(String(256), default="")
    location: Mapped[str] = mapped_column(String(256), default="")
    manager_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("managers.id"), nullable=True)

    user: Mapped[Optional["UserRow"]] = relationship(lazy="selectin")
    allocations: Mapped[list["AllocationRow"]] = relationship(back_populates="facilitator", lazy="selectin")


# ──────────────────────────────────────────────────────────────
#  Modules, allocations and activity logs
# ──────────────────────────────────────────────────────────────

class ModuleRow(Base):
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    half: Mapped[str] = mapped_column(String(16), default="")


class AllocationRow(Base):
    __tablename__ = "allocations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    module_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("modules.id"), nullable=True)
    facilitator_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("facilitators.id"), nullable=True)
    class_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mode_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    trimester: Mapped[str] = mapped_column(String(32), default="")
    year: Mapped[str] = mapped_column(String(16), default="")

    module: Mapped[Optional["ModuleRow"]] = relationship(lazy="selectin")
    facilitator: Mapped[Optional["FacilitatorRow"]] = relationship(back_populates="allocations", lazy="selectin")

    __table_args__ = (
        Index("ix_allocations_facilitator", "facilitator_id"),
    )


class ActivityLogRow(Base):
    __tablename__ = "activity_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    allocation_id: Mapped[str] = mapped_column(String(64), ForeignKey("allocations.id"), nullable=False)
    week: Mapped[int] = mapped_column(Integer, nullable=False)
    attendance: Mapped[Any] = mapped_column(JSON, default=list)

    formative_one_grading: Mapped[str] = mapped_column(String(16), default=_GRADING_DEFAULT)
    formative_two_grading: Mapped[str] = mapped_column(String(16), default=_GRADING_DEFAULT)
    summative_grading: Mapped[str] = mapped_column(String(16), default=_GRADING_DEFAULT)
    course_moderation: Mapped[str] = mapped_column(String(16), default=_GRADING_DEFAULT)
    intranet_sync: Mapped[str] = mapped_column(String(16), default=_GRADING_DEFAULT)
    grade_book_status: Mapped[str] = mapped_column(String(16), default=_GRADING_DEFAULT)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    allocation: Mapped["AllocationRow"] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_activity_logs_week", "week"),
        Index("ix_activity_logs_allocation", "allocation_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Notification jobs (SqlJobQueue)
# ──────────────────────────────────────────────────────────────

class NotificationJobRow(Base):
    __tablename__ = "notification_jobs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)   # enqueue order, FIFO key
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    state: Mapped[str] = mapped_column(String(16), default="waiting")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1)
    last_error: Mapped[str] = mapped_column(Text, default="")
    retry_of: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_notification_jobs_claim", "queue", "kind", "state", "seq"),
        Index("ix_notification_jobs_state", "queue", "state", "updated_at"),
    )
