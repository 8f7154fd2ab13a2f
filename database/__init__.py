"""
Database layer — read-only course directory plus the notification_jobs table.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_directory
  directory = create_directory({"directory_backend": "memory"})
  logs = await directory.overdue_logs(current_week=12)
"""
from database.models import (
    Base, UserRow, ManagerRow, FacilitatorRow, ModuleRow,
    AllocationRow, ActivityLogRow, NotificationJobRow,
)
from database.session import (
    get_engine, get_session, init_db, close_db, create_session_factory, session_scope,
)
from database.store_base import CourseDirectory, DataResolutionError, require_recipient
from database.store import SqlCourseDirectory
from database.store_memory import InMemoryCourseDirectory
from database.store_factory import create_directory

__all__ = [
    # ORM models
    "Base", "UserRow", "ManagerRow", "FacilitatorRow", "ModuleRow",
    "AllocationRow", "ActivityLogRow", "NotificationJobRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    "create_session_factory", "session_scope",
    # Directory interface
    "CourseDirectory", "DataResolutionError", "require_recipient",
    # Directory backends
    "SqlCourseDirectory", "InMemoryCourseDirectory",
    # Factory
    "create_directory",
]
