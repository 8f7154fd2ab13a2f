"""
InMemoryCourseDirectory — dict-based directory for development and testing.

Seed it with the add_* helpers; lookups follow the same join rules as the
SQL backend (a missing user or facilitator yields a None in the chain).
"""
from __future__ import annotations

import uuid
from typing import Any, Optional

from database.store_base import CourseDirectory
from models.schemas import (
    ActivityLogRecord, AllocationRecord, FacilitatorRecord, ManagerRecord, Person, UserRole,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryCourseDirectory(CourseDirectory):

    def __init__(self):
        self._users: dict[str, dict[str, Any]] = {}
        self._managers: dict[str, dict[str, Any]] = {}
        self._facilitators: dict[str, dict[str, Any]] = {}
        self._modules: dict[str, str] = {}
        self._allocations: dict[str, dict[str, Any]] = {}
        self._logs: dict[str, dict[str, Any]] = {}

    # ── Seeding ───────────────────────────────────────────────

    def add_user(self, name: str, email: str = "", role: str = UserRole.STUDENT.value, user_id: str = None) -> str:
        user_id = user_id or _new_id()
        self._users[user_id] = {"id": user_id, "name": name, "email": email, "role": role}
        return user_id

    def add_manager(self, name: str, email: str = "", manager_id: str = None,
                    user_id: str = None) -> str:
        manager_id = manager_id or _new_id()
        if user_id is None and email:
            user_id = self.add_user(name, email, role=UserRole.MANAGER.value)
        self._managers[manager_id] = {"id": manager_id, "user_id": user_id}
        return manager_id

    def add_facilitator(self, name: str, email: str = "", facilitator_id: str = None,
                        user_id: str = None) -> str:
        facilitator_id = facilitator_id or _new_id()
        if user_id is None and email:
            user_id = self.add_user(name, email, role=UserRole.FACILITATOR.value)
        self._facilitators[facilitator_id] = {"id": facilitator_id, "user_id": user_id}
        return facilitator_id

    def add_module(self, name: str, module_id: str = None) -> str:
        module_id = module_id or _new_id()
        self._modules[module_id] = name
        return module_id

    def add_allocation(self, facilitator_id: Optional[str], module_id: str = None,
                       allocation_id: str = None) -> str:
        allocation_id = allocation_id or _new_id()
        self._allocations[allocation_id] = {
            "id": allocation_id,
            "facilitator_id": facilitator_id,
            "module_id": module_id,
        }
        return allocation_id

    def add_log(self, allocation_id: str, week: int, log_id: str = None) -> str:
        log_id = log_id or _new_id()
        self._logs[log_id] = {"id": log_id, "allocation_id": allocation_id, "week": week}
        return log_id

    # ── Queries ───────────────────────────────────────────────

    async def overdue_logs(self, current_week: int) -> list[ActivityLogRecord]:
        logs = sorted(
            (log for log in self._logs.values() if log["week"] < current_week),
            key=lambda log: log["week"],
        )
        return [
            ActivityLogRecord(
                id=log["id"],
                week=log["week"],
                allocation_id=log["allocation_id"],
                allocation=self._allocation(log["allocation_id"]),
            )
            for log in logs
        ]

    async def facilitators_with_allocations(self) -> list[FacilitatorRecord]:
        return [
            FacilitatorRecord(
                id=fac["id"],
                user=self._person(fac["user_id"]),
                allocation_ids=[
                    a["id"] for a in self._allocations.values()
                    if a["facilitator_id"] == fac["id"]
                ],
            )
            for fac in self._facilitators.values()
        ]

    async def managers(self) -> list[ManagerRecord]:
        return [
            ManagerRecord(id=m["id"], user=self._person(m["user_id"]))
            for m in self._managers.values()
        ]

    async def get_allocation(self, allocation_id: str) -> Optional[AllocationRecord]:
        return self._allocation(allocation_id)

    # ── Joins ─────────────────────────────────────────────────

    def _person(self, user_id: Optional[str]) -> Optional[Person]:
        user = self._users.get(user_id) if user_id else None
        if user is None:
            return None
        return Person(id=user["id"], name=user["name"], email=user["email"])

    def _allocation(self, allocation_id: str) -> Optional[AllocationRecord]:
        alloc = self._allocations.get(allocation_id)
        if alloc is None:
            return None
        facilitator = self._facilitators.get(alloc["facilitator_id"]) if alloc["facilitator_id"] else None
        return AllocationRecord(
            id=alloc["id"],
            module_name=self._modules.get(alloc["module_id"], "") if alloc["module_id"] else "",
            facilitator=self._person(facilitator["user_id"]) if facilitator else None,
        )
