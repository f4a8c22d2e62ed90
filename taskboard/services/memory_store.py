"""In-memory record store implementing the repository and change-feed interfaces.

Used for local runs and as the fake store in tests. Every write emits a change
notification to open feed subscriptions, mirroring Supabase Realtime.
"""

import asyncio
import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from taskboard.models.events import ChangeKind, ConnectionState
from taskboard.models.task import ACTIVE_STATUSES, Task, TaskPriority, TaskStatus, TaskUpdate
from taskboard.models.worker import WorkerProfile
from taskboard.services.repositories import (
    ChangeCallback,
    ChangeFeed,
    StatusCallback,
    TaskRepository,
    WorkerRepository,
)
from taskboard.utils.errors import StoreError


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_row_filter(row_filter: Optional[str]) -> Optional[tuple[str, str]]:
    """Parse a PostgREST-style ``column=eq.value`` filter."""
    if not row_filter:
        return None
    column, _, expression = row_filter.partition("=")
    operator, _, value = expression.partition(".")
    if operator != "eq" or not column:
        raise StoreError(f"Unsupported row filter: {row_filter}")
    return column, value


class InMemoryRecordStore:
    """Table-like storage shared by the in-memory repositories."""

    def __init__(self, atomic_counters: bool = True):
        self.atomic_counters = atomic_counters
        self.tasks_table: dict[str, dict[str, Any]] = {}
        self.skills_table: dict[str, list[str]] = {}
        self.updates_table: list[dict[str, Any]] = []
        self.workers_table: dict[str, dict[str, Any]] = {}
        self._listeners: dict[int, dict[str, Any]] = {}
        self._handles = itertools.count(1)
        self._failures: dict[str, list[Exception]] = {}

        self.tasks = InMemoryTaskRepository(self)
        self.workers = InMemoryWorkerRepository(self)
        self.feed = InMemoryChangeFeed(self)

    # Seeding and failure injection

    def add_worker(self, **fields: Any) -> WorkerProfile:
        profile = WorkerProfile(**fields)
        self.workers_table[profile.user_id] = profile.model_dump(mode="json")
        self.emit("employee_profiles", ChangeKind.INSERT, self.workers_table[profile.user_id], {})
        return profile

    def fail_next(self, operation: str, times: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        queued = self._failures.setdefault(operation, [])
        for _ in range(times):
            queued.append(error or StoreError(f"Injected failure in {operation}"))

    def check_failure(self, operation: str) -> None:
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    # Change notifications

    def add_listener(
        self,
        table: str,
        kind: ChangeKind,
        row_filter: Optional[str],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> int:
        handle = next(self._handles)
        self._listeners[handle] = {
            "table": table,
            "kind": kind,
            "filter": _parse_row_filter(row_filter),
            "on_change": on_change,
            "on_status": on_status,
        }
        return handle

    def remove_listener(self, handle: int) -> None:
        listener = self._listeners.pop(handle, None)
        if listener:
            listener["on_status"](ConnectionState.DISCONNECTED, None)

    def drop_connections(self, error: Optional[str] = None) -> None:
        """Simulate the realtime socket going away for every listener."""
        listeners = list(self._listeners.values())
        self._listeners.clear()
        state = ConnectionState.ERROR if error else ConnectionState.DISCONNECTED
        for listener in listeners:
            listener["on_status"](state, error)

    def emit(self, table: str, kind: ChangeKind, new: dict, old: dict) -> None:
        commit_timestamp = _now_iso()
        for listener in list(self._listeners.values()):
            if listener["table"] != table or not listener["kind"].matches(kind):
                continue
            row_filter = listener["filter"]
            if row_filter:
                column, value = row_filter
                row = old if kind is ChangeKind.DELETE else new
                if str(row.get(column)) != value:
                    continue
            listener["on_change"](kind, copy.deepcopy(new), copy.deepcopy(old), commit_timestamp)


class InMemoryTaskRepository(TaskRepository):
    def __init__(self, store: InMemoryRecordStore):
        self._store = store

    def _hydrate(self, row: dict[str, Any]) -> Task:
        return Task(**row, required_skills=self._store.skills_table.get(row["id"], []))

    async def insert(self, record: dict[str, Any]) -> Task:
        self._store.check_failure("insert_task")
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", _now_iso())
        row.setdefault("updated_at", row["created_at"])
        if row["id"] in self._store.tasks_table:
            raise StoreError(f"duplicate key value violates unique constraint: {row['id']}")
        self._store.tasks_table[row["id"]] = row
        self._store.emit("tasks", ChangeKind.INSERT, row, {})
        return self._hydrate(row)

    async def get(self, task_id: str) -> Optional[Task]:
        self._store.check_failure("get_task")
        row = self._store.tasks_table.get(task_id)
        return self._hydrate(row) if row else None

    async def update(
        self,
        task_id: str,
        fields: dict[str, Any],
        expected_status: Optional[Iterable[TaskStatus]] = None,
        expected_assignee: Optional[str] = None,
    ) -> Optional[Task]:
        self._store.check_failure("update_task")
        row = self._store.tasks_table.get(task_id)
        if row is None:
            return None
        if expected_status is not None:
            allowed = {TaskStatus(s).value for s in expected_status}
            if row["status"] not in allowed:
                return None
        if expected_assignee is not None and row.get("assigned_to") != expected_assignee:
            return None
        old = dict(row)
        row.update(fields)
        self._store.emit("tasks", ChangeKind.UPDATE, row, old)
        return self._hydrate(row)

    async def delete(self, task_id: str) -> bool:
        self._store.check_failure("delete_task")
        row = self._store.tasks_table.pop(task_id, None)
        if row is None:
            return False
        # Cascades, as the foreign keys do in Postgres
        self._store.skills_table.pop(task_id, None)
        self._store.updates_table[:] = [u for u in self._store.updates_table if u["task_id"] != task_id]
        self._store.emit("tasks", ChangeKind.DELETE, {}, row)
        return True

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        assigned_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        self._store.check_failure("list_tasks")
        rows = list(self._store.tasks_table.values())
        if status is not None:
            rows = [r for r in rows if r["status"] == TaskStatus(status).value]
        if priority is not None:
            rows = [r for r in rows if r["priority"] == TaskPriority(priority).value]
        if assigned_to is not None:
            rows = [r for r in rows if r.get("assigned_to") == assigned_to]
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [self._hydrate(r) for r in rows]

    async def count_active_by_assignee(self) -> dict[str, int]:
        self._store.check_failure("count_active")
        active = {s.value for s in ACTIVE_STATUSES}
        counts: dict[str, int] = {}
        for row in self._store.tasks_table.values():
            if row.get("assigned_to") and row["status"] in active:
                counts[row["assigned_to"]] = counts.get(row["assigned_to"], 0) + 1
        return counts

    async def set_required_skills(self, task_id: str, skills: list[str]) -> None:
        self._store.check_failure("set_required_skills")
        self._store.skills_table[task_id] = [s.strip() for s in skills]

    async def append_update(self, record: dict[str, Any]) -> TaskUpdate:
        self._store.check_failure("append_update")
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", _now_iso())
        self._store.updates_table.append(row)
        self._store.emit("task_updates", ChangeKind.INSERT, row, {})
        return TaskUpdate(**row)

    async def recent_updates(self, task_id: str, limit: int = 5) -> list[TaskUpdate]:
        rows = [u for u in self._store.updates_table if u["task_id"] == task_id]
        rows.reverse()
        return [TaskUpdate(**u) for u in rows[:limit]]


class InMemoryWorkerRepository(WorkerRepository):
    def __init__(self, store: InMemoryRecordStore):
        self._store = store

    async def get(self, user_id: str) -> Optional[WorkerProfile]:
        self._store.check_failure("get_worker")
        row = self._store.workers_table.get(user_id)
        return WorkerProfile(**row) if row else None

    async def list_workers(self, available_only: bool = False) -> list[WorkerProfile]:
        self._store.check_failure("list_workers")
        rows = self._store.workers_table.values()
        return [WorkerProfile(**r) for r in rows if r["availability"] or not available_only]

    async def search_by_name(self, fragment: str, limit: int = 5) -> list[WorkerProfile]:
        needle = fragment.lower()
        matches = [
            WorkerProfile(**r) for r in self._store.workers_table.values()
            if needle in (r.get("full_name") or "").lower()
        ]
        return matches[:limit]

    async def increment_counters(
        self,
        user_id: str,
        workload_delta: int,
        completed_delta: int = 0,
    ) -> WorkerProfile:
        self._store.check_failure("increment_counters")
        row = self._store.workers_table.get(user_id)
        if row is None:
            raise StoreError(f"Worker profile not found: {user_id}")

        workload = row["current_workload"]
        completed = row["tasks_completed"]
        if not self._store.atomic_counters:
            # Read-modify-write across a suspension point, like a client-side update
            await asyncio.sleep(0)

        old = dict(row)
        row["current_workload"] = max(0, workload + workload_delta)
        row["tasks_completed"] = max(0, completed + completed_delta)
        self._store.emit("employee_profiles", ChangeKind.UPDATE, row, old)
        return WorkerProfile(**row)

    async def set_workload(self, user_id: str, value: int) -> WorkerProfile:
        self._store.check_failure("set_workload")
        row = self._store.workers_table.get(user_id)
        if row is None:
            raise StoreError(f"Worker profile not found: {user_id}")
        old = dict(row)
        row["current_workload"] = max(0, value)
        self._store.emit("employee_profiles", ChangeKind.UPDATE, row, old)
        return WorkerProfile(**row)


class InMemoryChangeFeed(ChangeFeed):
    def __init__(self, store: InMemoryRecordStore):
        self._store = store

    async def open(
        self,
        name: str,
        table: str,
        kind: ChangeKind,
        row_filter: Optional[str],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> int:
        self._store.check_failure("open_feed")
        handle = self._store.add_listener(table, kind, row_filter, on_change, on_status)
        on_status(ConnectionState.CONNECTED, None)
        return handle

    async def close(self, handle: int) -> None:
        self._store.remove_listener(handle)
