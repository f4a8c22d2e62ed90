"""Repository interfaces for the record store and the hydrated task query."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional

from taskboard.models.candidate import TaskAggregate
from taskboard.models.events import ChangeKind, ConnectionState
from taskboard.models.task import Task, TaskPriority, TaskStatus, TaskUpdate
from taskboard.models.worker import WorkerProfile
from taskboard.utils.errors import NotFoundError


class TaskRepository(ABC):
    @abstractmethod
    async def insert(self, record: dict[str, Any]) -> Task:
        raise NotImplementedError

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        raise NotImplementedError

    @abstractmethod
    async def update(
        self,
        task_id: str,
        fields: dict[str, Any],
        expected_status: Optional[Iterable[TaskStatus]] = None,
        expected_assignee: Optional[str] = None,
    ) -> Optional[Task]:
        """Conditionally update a task.

        Returns the updated task, or None when no row matched (missing task, its
        status no longer one of ``expected_status``, or its assignee no longer
        ``expected_assignee``).
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        assigned_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    async def count_active_by_assignee(self) -> dict[str, int]:
        """Count tasks in an active status, grouped by assignee."""
        raise NotImplementedError

    @abstractmethod
    async def set_required_skills(self, task_id: str, skills: list[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def append_update(self, record: dict[str, Any]) -> TaskUpdate:
        raise NotImplementedError

    @abstractmethod
    async def recent_updates(self, task_id: str, limit: int = 5) -> list[TaskUpdate]:
        raise NotImplementedError


class WorkerRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Optional[WorkerProfile]:
        raise NotImplementedError

    @abstractmethod
    async def list_workers(self, available_only: bool = False) -> list[WorkerProfile]:
        raise NotImplementedError

    @abstractmethod
    async def search_by_name(self, fragment: str, limit: int = 5) -> list[WorkerProfile]:
        raise NotImplementedError

    @abstractmethod
    async def increment_counters(
        self,
        user_id: str,
        workload_delta: int,
        completed_delta: int = 0,
    ) -> WorkerProfile:
        """Apply signed deltas, clamping current_workload at zero."""
        raise NotImplementedError

    @abstractmethod
    async def set_workload(self, user_id: str, value: int) -> WorkerProfile:
        raise NotImplementedError


# on_change(kind, new_row, old_row, commit_timestamp)
ChangeCallback = Callable[[ChangeKind, dict, dict, Optional[str]], None]
StatusCallback = Callable[[ConnectionState, Optional[str]], None]


class ChangeFeed(ABC):
    """Source of row-change notifications."""

    @abstractmethod
    async def open(
        self,
        name: str,
        table: str,
        kind: ChangeKind,
        row_filter: Optional[str],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> Any:
        """Start delivering changes; returns an opaque handle for close()."""
        raise NotImplementedError

    @abstractmethod
    async def close(self, handle: Any) -> None:
        raise NotImplementedError


class TaskAggregateQuery:
    """Loads a task together with its assignee and recent history."""

    def __init__(self, tasks: TaskRepository, workers: WorkerRepository):
        self.tasks = tasks
        self.workers = workers

    async def load(self, task_id: str, updates_limit: int = 5) -> TaskAggregate:
        task = await self.tasks.get(task_id)
        if task is None:
            raise NotFoundError(f'Task with ID "{task_id}" not found.')

        assignee = await self.workers.get(task.assigned_to) if task.assigned_to else None
        updates = await self.tasks.recent_updates(task_id, limit=updates_limit)
        return TaskAggregate(task=task, assignee=assignee, recent_updates=updates)

    async def load_many(self, tasks: list[Task]) -> list[TaskAggregate]:
        """Attach assignees to an already-fetched list, one lookup per distinct worker."""
        assignees: dict[str, Optional[WorkerProfile]] = {}
        for worker_id in {t.assigned_to for t in tasks if t.assigned_to}:
            assignees[worker_id] = await self.workers.get(worker_id)
        return [
            TaskAggregate(task=t, assignee=assignees.get(t.assigned_to) if t.assigned_to else None)
            for t in tasks
        ]
