"""Employee read side: directory listing, per-worker detail and delivery metrics."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from taskboard.models.task import ACTIVE_STATUSES, Task, TaskStatus
from taskboard.models.worker import WorkerProfile
from taskboard.services.matching import matched_skills
from taskboard.services.repositories import TaskRepository, WorkerRepository
from taskboard.utils.errors import NotFoundError
from taskboard.utils.logging import get_structured_logger, mask_user_id

logger = get_structured_logger(__name__)


class TimeRange(str, Enum):
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
    ALL = "all"


RANGE_DAYS = {
    TimeRange.WEEK: 7,
    TimeRange.MONTH: 30,
    TimeRange.QUARTER: 91,
    TimeRange.YEAR: 365,
}


class WorkerDetail(BaseModel):
    """A worker with the tasks they currently hold."""
    worker: WorkerProfile
    active_tasks: list[Task] = Field(default_factory=list)

    @property
    def workload_in_sync(self) -> bool:
        return self.worker.current_workload == len(self.active_tasks)


class PerformanceMetrics(BaseModel):
    """Delivery metrics for one worker over a time range."""
    worker: WorkerProfile
    time_range: TimeRange
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_in_progress: int = 0
    completion_rate: float = Field(default=0.0, description="Completed share of tasks, percent")
    on_time_rate: float = Field(default=0.0, description="Completed on or before the deadline, percent")
    average_completion_days: float = Field(default=0.0, description="Mean days from acceptance to completion")


def performance_metrics(
    worker: WorkerProfile,
    tasks: list[Task],
    time_range: TimeRange,
    now: datetime,
) -> PerformanceMetrics:
    """Compute delivery metrics from the tasks assigned to ``worker``.

    Tasks created before the start of ``time_range`` are left out.
    """
    if time_range != TimeRange.ALL:
        since = now - timedelta(days=RANGE_DAYS[time_range])
        tasks = [t for t in tasks if t.created_at and t.created_at >= since]

    completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
    in_progress = [t for t in tasks if t.status in (TaskStatus.ACCEPTED, TaskStatus.ONGOING)]
    on_time = [t for t in completed if t.deadline and t.completed_at and t.completed_at <= t.deadline]
    durations = [
        (t.completed_at - t.accepted_at).total_seconds() / 86400
        for t in completed
        if t.accepted_at and t.completed_at
    ]

    return PerformanceMetrics(
        worker=worker,
        time_range=time_range,
        tasks_total=len(tasks),
        tasks_completed=len(completed),
        tasks_in_progress=len(in_progress),
        completion_rate=100 * len(completed) / len(tasks) if tasks else 0.0,
        on_time_rate=100 * len(on_time) / len(completed) if completed else 0.0,
        average_completion_days=round(sum(durations) / len(durations), 1) if durations else 0.0,
    )


class WorkforceQuery:
    """Read-only queries over workers and the tasks they hold."""

    def __init__(self, workers: WorkerRepository, tasks: TaskRepository):
        self.workers = workers
        self.tasks = tasks

    async def directory(
        self,
        department: Optional[str] = None,
        designation: Optional[str] = None,
        availability: Optional[bool] = None,
        search: Optional[str] = None,
        skills: Optional[list[str]] = None,
    ) -> list[WorkerProfile]:
        """Workers matching every given filter; available first, then best performers."""
        workers = await self.workers.list_workers(available_only=availability is True)

        if availability is not None:
            workers = [w for w in workers if w.availability == availability]
        if department:
            workers = [w for w in workers if (w.department or "").lower() == department.lower()]
        if designation:
            workers = [w for w in workers if designation.lower() in (w.designation or "").lower()]
        if search:
            needle = search.lower()
            workers = [
                w for w in workers
                if needle in (w.full_name or "").lower() or needle in (w.email or "").lower()
            ]
        if skills:
            workers = [w for w in workers if len(matched_skills(skills, w.skills)) == len(skills)]

        workers.sort(key=lambda w: (not w.availability, -w.performance_score, w.user_id))
        return workers

    async def detail(self, user_id: str) -> WorkerDetail:
        worker = await self.workers.get(user_id)
        if worker is None:
            raise NotFoundError(f'Employee with ID "{user_id}" not found.')

        held = await self.tasks.list_tasks(assigned_to=user_id)
        detail = WorkerDetail(worker=worker, active_tasks=[t for t in held if t.status in ACTIVE_STATUSES])
        if not detail.workload_in_sync:
            logger.warning(
                "Workload counter differs from active tasks",
                worker_id=mask_user_id(user_id),
                recorded=worker.current_workload,
                actual=len(detail.active_tasks),
            )
        return detail

    async def performance(self, user_id: str, time_range: TimeRange, now: datetime) -> PerformanceMetrics:
        worker = await self.workers.get(user_id)
        if worker is None:
            raise NotFoundError(f'Employee with ID "{user_id}" not found.')
        tasks = await self.tasks.list_tasks(assigned_to=user_id)
        return performance_metrics(worker, tasks, time_range, now)
