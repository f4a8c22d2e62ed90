"""Task lifecycle state machine.

Validates each requested status change against the transition table, commits
it with a compare-and-set on the task row and then settles the workload ledger.
Ledger effects are derived from the committed before/after rows: a worker is
decremented when they stop holding an active assignment and incremented when
they start holding one, so every path keeps current_workload equal to the
worker's count of active tasks. Commit and settlement for one task run under
that task's lock, so deltas land in commit order.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from typing import Any, AsyncIterator, Callable, Optional, Union

from pydantic import BaseModel, Field

from taskboard.models.candidate import TaskAggregate
from taskboard.models.task import (
    EDITABLE_FIELDS,
    PRIORITY_ORDER,
    Decision,
    Task,
    TaskPriority,
    TaskStatus,
    can_transition,
    normalize_skills,
)
from taskboard.services.repositories import TaskAggregateQuery, TaskRepository, WorkerRepository
from taskboard.services.workload_ledger import WorkloadLedger
from taskboard.utils.errors import (
    AuthRequiredError,
    ConfirmationRequiredError,
    InvalidTransitionError,
    LedgerAdjustmentError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from taskboard.utils.logging import get_structured_logger, mask_user_id

logger = get_structured_logger(__name__)

Clock = Callable[[], datetime]
DeadlineInput = Union[None, str, date, datetime]

# Returned by a commit plan to signal that the request is already satisfied
_REPLAY = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_deadline(value: DeadlineInput, now: datetime, require_future: bool = True) -> Optional[datetime]:
    """Parse a deadline and enforce that it lies in the future.

    A value without a time component is due at the end of that day (UTC). A
    value with a time component must be strictly later than ``now``. Naive
    datetimes are taken as UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid deadline format: {value!r}. Use YYYY-MM-DD or an ISO 8601 timestamp.")

    if isinstance(value, datetime):
        deadline = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    elif isinstance(value, date):
        deadline = datetime.combine(value, time(23, 59, 59), tzinfo=timezone.utc)
    else:
        raise ValidationError(f"Invalid deadline: {value!r}")

    if require_future and deadline <= now:
        raise ValidationError("Deadline must be in the future")
    return deadline


def sort_by_priority_and_deadline(tasks: list[Task]) -> list[Task]:
    """Highest priority first, then earliest deadline; tasks without a deadline last."""
    return sorted(
        tasks,
        key=lambda t: (
            -PRIORITY_ORDER[t.priority],
            t.deadline is None,
            t.deadline.timestamp() if t.deadline else 0,
        ),
    )


def _parse_priority(value: Any) -> TaskPriority:
    try:
        return TaskPriority(str(getattr(value, "value", value)).lower())
    except ValueError:
        raise ValidationError(f"Invalid priority: {value!r}. Must be one of: low, medium, high")


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field.capitalize()} is required")
    return value.strip()


def _check_hours(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid estimated hours: {value!r}")
    if hours <= 0:
        raise ValidationError("Estimated hours must be positive")
    return hours


def _require_transition(task: Task, target: TaskStatus) -> None:
    if not can_transition(task.status, target):
        raise InvalidTransitionError(
            f"Cannot move task from {task.status.value} to {target.value}"
        )


def progress_target(task: Task, progress: int) -> Optional[TaskStatus]:
    """Status a progress report moves ``task`` to, or None when it is a replay."""
    if task.status == TaskStatus.COMPLETED and progress == 100:
        return None
    if task.status not in (TaskStatus.ACCEPTED, TaskStatus.ONGOING):
        raise InvalidTransitionError(
            f"Progress can only be updated on accepted or ongoing tasks; task is {task.status.value}"
        )
    target = TaskStatus.COMPLETED if progress == 100 else TaskStatus.ONGOING
    _require_transition(task, target)
    return target


def check_status_change(task: Task, target: TaskStatus) -> None:
    """Raise InvalidTransitionError if an administrative move to ``target`` is not allowed."""
    if target == TaskStatus.PENDING:
        raise InvalidTransitionError("Tasks cannot be moved back to pending")
    if target == TaskStatus.REJECTED:
        if task.is_terminal:
            raise InvalidTransitionError(f"Cannot reject a {task.status.value} task")
        return
    if target == TaskStatus.ONGOING:
        if task.status != TaskStatus.ACCEPTED:
            raise InvalidTransitionError(f"Only accepted tasks can be started; task is {task.status.value}")
        return
    if target == TaskStatus.COMPLETED:
        progress_target(task, 100)
        return

    if not task.assigned_to:
        raise InvalidTransitionError(f"Task has no assignee; cannot move it to {target.value}")
    if target == TaskStatus.INVITED:
        if task.is_terminal:
            raise InvalidTransitionError(f"Cannot assign a {task.status.value} task")
        if task.status != TaskStatus.INVITED:
            _require_transition(task, TaskStatus.INVITED)
    elif task.status != TaskStatus.INVITED:
        raise InvalidTransitionError(f"Only invited tasks can be answered; task is {task.status.value}")


class TaskOutcome(BaseModel):
    """Result of a lifecycle operation."""
    task: Task
    warnings: list[str] = Field(default_factory=list, description="Non-fatal problems, e.g. ledger failures")
    replayed: bool = Field(default=False, description="Request was already satisfied; nothing changed")


class TaskLifecycle:
    """Owns task status, lifecycle timestamps and the ledger calls they imply."""

    def __init__(
        self,
        tasks: TaskRepository,
        workers: WorkerRepository,
        ledger: WorkloadLedger,
        retry_limit: int = 3,
        clock: Clock = utc_now,
    ):
        self.tasks = tasks
        self.workers = workers
        self.ledger = ledger
        self.retry_limit = retry_limit
        self.clock = clock
        self.query = TaskAggregateQuery(tasks, workers)
        self._task_locks: dict[str, asyncio.Lock] = {}

    # Internal helpers

    @asynccontextmanager
    async def _serialized(self, task_id: str) -> AsyncIterator[None]:
        """Run a commit and its ledger settlement as one unit per task."""
        lock = self._task_locks.get(task_id)
        if lock is None:
            lock = self._task_locks[task_id] = asyncio.Lock()
        async with lock, self.ledger.settling():
            yield

    async def _load(self, task_id: str) -> Task:
        task = await self.tasks.get(task_id)
        if task is None:
            raise NotFoundError(f'Task with ID "{task_id}" not found.')
        return task

    async def _commit(
        self,
        task_id: str,
        plan: Callable[[Task], Optional[dict[str, Any]]],
    ) -> tuple[Task, Optional[Task]]:
        """Apply ``plan`` to the current row with compare-and-set.

        ``plan`` validates the task and returns the fields to write, or None when
        the request is already satisfied. Returns (before, after); ``after`` is
        None for a replay. A commit that lost a race is re-planned against a
        fresh read.
        """
        for attempt in range(1, self.retry_limit + 1):
            before = await self._load(task_id)
            fields = plan(before)
            if fields is _REPLAY:
                return before, None

            fields["updated_at"] = self.clock().isoformat()
            after = await self.tasks.update(
                task_id,
                fields,
                expected_status=[before.status],
                expected_assignee=before.assigned_to,
            )
            if after is not None:
                return before, after

            logger.info(
                "Task changed concurrently, retrying commit",
                task_id=task_id,
                attempt=attempt,
                expected_status=before.status.value,
            )

        raise StoreError(f"Task {task_id} was modified concurrently; gave up after {self.retry_limit} attempts")

    async def _adjust(self, worker_id: str, delta: int, completed_delta: int, warnings: list[str]) -> bool:
        try:
            await self.ledger.adjust(worker_id, delta, completed_delta)
            return True
        except LedgerAdjustmentError as e:
            logger.warning(
                "Ledger adjustment failed; task change kept",
                worker_id=mask_user_id(worker_id),
                delta=delta,
                error=str(e),
            )
            warnings.append(f"Workload counter not updated for worker {worker_id}: {e}")
            return False

    async def _settle_ledger(self, before: Task, after: Task) -> list[str]:
        """Issue the ledger deltas implied by a committed before -> after change."""
        warnings: list[str] = []
        previous = before.assigned_to if before.is_active else None
        current = after.assigned_to if after.is_active else None
        completed = after.status == TaskStatus.COMPLETED and before.status != TaskStatus.COMPLETED

        if previous == current:
            return warnings
        if previous:
            await self._adjust(previous, -1, 1 if completed else 0, warnings)
        if current:
            await self._adjust(current, 1, 0, warnings)
        return warnings

    async def _transition(
        self,
        task_id: str,
        plan: Callable[[Task], Optional[dict[str, Any]]],
        action: str,
    ) -> TaskOutcome:
        async with self._serialized(task_id):
            before, after = await self._commit(task_id, plan)
            if after is None:
                logger.info("Lifecycle request already satisfied", task_id=task_id, action=action)
                return TaskOutcome(task=before, replayed=True)

            warnings = await self._settle_ledger(before, after)
        logger.info(
            "Task transitioned",
            task_id=task_id,
            action=action,
            from_status=before.status.value,
            to_status=after.status.value,
            assigned_to=mask_user_id(after.assigned_to),
            warnings=len(warnings),
        )
        return TaskOutcome(task=after, warnings=warnings)

    # Operations

    async def create_task(
        self,
        title: str,
        description: str,
        priority: Optional[Union[str, TaskPriority]] = None,
        deadline: DeadlineInput = None,
        required_skills: Optional[list[str]] = None,
        estimated_hours: Optional[float] = None,
        creator: Optional[str] = None,
    ) -> TaskOutcome:
        """Create a task in ``pending``."""
        if not creator:
            raise AuthRequiredError("Authentication required to create tasks")

        record = {
            "title": _require_text(title, "title"),
            "description": _require_text(description, "description"),
            "status": TaskStatus.PENDING.value,
            "priority": (_parse_priority(priority) if priority else TaskPriority.MEDIUM).value,
            "progress": 0,
            "created_by": creator,
            "estimated_hours": _check_hours(estimated_hours),
        }
        due = validate_deadline(deadline, self.clock())
        record["deadline"] = due.isoformat() if due else None
        skills = normalize_skills(required_skills)

        task = await self.tasks.insert(record)

        warnings = []
        if skills:
            try:
                await self.tasks.set_required_skills(task.id, skills)
                task = task.model_copy(update={"required_skills": skills})
            except StoreError as e:
                logger.warning("Failed to save required skills", task_id=task.id, error=str(e))
                warnings.append(f"Task created but required skills could not be saved: {e}")

        logger.info(
            "Task created",
            task_id=task.id,
            priority=task.priority.value,
            created_by=mask_user_id(creator),
            required_skills=len(task.required_skills),
        )
        return TaskOutcome(task=task, warnings=warnings)

    async def assign(self, task_id: str, worker_id: str) -> TaskOutcome:
        """Invite ``worker_id`` to the task, replacing any current assignee."""
        worker = await self.workers.get(worker_id)
        if worker is None:
            raise NotFoundError(f'Employee with ID "{worker_id}" not found.')

        def plan(task: Task) -> Optional[dict[str, Any]]:
            if task.is_terminal:
                raise InvalidTransitionError(f"Cannot assign a {task.status.value} task")
            if task.status == TaskStatus.INVITED and task.assigned_to == worker_id:
                return _REPLAY
            _require_transition(task, TaskStatus.INVITED)
            return {"assigned_to": worker_id, "status": TaskStatus.INVITED.value}

        return await self._transition(task_id, plan, "assign")

    async def respond(
        self,
        task_id: str,
        worker_id: str,
        decision: Union[str, Decision],
        reason: Optional[str] = None,
    ) -> TaskOutcome:
        """Accept or reject an invitation on behalf of the invited worker."""
        try:
            decision = Decision(str(getattr(decision, "value", decision)).lower())
        except ValueError:
            raise ValidationError(f"Invalid decision: {decision!r}. Must be accept or reject")

        def plan(task: Task) -> Optional[dict[str, Any]]:
            if task.status != TaskStatus.INVITED:
                raise InvalidTransitionError(
                    f"Only invited tasks can be answered; task is {task.status.value}"
                )
            if task.assigned_to != worker_id:
                raise InvalidTransitionError("Task invitation belongs to a different worker")

            if decision == Decision.ACCEPT:
                fields: dict[str, Any] = {"status": TaskStatus.ACCEPTED.value}
                if task.accepted_at is None:
                    fields["accepted_at"] = self.clock().isoformat()
                return fields
            return {"status": TaskStatus.REJECTED.value, "rejection_reason": reason}

        return await self._transition(task_id, plan, f"respond_{decision.value}")

    async def start(self, task_id: str) -> TaskOutcome:
        """Move an accepted task to ``ongoing``."""
        def plan(task: Task) -> Optional[dict[str, Any]]:
            if task.status != TaskStatus.ACCEPTED:
                raise InvalidTransitionError(f"Only accepted tasks can be started; task is {task.status.value}")
            fields: dict[str, Any] = {"status": TaskStatus.ONGOING.value}
            if task.started_at is None:
                fields["started_at"] = self.clock().isoformat()
            return fields

        return await self._transition(task_id, plan, "start")

    async def update_progress(
        self,
        task_id: str,
        progress: int,
        note: Optional[str] = None,
        hours_logged: Optional[float] = None,
        actor_id: Optional[str] = None,
    ) -> TaskOutcome:
        """Record progress; 100 completes the task.

        Completing an already completed task is a replay: nothing is written
        and the ledger is not touched.
        """
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise ValidationError("Progress must be an integer between 0 and 100")
        if hours_logged is not None and hours_logged < 0:
            raise ValidationError("Hours logged cannot be negative")

        def plan(task: Task) -> Optional[dict[str, Any]]:
            target = progress_target(task, progress)
            if target is None:
                return _REPLAY
            now = self.clock().isoformat()
            if target == TaskStatus.COMPLETED:
                return {"status": TaskStatus.COMPLETED.value, "progress": 100, "completed_at": now}

            fields: dict[str, Any] = {"status": TaskStatus.ONGOING.value, "progress": progress}
            if task.started_at is None:
                fields["started_at"] = now
            return fields

        outcome = await self._transition(task_id, plan, "update_progress")
        if outcome.replayed:
            return outcome

        record = {
            "task_id": task_id,
            "user_id": actor_id or outcome.task.assigned_to,
            "update_text": note or f"Progress updated to {progress}%",
            "progress": progress,
            "hours_logged": hours_logged,
        }
        try:
            await self.tasks.append_update(record)
        except StoreError as e:
            logger.warning("Failed to record task update", task_id=task_id, error=str(e))
            outcome.warnings.append(f"Progress saved but the update note could not be recorded: {e}")
        return outcome

    async def reject(self, task_id: str, reason: Optional[str] = None) -> TaskOutcome:
        """Administrative override: reject any non-terminal task."""
        def plan(task: Task) -> Optional[dict[str, Any]]:
            if task.is_terminal:
                raise InvalidTransitionError(f"Cannot reject a {task.status.value} task")
            return {"status": TaskStatus.REJECTED.value, "rejection_reason": reason}

        return await self._transition(task_id, plan, "reject")

    async def transition(self, task_id: str, status: Union[str, TaskStatus]) -> TaskOutcome:
        """Route an administrative status change to the matching operation."""
        try:
            target = TaskStatus(str(getattr(status, "value", status)).lower())
        except ValueError:
            raise ValidationError(f"Invalid status: {status!r}")

        task = await self._load(task_id)
        check_status_change(task, target)
        if target == TaskStatus.REJECTED:
            return await self.reject(task_id)
        if target == TaskStatus.ONGOING:
            return await self.start(task_id)
        if target == TaskStatus.COMPLETED:
            return await self.update_progress(task_id, 100)
        if target == TaskStatus.INVITED:
            return await self.assign(task_id, task.assigned_to)
        return await self.respond(task_id, task.assigned_to, Decision.ACCEPT)

    async def delete(self, task_id: str, confirmed: bool = False) -> TaskOutcome:
        """Delete a task, releasing its active assignment first.

        If the record cannot be removed after the ledger was decremented, the
        decrement is compensated with an increment.
        """
        if confirmed is not True:
            raise ConfirmationRequiredError("Deleting a task cannot be undone. Please confirm the deletion.")

        async with self._serialized(task_id):
            task = await self._load(task_id)
            warnings: list[str] = []
            released = None
            if task.is_active and task.assigned_to:
                if await self._adjust(task.assigned_to, -1, 0, warnings):
                    released = task.assigned_to

            try:
                removed = await self.tasks.delete(task_id)
            except StoreError:
                if released:
                    await self._compensate(released, task_id)
                raise

            if not removed:
                if released:
                    await self._compensate(released, task_id)
                raise NotFoundError(f'Task with ID "{task_id}" not found.')
            self._task_locks.pop(task_id, None)

        logger.info("Task deleted", task_id=task_id, status=task.status.value, released=mask_user_id(released))
        return TaskOutcome(task=task, warnings=warnings)

    async def _compensate(self, worker_id: str, task_id: str) -> None:
        try:
            await self.ledger.adjust(worker_id, 1)
            logger.info("Compensated workload after failed delete", task_id=task_id, worker_id=mask_user_id(worker_id))
        except LedgerAdjustmentError as e:
            logger.error(
                "Compensating workload increment failed; reconciliation required",
                task_id=task_id,
                worker_id=mask_user_id(worker_id),
                error=str(e),
            )

    async def edit_fields(self, task_id: str, fields: dict[str, Any]) -> TaskOutcome:
        """Edit descriptive fields. Status, progress and assignment are not editable here."""
        if not fields:
            raise ValidationError("No fields to update")
        forbidden = sorted(set(fields) - EDITABLE_FIELDS)
        if forbidden:
            raise ValidationError(f"Fields cannot be edited directly: {', '.join(forbidden)}")

        skills = normalize_skills(fields["required_skills"]) if "required_skills" in fields else None

        def plan(task: Task) -> Optional[dict[str, Any]]:
            updates: dict[str, Any] = {}
            if "title" in fields:
                updates["title"] = _require_text(fields["title"], "title")
            if "description" in fields:
                updates["description"] = _require_text(fields["description"], "description")
            if "priority" in fields:
                updates["priority"] = _parse_priority(fields["priority"]).value
            if "estimated_hours" in fields:
                updates["estimated_hours"] = _check_hours(fields["estimated_hours"])
            if "deadline" in fields:
                due = validate_deadline(fields["deadline"], self.clock(), require_future=not task.is_terminal)
                updates["deadline"] = due.isoformat() if due else None
            return updates or _REPLAY

        async with self._serialized(task_id):
            before, after = await self._commit(task_id, plan)
        task = after or before

        warnings = []
        if skills is not None:
            try:
                await self.tasks.set_required_skills(task_id, skills)
                task = task.model_copy(update={"required_skills": skills})
            except StoreError as e:
                logger.warning("Failed to save required skills", task_id=task_id, error=str(e))
                warnings.append(f"Task updated but required skills could not be saved: {e}")

        logger.info("Task fields edited", task_id=task_id, fields=sorted(fields))
        return TaskOutcome(task=task, warnings=warnings)

    async def get_task(self, task_id: str) -> Task:
        return await self._load(task_id)

    async def get_details(self, task_id: str) -> TaskAggregate:
        return await self.query.load(task_id)

    async def list_tasks(
        self,
        status: Optional[Union[str, TaskStatus]] = None,
        priority: Optional[Union[str, TaskPriority]] = None,
        assigned_to: Optional[str] = None,
        overdue: bool = False,
        limit: Optional[int] = None,
    ) -> list[Task]:
        """Filtered tasks, highest priority and earliest deadline first."""
        try:
            status = TaskStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Invalid status: {status!r}")
        priority = _parse_priority(priority) if priority else None

        tasks = await self.tasks.list_tasks(status=status, priority=priority, assigned_to=assigned_to)
        if overdue:
            now = self.clock()
            tasks = [t for t in tasks if t.is_overdue(now)]
        tasks = sort_by_priority_and_deadline(tasks)
        return tasks[:limit] if limit is not None else tasks
