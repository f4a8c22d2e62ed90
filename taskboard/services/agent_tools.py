"""LangChain tools exposing the engine to the admin chat agent.

The tools are a thin adapter: argument schemas, identifier resolution and
output shaping live here, every state change goes through TaskLifecycle.
Engine errors surface as ToolException; a missing delete confirmation is
returned as a structured prompt instead.
"""

import uuid
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Optional
from uuid import UUID

from langchain_core.tools import StructuredTool, ToolException
from pydantic import BaseModel, Field

from taskboard.models.task import Decision, Task, TaskPriority, TaskStatus
from taskboard.models.worker import WorkerProfile
from taskboard.services.engine import TaskEngine
from taskboard.services.lifecycle import TaskOutcome, check_status_change, progress_target
from taskboard.services.matching import analyze_task_request
from taskboard.services.workforce import TimeRange
from taskboard.utils.errors import (
    AuthRequiredError,
    ConfirmationRequiredError,
    NotFoundError,
    TaskboardError,
    ValidationError,
)
from taskboard.utils.logging import get_structured_logger, mask_user_id

logger = get_structured_logger(__name__)


class ActingUser(BaseModel):
    """Identity on whose behalf tools run."""
    id: str = Field(..., min_length=1)
    email: Optional[str] = None


# Argument schemas

class CreateTaskInput(BaseModel):
    title: str = Field(..., min_length=3, description="Task title (minimum 3 characters)")
    description: str = Field(..., min_length=10, description="Detailed task description (minimum 10 characters)")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="Task priority level")
    deadline: Optional[str] = Field(None, description="Deadline in ISO format (YYYY-MM-DD or YYYY-MM-DDTHH:mm:ss)")
    estimated_hours: Optional[float] = Field(None, gt=0, description="Estimated hours to complete")
    required_skills: Optional[list[str]] = Field(None, description="Required skills for this task")
    assign_to: Optional[str] = Field(None, description="Employee name or ID to invite right away")


class AssignTaskInput(BaseModel):
    task_id: UUID = Field(..., description="The UUID of the task to assign")
    assign_to: Optional[str] = Field(
        None, description="Employee name or ID. If not provided, the best matches are suggested instead"
    )


class TaskChanges(BaseModel):
    title: Optional[str] = Field(None, min_length=3, description="New task title")
    description: Optional[str] = Field(None, min_length=10, description="New task description")
    deadline: Optional[str] = Field(None, description="New deadline (ISO format)")
    priority: Optional[TaskPriority] = Field(None, description="New priority level")
    status: Optional[TaskStatus] = Field(None, description="New task status")
    progress: Optional[int] = Field(None, ge=0, le=100, description="Task progress percentage (0-100)")
    estimated_hours: Optional[float] = Field(None, gt=0, description="New estimated hours")
    required_skills: Optional[list[str]] = Field(None, description="Updated list of required skills (replaces existing)")


class UpdateTaskInput(BaseModel):
    task_id: UUID = Field(..., description="The UUID of the task to update")
    updates: TaskChanges = Field(..., description="Fields to change")


class DeleteTaskInput(BaseModel):
    task_id: UUID = Field(..., description="The UUID of the task to delete")
    confirmed: bool = Field(
        default=False, description="Must be true to confirm deletion. Always ask the user for confirmation first."
    )


class ListTasksInput(BaseModel):
    status: Optional[TaskStatus] = Field(None, description="Filter by task status")
    priority: Optional[TaskPriority] = Field(None, description="Filter by priority level")
    assigned_to: Optional[str] = Field(None, description="Filter by employee name or ID")
    overdue: bool = Field(default=False, description="Show only overdue tasks")
    limit: int = Field(default=20, gt=0, description="Maximum number of results")


class TaskIdInput(BaseModel):
    task_id: UUID = Field(..., description="The UUID of the task")


class RespondInput(BaseModel):
    task_id: UUID = Field(..., description="The UUID of the invited task")
    decision: Decision = Field(..., description="accept or reject")
    reason: Optional[str] = Field(None, description="Why the task is rejected")


class ProgressInput(BaseModel):
    task_id: UUID = Field(..., description="The UUID of the task")
    progress: int = Field(..., ge=0, le=100, description="Progress percentage; 100 completes the task")
    note: Optional[str] = Field(None, description="What was done")
    hours_logged: Optional[float] = Field(None, ge=0, description="Hours spent since the last update")


class SuggestInput(BaseModel):
    task_id: Optional[UUID] = Field(None, description="Task to find assignees for")
    required_skills: Optional[list[str]] = Field(None, description="Skills to match instead of the task's own")
    description: Optional[str] = Field(None, description="Free-text task description to infer skills from")
    limit: int = Field(default=5, gt=0, description="Number of candidates to return")


class AnalyzeTaskInput(BaseModel):
    task_description: str = Field(..., min_length=1, description="Description of the task to be analyzed")
    limit: int = Field(default=5, gt=0, description="Number of employees to suggest")


class ListEmployeesInput(BaseModel):
    department: Optional[str] = Field(None, description='Filter by department (e.g. "Engineering", "Design")')
    designation: Optional[str] = Field(None, description="Filter by job title (partial match)")
    availability: Optional[bool] = Field(None, description="true for available employees, false for unavailable")
    search_query: Optional[str] = Field(None, description="Search by name or email (partial match)")
    skills: Optional[list[str]] = Field(None, description="Employees must have ALL of these skills")


class EmployeeInput(BaseModel):
    employee: str = Field(..., min_length=1, description="Employee name or ID")


class PerformanceInput(BaseModel):
    employee: str = Field(..., min_length=1, description="Employee name or ID")
    time_range: TimeRange = Field(default=TimeRange.MONTH, description="Time period for the metrics")


# Output shaping

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _employee_summary(worker: Optional[WorkerProfile]) -> Optional[dict]:
    if worker is None:
        return None
    return {"id": worker.user_id, "name": worker.display_name, "email": worker.email}


def _employee_profile(worker: WorkerProfile) -> dict:
    return {
        **_employee_summary(worker),
        "department": worker.department,
        "designation": worker.designation,
        "skills": worker.skills,
        "availability": worker.availability,
        "currentWorkload": worker.current_workload,
        "performanceScore": worker.performance_score,
        "tasksCompleted": worker.tasks_completed,
        "hourlyRate": worker.hourly_rate,
    }


def _task_summary(task: Task, assignee: Optional[WorkerProfile] = None) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "priority": task.priority.value,
        "progress": task.progress,
        "deadline": _iso(task.deadline),
        "assignedTo": assignee.display_name if assignee else task.assigned_to,
        "requiredSkills": task.required_skills,
    }


def _outcome(outcome: TaskOutcome, assignee: Optional[WorkerProfile] = None, **extra: Any) -> dict:
    result = {"success": True, "task": _task_summary(outcome.task, assignee), **extra}
    if outcome.warnings:
        result["warnings"] = outcome.warnings
    return result


def format_task_list(tasks: list[Task], assignees: dict[str, WorkerProfile], now: datetime) -> str:
    """Human-readable listing for the chat transcript."""
    if not tasks:
        return "No tasks found matching the given filters."

    lines = [f"Found {len(tasks)} task(s):", ""]
    for index, task in enumerate(tasks, start=1):
        assignee = assignees.get(task.assigned_to) if task.assigned_to else None
        lines.append(f"{index}. [{task.priority.value.upper()}] {task.title} ({task.status.value}, {task.progress}%)")
        lines.append(f"   ID: {task.id}")
        lines.append(f"   Assigned to: {assignee.display_name if assignee else 'Unassigned'}")
        if task.deadline:
            overdue = " ⚠️ OVERDUE" if task.is_overdue(now) else ""
            lines.append(f"   Deadline: {task.deadline.strftime('%Y-%m-%d %H:%M')} UTC{overdue}")
    return "\n".join(lines)


def _tool_errors(func: Callable) -> Callable:
    """Translate engine errors into ToolException for the agent."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except ConfirmationRequiredError as e:
            return {"success": False, "requires_confirmation": True, "message": str(e)}
        except ValidationError as e:
            message = str(e)
            if e.matches:
                names = ", ".join(f"{m['name']} ({m['id']})" for m in e.matches)
                message = f"{message} Matches: {names}"
            raise ToolException(message) from e
        except TaskboardError as e:
            logger.info("Tool call failed", tool=func.__name__, error_code=e.code, error=str(e))
            raise ToolException(str(e)) from e

    return wrapper


class AdminToolkit:
    """Tool implementations bound to one engine and one acting user."""

    def __init__(self, engine: TaskEngine, actor: ActingUser):
        self.engine = engine
        self.actor = actor

    async def resolve_employee(self, identifier: str) -> WorkerProfile:
        """Find an employee by user ID or by (unique) name fragment."""
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("Employee name or ID is required")

        try:
            uuid.UUID(identifier)
            is_id = True
        except ValueError:
            is_id = False

        if is_id:
            worker = await self.engine.workers.get(identifier)
            if worker is None:
                raise NotFoundError(f'Employee with ID "{identifier}" not found.')
            return worker

        matches = await self.engine.workers.search_by_name(identifier)
        if not matches:
            raise NotFoundError(f'No employee found matching "{identifier}".')
        if len(matches) > 1:
            raise ValidationError(
                f'Multiple employees match "{identifier}". Please be more specific.',
                matches=[_employee_summary(w) for w in matches],
            )
        return matches[0]

    @_tool_errors
    async def create_task(self, **kwargs: Any) -> dict:
        args = CreateTaskInput(**kwargs)
        assignee = await self.resolve_employee(args.assign_to) if args.assign_to else None

        outcome = await self.engine.lifecycle.create_task(
            title=args.title,
            description=args.description,
            priority=args.priority,
            deadline=args.deadline,
            required_skills=args.required_skills,
            estimated_hours=args.estimated_hours,
            creator=self.actor.id,
        )
        if assignee is None:
            return _outcome(outcome)

        assigned = await self.engine.lifecycle.assign(outcome.task.id, assignee.user_id)
        assigned.warnings[:0] = outcome.warnings
        return _outcome(assigned, assignee)

    @_tool_errors
    async def assign_task(self, **kwargs: Any) -> dict:
        args = AssignTaskInput(**kwargs)
        task_id = str(args.task_id)
        if not args.assign_to:
            candidates = await self.engine.matching.suggest(task_id=task_id)
            return {
                "success": True,
                "assigned": False,
                "suggestions": [c.summary() for c in candidates],
            }

        worker = await self.resolve_employee(args.assign_to)
        outcome = await self.engine.lifecycle.assign(task_id, worker.user_id)
        return _outcome(outcome, worker, assigned=True, employee=_employee_summary(worker))

    @_tool_errors
    async def update_task(self, **kwargs: Any) -> dict:
        args = UpdateTaskInput(**kwargs)
        task_id = str(args.task_id)
        changes = args.updates.model_dump(exclude_none=True)
        if not changes:
            raise ValidationError("No updates provided")

        status = changes.pop("status", None)
        progress = changes.pop("progress", None)
        lifecycle = self.engine.lifecycle

        # Refuse the whole request before any write if a step would be rejected
        task = await lifecycle.get_task(task_id)
        reached = task.status
        if progress is not None:
            reached = progress_target(task, progress) or task.status
        if status is not None:
            if progress is not None and status == reached:
                status = None
            else:
                check_status_change(task.model_copy(update={"status": reached}), status)

        warnings: list[str] = []
        outcome = None
        if changes:
            outcome = await lifecycle.edit_fields(task_id, changes)
            warnings.extend(outcome.warnings)
        if progress is not None:
            outcome = await lifecycle.update_progress(task_id, progress, actor_id=self.actor.id)
            warnings.extend(outcome.warnings)
        if status is not None:
            outcome = await lifecycle.transition(task_id, status)
            warnings.extend(outcome.warnings)

        outcome.warnings = warnings
        return _outcome(outcome, updated_fields=sorted(args.updates.model_dump(exclude_none=True)))

    @_tool_errors
    async def delete_task(self, **kwargs: Any) -> dict:
        args = DeleteTaskInput(**kwargs)
        outcome = await self.engine.lifecycle.delete(str(args.task_id), confirmed=args.confirmed)
        logger.info("Task deleted via tool", task_id=outcome.task.id, actor=mask_user_id(self.actor.id))
        return {
            "success": True,
            "deleted": {"id": outcome.task.id, "title": outcome.task.title},
            **({"warnings": outcome.warnings} if outcome.warnings else {}),
        }

    @_tool_errors
    async def list_tasks(self, **kwargs: Any) -> str:
        args = ListTasksInput(**kwargs)
        assigned_to = None
        if args.assigned_to:
            assigned_to = (await self.resolve_employee(args.assigned_to)).user_id

        tasks = await self.engine.lifecycle.list_tasks(
            status=args.status,
            priority=args.priority,
            assigned_to=assigned_to,
            overdue=args.overdue,
            limit=args.limit,
        )
        aggregates = await self.engine.lifecycle.query.load_many(tasks)
        assignees = {a.task.assigned_to: a.assignee for a in aggregates if a.assignee}
        return format_task_list(tasks, assignees, self.engine.lifecycle.clock())

    @_tool_errors
    async def get_task_details(self, **kwargs: Any) -> dict:
        args = TaskIdInput(**kwargs)
        aggregate = await self.engine.lifecycle.get_details(str(args.task_id))
        task = aggregate.task
        now = self.engine.lifecycle.clock()
        return {
            "task": {
                **_task_summary(task, aggregate.assignee),
                "description": task.description,
                "estimatedHours": task.estimated_hours,
                "rejectionReason": task.rejection_reason,
                "createdAt": _iso(task.created_at),
                "acceptedAt": _iso(task.accepted_at),
                "startedAt": _iso(task.started_at),
                "completedAt": _iso(task.completed_at),
                "isOverdue": task.is_overdue(now),
            },
            "assignee": _employee_summary(aggregate.assignee),
            "requiredSkills": aggregate.required_skills,
            "recentUpdates": [
                {
                    "text": u.update_text,
                    "progress": u.progress,
                    "hoursLogged": u.hours_logged,
                    "createdAt": _iso(u.created_at),
                }
                for u in aggregate.recent_updates
            ],
            "totalHoursLogged": sum(u.hours_logged or 0 for u in aggregate.recent_updates),
        }

    @_tool_errors
    async def respond_to_task(self, **kwargs: Any) -> dict:
        args = RespondInput(**kwargs)
        outcome = await self.engine.lifecycle.respond(
            str(args.task_id), self.actor.id, args.decision, reason=args.reason
        )
        return _outcome(outcome)

    @_tool_errors
    async def add_progress_update(self, **kwargs: Any) -> dict:
        args = ProgressInput(**kwargs)
        outcome = await self.engine.lifecycle.update_progress(
            str(args.task_id),
            args.progress,
            note=args.note,
            hours_logged=args.hours_logged,
            actor_id=self.actor.id,
        )
        return _outcome(outcome, replayed=outcome.replayed)

    @_tool_errors
    async def suggest_assignees(self, **kwargs: Any) -> dict:
        args = SuggestInput(**kwargs)
        candidates = await self.engine.matching.suggest(
            task_id=str(args.task_id) if args.task_id else None,
            required_skills=args.required_skills,
            description=args.description,
            limit=args.limit,
        )
        return {"success": True, "candidates": [c.summary() for c in candidates]}

    @_tool_errors
    async def analyze_and_plan_task(self, **kwargs: Any) -> dict:
        args = AnalyzeTaskInput(**kwargs)
        draft = analyze_task_request(args.task_description)
        candidates = await self.engine.matching.suggest(required_skills=draft.required_skills, limit=args.limit)
        return {
            "taskAnalysis": {
                "title": draft.title,
                "description": draft.description,
                "requiredSkills": draft.required_skills,
            },
            "suggestedEmployees": [c.summary() for c in candidates],
        }

    @_tool_errors
    async def list_employees(self, **kwargs: Any) -> dict:
        args = ListEmployeesInput(**kwargs)
        workers = await self.engine.workforce.directory(
            department=args.department,
            designation=args.designation,
            availability=args.availability,
            search=args.search_query,
            skills=args.skills,
        )
        return {"employees": [_employee_profile(w) for w in workers], "count": len(workers)}

    @_tool_errors
    async def get_employee_details(self, **kwargs: Any) -> dict:
        args = EmployeeInput(**kwargs)
        worker = await self.resolve_employee(args.employee)
        detail = await self.engine.workforce.detail(worker.user_id)
        return {
            "employee": _employee_profile(detail.worker),
            "currentTasks": [_task_summary(t, detail.worker) for t in detail.active_tasks],
            "activeTaskCount": len(detail.active_tasks),
            "workloadInSync": detail.workload_in_sync,
        }

    @_tool_errors
    async def get_employee_performance(self, **kwargs: Any) -> dict:
        args = PerformanceInput(**kwargs)
        worker = await self.resolve_employee(args.employee)
        metrics = await self.engine.workforce.performance(
            worker.user_id, args.time_range, self.engine.lifecycle.clock()
        )
        return {
            "employee": _employee_summary(metrics.worker),
            "timeRange": metrics.time_range.value,
            "metrics": {
                "tasksTotal": metrics.tasks_total,
                "tasksCompleted": metrics.tasks_completed,
                "tasksOngoing": metrics.tasks_in_progress,
                "completionRate": round(metrics.completion_rate, 1),
                "onTimeRate": round(metrics.on_time_rate, 1),
                "averageCompletionDays": metrics.average_completion_days,
                "currentWorkload": metrics.worker.current_workload,
                "performanceScore": metrics.worker.performance_score,
            },
        }


TOOL_DESCRIPTIONS = {
    "create_task": (
        CreateTaskInput,
        "Create a new task. Optionally invite an employee (name or ID) right away. "
        "Deadlines must be in the future.",
    ),
    "assign_task": (
        AssignTaskInput,
        "Assign or reassign a task to an employee. Without an employee, returns the best-matching candidates.",
    ),
    "update_task": (
        UpdateTaskInput,
        "Update task fields, progress or status. Status changes follow the task lifecycle.",
    ),
    "delete_task": (
        DeleteTaskInput,
        "Permanently delete a task. Always ask the user to confirm first and pass confirmed=true.",
    ),
    "list_tasks": (
        ListTasksInput,
        "List tasks filtered by status, priority, assignee or overdue state, highest priority first.",
    ),
    "get_task_details": (
        TaskIdInput,
        "Get full details of one task including assignee, required skills and recent progress updates.",
    ),
    "respond_to_task": (
        RespondInput,
        "Accept or reject a task invitation on behalf of the current user.",
    ),
    "add_progress_update": (
        ProgressInput,
        "Report progress on a task. Progress 100 marks the task completed.",
    ),
    "suggest_assignees": (
        SuggestInput,
        "Rank employees for a task by skills, workload, performance and availability.",
    ),
    "analyze_and_plan_task": (
        AnalyzeTaskInput,
        "Analyze a task description to determine the skills needed and suggest suitable employees. "
        "Use this when planning new tasks.",
    ),
    "list_employees": (
        ListEmployeesInput,
        "List employees with their skills and current workload, filtered by department, designation, "
        "availability, name or email, or required skills.",
    ),
    "get_employee_details": (
        EmployeeInput,
        "Get an employee's profile, current workload and the active tasks they hold.",
    ),
    "get_employee_performance": (
        PerformanceInput,
        "Get completion rate, on-time delivery and average completion time for an employee over a time range.",
    ),
}


def build_admin_tools(engine: TaskEngine, actor: Optional[ActingUser]) -> list[StructuredTool]:
    """StructuredTools bound to ``engine`` acting as ``actor``."""
    if actor is None:
        raise AuthRequiredError("Authentication required to use task tools")

    toolkit = AdminToolkit(engine, actor)
    return [
        StructuredTool.from_function(
            coroutine=getattr(toolkit, name),
            name=name,
            description=description,
            args_schema=schema,
        )
        for name, (schema, description) in TOOL_DESCRIPTIONS.items()
    ]


def tools_by_name(engine: TaskEngine, actor: Optional[ActingUser]) -> dict[str, StructuredTool]:
    return {t.name: t for t in build_admin_tools(engine, actor)}
