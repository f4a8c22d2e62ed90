"""Task models and the lifecycle transition table."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Task lifecycle statuses."""
    PENDING = "pending"
    INVITED = "invited"
    ACCEPTED = "accepted"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class TaskPriority(str, Enum):
    """Task priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Decision(str, Enum):
    """Worker response to an invitation."""
    ACCEPT = "accept"
    REJECT = "reject"


# Statuses counted in a worker's current_workload
ACTIVE_STATUSES = frozenset({TaskStatus.INVITED, TaskStatus.ACCEPTED, TaskStatus.ONGOING})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.REJECTED})

# Source status -> statuses reachable in one step. INVITED appears as a target of
# the active states because assign() re-invites on reassignment.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.INVITED, TaskStatus.REJECTED}),
    TaskStatus.INVITED: frozenset({TaskStatus.INVITED, TaskStatus.ACCEPTED, TaskStatus.REJECTED}),
    TaskStatus.ACCEPTED: frozenset({
        TaskStatus.INVITED, TaskStatus.ONGOING, TaskStatus.COMPLETED, TaskStatus.REJECTED,
    }),
    TaskStatus.ONGOING: frozenset({
        TaskStatus.INVITED, TaskStatus.ONGOING, TaskStatus.COMPLETED, TaskStatus.REJECTED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.REJECTED: frozenset(),
}

PRIORITY_ORDER = {TaskPriority.HIGH: 3, TaskPriority.MEDIUM: 2, TaskPriority.LOW: 1}

# Fields callers may change through edit_fields()
EDITABLE_FIELDS = frozenset({
    "title", "description", "priority", "deadline", "estimated_hours", "required_skills",
})


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True when the transition table allows current -> target."""
    return target in TRANSITIONS[current]


def normalize_skills(skills: Optional[list[str]]) -> list[str]:
    """Strip and deduplicate skills case-insensitively, keeping the first spelling."""
    seen: set[str] = set()
    result = []
    for skill in skills or []:
        cleaned = (skill or "").strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        result.append(cleaned)
    return result


class Task(BaseModel):
    """Task row from the tasks table, with its required skills attached."""
    id: str = Field(..., description="Task ID (UUID text)")
    title: str = Field(..., min_length=1, description="Task title")
    description: str = Field(..., min_length=1, description="Task description")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Lifecycle status")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="Priority: low, medium, high")
    progress: int = Field(default=0, ge=0, le=100, description="Progress percentage")
    deadline: Optional[datetime] = Field(None, description="Due timestamp (UTC)")
    assigned_to: Optional[str] = Field(None, description="Assigned worker user_id")
    created_by: str = Field(..., description="Creator user_id")
    required_skills: list[str] = Field(default_factory=list, description="Required skills")
    estimated_hours: Optional[float] = Field(None, gt=0, description="Estimated effort in hours")
    rejection_reason: Optional[str] = Field(None, description="Reason recorded on rejection")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("required_skills", mode="before")
    @classmethod
    def _normalize_required_skills(cls, value: Any) -> list[str]:
        return normalize_skills(value)

    @field_validator("progress", mode="before")
    @classmethod
    def _default_progress(cls, value: Any) -> Any:
        return 0 if value is None else value

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return self.deadline is not None and self.deadline < now and not self.is_terminal

    def to_record(self) -> dict[str, Any]:
        """Serialize to a tasks-table row (required skills live in their own table)."""
        return self.model_dump(mode="json", exclude={"required_skills"})


class TaskUpdate(BaseModel):
    """Append-only progress note from the task_updates table."""
    id: str = Field(..., description="Update ID")
    task_id: str = Field(..., description="Task ID")
    user_id: str = Field(..., description="Author user_id")
    update_text: str = Field(..., description="Progress note")
    progress: Optional[int] = Field(None, ge=0, le=100, description="Progress reported with the note")
    hours_logged: Optional[float] = Field(None, ge=0, description="Hours logged with the note")
    created_at: Optional[datetime] = None
