"""WorkerProfile model - employee_profiles joined with the people table."""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from taskboard.models.task import normalize_skills


class WorkerProfile(BaseModel):
    """A staff member who can be assigned tasks."""
    user_id: str = Field(..., description="Identity ID (1:1 with the auth user)")
    profile_id: Optional[str] = Field(None, description="employee_profiles row ID")
    full_name: Optional[str] = Field(None, description="Display name from profiles")
    email: Optional[str] = Field(None, description="Email from profiles")
    skills: list[str] = Field(default_factory=list, description="Skills, case-insensitive")
    department: Optional[str] = None
    designation: Optional[str] = None
    availability: bool = Field(default=True, description="Accepting new work")
    current_workload: int = Field(default=0, ge=0, description="Active assignments (ledger-owned)")
    performance_score: float = Field(default=0.0, ge=0.0, le=1.0, description="Normalized performance")
    tasks_completed: int = Field(default=0, ge=0, description="Completed tasks (ledger-owned)")
    hourly_rate: Optional[float] = Field(None, gt=0, description="Hourly rate")

    @field_validator("skills", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> list[str]:
        return normalize_skills(value)

    @field_validator("hourly_rate", mode="before")
    @classmethod
    def _zero_rate_is_unset(cls, value: Any) -> Any:
        # employee_profiles defaults hourly_rate to 0
        if value is not None and float(value) == 0:
            return None
        return value

    @field_validator("current_workload", "tasks_completed", "performance_score", mode="before")
    @classmethod
    def _null_to_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.user_id
