"""Read models produced by the matching engine and the aggregate task query."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from taskboard.models.task import Task, TaskUpdate
from taskboard.models.worker import WorkerProfile


class MatchLabel(str, Enum):
    """Advisory presentation band for a composite score."""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    WEAK = "weak"


class CandidateScore(BaseModel):
    """One ranked candidate for a task."""
    worker: WorkerProfile
    score: float = Field(..., description="Composite score 0-100")
    skill_match_pct: float = Field(..., ge=0, le=100)
    workload_capacity: float = Field(..., ge=0, le=100)
    performance: float = Field(..., ge=0, le=100)
    availability_bonus: float = Field(..., ge=0, le=100)
    matched_skills: list[str] = Field(default_factory=list)
    label: MatchLabel

    def summary(self) -> dict:
        return {
            "id": self.worker.user_id,
            "name": self.worker.display_name,
            "score": round(self.score),
            "skillMatchPercentage": round(self.skill_match_pct),
            "currentWorkload": self.worker.current_workload,
            "matchingSkills": self.matched_skills,
            "recommendation": self.label.value,
        }


class TaskAggregate(BaseModel):
    """A task hydrated with its assignee, required skills and recent updates."""
    task: Task
    assignee: Optional[WorkerProfile] = None
    recent_updates: list[TaskUpdate] = Field(default_factory=list)

    @property
    def required_skills(self) -> list[str]:
        return self.task.required_skills
