"""Candidate matching and scoring for task assignment.

Scores are a weighted blend of skill overlap, spare capacity, past performance
and an availability bonus. Everything here is read-only; ranking never touches
the ledger or the task.
"""

import re
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from taskboard.models.candidate import CandidateScore, MatchLabel
from taskboard.models.task import normalize_skills
from taskboard.models.worker import WorkerProfile
from taskboard.services.repositories import TaskRepository, WorkerRepository
from taskboard.utils.errors import NotFoundError, ValidationError
from taskboard.utils.logging import get_structured_logger, log_timing

logger = get_structured_logger(__name__)

SKILL_WEIGHT = 0.40
CAPACITY_WEIGHT = 0.30
PERFORMANCE_WEIGHT = 0.20
AVAILABILITY_WEIGHT = 0.10

DEFAULT_MAX_ASSUMED_WORKLOAD = 10

# Skill score used when a task lists no required skills
NEUTRAL_SKILL_MATCH = 50.0

DEFAULT_SKILL = "General Skills"

# Keyword -> skills inferred from a free-text task description
SKILL_KEYWORDS: list[tuple[tuple[str, ...], tuple[str, ...]]] = [
    (("web", "website", "frontend", "ui", "ux"), ("Web Development", "UI/UX Design")),
    (("backend", "server", "api", "database"), ("Backend Development", "Database Management")),
    (("design", "graphic", "logo", "branding"), ("Graphic Design",)),
    (("marketing", "social media", "campaign"), ("Digital Marketing",)),
    (("data", "analytics", "report"), ("Data Analysis",)),
    (("mobile", "app", "ios", "android"), ("Mobile Development",)),
    (("project management", "coordinate", "manage"), ("Project Management",)),
    (("writing", "content", "copy"), ("Content Writing",)),
]


def _mentions(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}s?\b", text) is not None


def infer_required_skills(description: str) -> list[str]:
    """Guess the skills a task needs from its description."""
    text = (description or "").lower()
    skills: list[str] = []
    for keywords, inferred in SKILL_KEYWORDS:
        if any(_mentions(text, k) for k in keywords):
            skills.extend(inferred)
    return normalize_skills(skills) or [DEFAULT_SKILL]


class TaskDraft(BaseModel):
    """Suggested title and skills for a free-text task request."""
    title: str
    description: str
    required_skills: list[str] = Field(default_factory=list)


def analyze_task_request(description: str) -> TaskDraft:
    """Draft a task from a free-text request: first sentence as title, inferred skills."""
    if not description or not description.strip():
        raise ValidationError("Task description is required")

    sentences = [s.strip() for s in re.split(r"[.!?]+", description) if s.strip()]
    title = sentences[0] if sentences else "New Task"
    if len(title) > 50:
        title = title[:47] + "..."
    return TaskDraft(
        title=title,
        description=description.strip(),
        required_skills=infer_required_skills(description),
    )


def _skill_matches(required: str, offered: str) -> bool:
    required, offered = required.lower(), offered.lower()
    return required in offered or offered in required


def matched_skills(required: Iterable[str], offered: Iterable[str]) -> list[str]:
    """Required skills covered by at least one offered skill (substring either way)."""
    offered = list(offered)
    return [r for r in required if any(_skill_matches(r, o) for o in offered)]


def availability_bonus(workload: int) -> float:
    if workload < 3:
        return 100.0
    if workload < 5:
        return 70.0
    return 40.0


def label_for(score: float) -> MatchLabel:
    if score >= 80:
        return MatchLabel.EXCELLENT
    if score >= 60:
        return MatchLabel.GOOD
    if score >= 40:
        return MatchLabel.FAIR
    return MatchLabel.WEAK


def score_candidate(
    required_skills: list[str],
    worker: WorkerProfile,
    max_assumed_workload: int = DEFAULT_MAX_ASSUMED_WORKLOAD,
) -> CandidateScore:
    """Composite 0-100 score of one worker against a skill requirement."""
    required = normalize_skills(required_skills)
    matched = matched_skills(required, worker.skills)
    if required:
        skill_pct = 100.0 * len(matched) / len(required)
    else:
        skill_pct = NEUTRAL_SKILL_MATCH

    capacity = max(0.0, (max_assumed_workload - worker.current_workload) / max_assumed_workload * 100.0)
    performance = worker.performance_score * 100.0
    bonus = availability_bonus(worker.current_workload)

    score = (
        SKILL_WEIGHT * skill_pct
        + CAPACITY_WEIGHT * capacity
        + PERFORMANCE_WEIGHT * performance
        + AVAILABILITY_WEIGHT * bonus
    )
    return CandidateScore(
        worker=worker,
        score=score,
        skill_match_pct=skill_pct,
        workload_capacity=capacity,
        performance=performance,
        availability_bonus=bonus,
        matched_skills=matched,
        label=label_for(score),
    )


def rank(
    required_skills: list[str],
    candidates: Iterable[WorkerProfile],
    max_assumed_workload: int = DEFAULT_MAX_ASSUMED_WORKLOAD,
) -> list[CandidateScore]:
    """Score and order candidates: best score first, then lighter workload, then id."""
    scored = [score_candidate(required_skills, w, max_assumed_workload) for w in candidates]
    scored.sort(key=lambda c: (-c.score, c.worker.current_workload, c.worker.user_id))
    return scored


class MatchingEngine:
    """Ranks workers for a task against a snapshot of their profiles."""

    def __init__(
        self,
        workers: WorkerRepository,
        tasks: TaskRepository,
        max_assumed_workload: int = DEFAULT_MAX_ASSUMED_WORKLOAD,
    ):
        self.workers = workers
        self.tasks = tasks
        self.max_assumed_workload = max_assumed_workload

    async def suggest(
        self,
        task_id: Optional[str] = None,
        required_skills: Optional[list[str]] = None,
        description: Optional[str] = None,
        available_only: bool = True,
        limit: Optional[int] = 5,
    ) -> list[CandidateScore]:
        """Rank candidates for a task.

        Skills come from ``required_skills`` when given, else from the task,
        else are inferred from ``description``.
        """
        skills = required_skills
        if skills is None and task_id:
            task = await self.tasks.get(task_id)
            if task is None:
                raise NotFoundError(f'Task with ID "{task_id}" not found.')
            skills = task.required_skills
        if skills is None:
            skills = infer_required_skills(description) if description else []

        with log_timing("rank_candidates", logger=logger, required_skills=len(skills)):
            candidates = await self.workers.list_workers(available_only=available_only)
            ranked = rank(skills, candidates, self.max_assumed_workload)

        logger.info(
            "Candidates ranked",
            task_id=task_id,
            candidates=len(ranked),
            top_score=round(ranked[0].score, 1) if ranked else None,
        )
        return ranked[:limit] if limit is not None else ranked
