"""Tests for candidate matching and scoring."""

import pytest

from taskboard.models.candidate import MatchLabel
from taskboard.models.worker import WorkerProfile
from taskboard.services.matching import (
    MatchingEngine,
    analyze_task_request,
    availability_bonus,
    infer_required_skills,
    label_for,
    matched_skills,
    rank,
    score_candidate,
)
from taskboard.utils.errors import NotFoundError, ValidationError
from tests.utils.factories import create_worker_data


def worker(user_id="w1", skills=(), workload=0, performance=0.5, **overrides):
    return WorkerProfile(**create_worker_data(
        user_id=user_id,
        skills=list(skills),
        current_workload=workload,
        performance_score=performance,
        **overrides,
    ))


@pytest.mark.unit
def test_score_formula():
    candidate = score_candidate(["react", "sql"], worker(skills=["React"], workload=4, performance=0.8))

    assert candidate.skill_match_pct == 50
    assert candidate.workload_capacity == 60
    assert candidate.performance == 80
    assert candidate.availability_bonus == 70
    assert candidate.score == pytest.approx(0.4 * 50 + 0.3 * 60 + 0.2 * 80 + 0.1 * 70)
    assert candidate.matched_skills == ["react"]


@pytest.mark.unit
def test_empty_requirement_scores_neutral_skill_match():
    candidate = score_candidate([], worker(skills=["Anything"]))
    assert candidate.skill_match_pct == 50


@pytest.mark.unit
def test_skill_match_is_substring_either_way_and_case_insensitive():
    assert matched_skills(["React"], ["react native"]) == ["React"]
    assert matched_skills(["Backend Development"], ["backend"]) == ["Backend Development"]
    assert matched_skills(["SQL"], ["Graphic Design"]) == []


@pytest.mark.unit
def test_capacity_floors_at_zero_beyond_max_workload():
    candidate = score_candidate(["x"], worker(workload=14))
    assert candidate.workload_capacity == 0


@pytest.mark.unit
@pytest.mark.parametrize("workload,bonus", [(0, 100), (2, 100), (3, 70), (4, 70), (5, 40), (12, 40)])
def test_availability_bonus_bands(workload, bonus):
    assert availability_bonus(workload) == bonus


@pytest.mark.unit
@pytest.mark.parametrize("score,label", [
    (95, MatchLabel.EXCELLENT), (80, MatchLabel.EXCELLENT), (79.9, MatchLabel.GOOD),
    (60, MatchLabel.GOOD), (40, MatchLabel.FAIR), (39.99, MatchLabel.WEAK),
])
def test_labels(score, label):
    assert label_for(score) == label


@pytest.mark.unit
def test_score_increases_with_skill_overlap():
    required = ["python", "sql", "docker"]
    scores = [
        score_candidate(required, worker(skills=required[:n])).score
        for n in range(len(required) + 1)
    ]
    assert scores == sorted(scores)
    assert len(set(scores)) == len(scores)


@pytest.mark.unit
def test_score_decreases_with_workload():
    scores = [score_candidate(["python"], worker(skills=["python"], workload=w)).score for w in range(12)]
    assert all(a >= b for a, b in zip(scores, scores[1:]))


@pytest.mark.unit
def test_score_increases_with_performance():
    scores = [score_candidate(["python"], worker(performance=p / 10)).score for p in range(11)]
    assert scores == sorted(scores)


@pytest.mark.unit
def test_rank_orders_by_score_then_workload_then_id():
    tied_b = worker(user_id="b", skills=["go"], workload=1, performance=0.5)
    tied_c = worker(user_id="c", skills=["go"], workload=1, performance=0.5)
    best = worker(user_id="a", skills=["go"], workload=0, performance=1.0)
    weak = worker(user_id="d", skills=[], workload=9, performance=0.1)

    ranked = rank(["go"], [weak, tied_c, best, tied_b])

    assert [c.worker.user_id for c in ranked] == ["a", "b", "c", "d"]


@pytest.mark.unit
def test_rank_prefers_lighter_workload_on_equal_score(monkeypatch):
    def flat_score(required, candidate, max_assumed_workload):
        scored = score_candidate(required, candidate, max_assumed_workload)
        return scored.model_copy(update={"score": 70.0})

    monkeypatch.setattr("taskboard.services.matching.score_candidate", flat_score)
    lighter = worker(user_id="z", skills=["go"], workload=1)
    heavier = worker(user_id="a", skills=["go"], workload=2)

    ranked = rank(["go"], [heavier, lighter])

    assert [c.worker.user_id for c in ranked] == ["z", "a"]


@pytest.mark.unit
def test_summary_shape():
    summary = score_candidate(["go"], worker(user_id="u1", skills=["Go"], full_name="Ada")).summary()
    assert summary["id"] == "u1"
    assert summary["name"] == "Ada"
    assert summary["skillMatchPercentage"] == 100
    assert summary["matchingSkills"] == ["go"]
    assert summary["recommendation"] in {label.value for label in MatchLabel}


@pytest.mark.unit
def test_infer_required_skills_from_description():
    skills = infer_required_skills("Build a website with a database backed API")
    assert "Web Development" in skills
    assert "Backend Development" in skills
    assert len(skills) == len(set(skills))


@pytest.mark.unit
def test_infer_required_skills_defaults_to_general():
    assert infer_required_skills("Water the office plants") == ["General Skills"]


@pytest.mark.unit
def test_analyze_task_request_drafts_title():
    draft = analyze_task_request("Design a new logo for the spring campaign. Use brand colors.")
    assert draft.title == "Design a new logo for the spring campaign"
    assert "Graphic Design" in draft.required_skills
    assert "Digital Marketing" in draft.required_skills

    with pytest.raises(ValidationError):
        analyze_task_request("   ")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_suggest_uses_task_skills_and_available_workers(engine, store, pending_task):
    python_dev = store.add_worker(**create_worker_data(skills=["Python"], performance_score=0.7))
    store.add_worker(**create_worker_data(skills=["Python"], performance_score=1.0, availability=False))
    designer = store.add_worker(**create_worker_data(skills=["Figma"], performance_score=0.7))

    ranked = await engine.matching.suggest(task_id=pending_task.id)

    assert [c.worker.user_id for c in ranked] == [python_dev.user_id, designer.user_id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_suggest_does_not_mutate_state(engine, store, alice, bob, pending_task):
    tasks_before = {k: dict(v) for k, v in store.tasks_table.items()}
    workers_before = {k: dict(v) for k, v in store.workers_table.items()}

    await engine.matching.suggest(task_id=pending_task.id, available_only=False, limit=None)

    assert store.tasks_table == tasks_before
    assert store.workers_table == workers_before


@pytest.mark.unit
@pytest.mark.asyncio
async def test_suggest_unknown_task(engine):
    with pytest.raises(NotFoundError):
        await engine.matching.suggest(task_id="missing")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_suggest_from_description(store):
    designer = store.add_worker(**create_worker_data(skills=["Graphic Design"], performance_score=0.5))
    writer = store.add_worker(**create_worker_data(skills=["Content Writing"], performance_score=0.5))
    engine = MatchingEngine(store.workers, store.tasks)

    ranked = await engine.suggest(description="We need a logo")

    assert ranked[0].worker.user_id == designer.user_id
    assert ranked[1].worker.user_id == writer.user_id
