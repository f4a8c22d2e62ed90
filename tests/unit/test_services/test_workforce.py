"""Tests for the employee directory, detail and performance queries."""

import pytest
from datetime import datetime, timedelta, timezone

from taskboard.models.task import Task
from taskboard.models.worker import WorkerProfile
from taskboard.services.workforce import TimeRange, performance_metrics
from taskboard.utils.errors import NotFoundError
from tests.utils.factories import create_task_data, create_worker_data

NOW = datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc)


def days_ago(days: float) -> str:
    return (NOW - timedelta(days=days)).isoformat()


def task(**overrides) -> Task:
    return Task(**create_task_data(**overrides))


@pytest.fixture
def worker():
    return WorkerProfile(**create_worker_data(current_workload=1))


@pytest.mark.unit
def test_performance_metrics(worker):
    tasks = [
        # Completed a day before its deadline, two days after acceptance
        task(status="completed", created_at=days_ago(10), accepted_at=days_ago(9),
             completed_at=days_ago(7), deadline=days_ago(6)),
        # Completed late, four days after acceptance
        task(status="completed", created_at=days_ago(10), accepted_at=days_ago(8),
             completed_at=days_ago(4), deadline=days_ago(5)),
        task(status="ongoing", created_at=days_ago(3)),
        task(status="rejected", created_at=days_ago(2)),
    ]

    metrics = performance_metrics(worker, tasks, TimeRange.MONTH, NOW)

    assert metrics.tasks_total == 4
    assert metrics.tasks_completed == 2
    assert metrics.tasks_in_progress == 1
    assert metrics.completion_rate == 50.0
    assert metrics.on_time_rate == 50.0
    assert metrics.average_completion_days == 3.0


@pytest.mark.unit
def test_performance_metrics_respects_time_range(worker):
    tasks = [
        task(status="completed", created_at=days_ago(40), completed_at=days_ago(35)),
        task(status="ongoing", created_at=days_ago(2)),
    ]

    assert performance_metrics(worker, tasks, TimeRange.WEEK, NOW).tasks_total == 1
    assert performance_metrics(worker, tasks, TimeRange.ALL, NOW).tasks_total == 2


@pytest.mark.unit
def test_performance_metrics_without_tasks(worker):
    metrics = performance_metrics(worker, [], TimeRange.YEAR, NOW)

    assert metrics.completion_rate == 0.0
    assert metrics.on_time_rate == 0.0
    assert metrics.average_completion_days == 0.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_directory_filters_and_orders(engine, store):
    strong = store.add_worker(**create_worker_data(
        full_name="Dana Reyes", email="dana@example.com", department="Engineering", designation="Senior Developer",
        skills=["Python", "Backend Development"], performance_score=0.9,
    ))
    weak = store.add_worker(**create_worker_data(
        full_name="Eli Park", email="epark@example.com", department="engineering", designation="Developer",
        skills=["Python"], performance_score=0.4,
    ))
    away = store.add_worker(**create_worker_data(
        full_name="Fay Quinn", email="fay@example.com", department="Engineering", designation="Site Engineer",
        availability=False,
        skills=["Python", "Backend Development"], performance_score=1.0,
    ))
    store.add_worker(**create_worker_data(
        full_name="Gus Hart", email="gus@example.com", department="Design", designation="Illustrator",
        skills=["Graphic Design"],
    ))

    workforce = engine.workforce
    engineers = await workforce.directory(department="Engineering")
    assert [w.user_id for w in engineers] == [strong.user_id, weak.user_id, away.user_id]

    assert [w.user_id for w in await workforce.directory(availability=False)] == [away.user_id]
    assert [w.user_id for w in await workforce.directory(designation="senior")] == [strong.user_id]
    assert [w.user_id for w in await workforce.directory(search="eli")] == [weak.user_id]

    backend = await workforce.directory(skills=["python", "backend"], availability=True)
    assert [w.user_id for w in backend] == [strong.user_id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_detail_lists_active_tasks(engine, store, alice, pending_task, admin_id):
    await engine.lifecycle.assign(pending_task.id, alice.user_id)
    done = (await engine.lifecycle.create_task("Done", "Already delivered work", creator=admin_id)).task
    await engine.lifecycle.assign(done.id, alice.user_id)
    await engine.lifecycle.respond(done.id, alice.user_id, "accept")
    await engine.lifecycle.update_progress(done.id, 100)

    detail = await engine.workforce.detail(alice.user_id)

    assert [t.id for t in detail.active_tasks] == [pending_task.id]
    assert detail.workload_in_sync is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_detail_reports_drift(engine, store, alice):
    store.workers_table[alice.user_id]["current_workload"] = 2

    detail = await engine.workforce.detail(alice.user_id)

    assert detail.active_tasks == []
    assert detail.workload_in_sync is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_worker(engine):
    with pytest.raises(NotFoundError):
        await engine.workforce.detail("ghost")
    with pytest.raises(NotFoundError):
        await engine.workforce.performance("ghost", TimeRange.ALL, NOW)
