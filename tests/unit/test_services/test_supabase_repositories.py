"""Tests for the Supabase-backed repositories and change feed."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from supabase import PostgrestAPIError

from taskboard.models.events import ChangeKind, ConnectionState
from taskboard.models.task import TaskStatus
from taskboard.services.supabase_client import (
    SupabaseChangeFeed,
    SupabaseTaskRepository,
    SupabaseWorkerRepository,
    _parse_realtime_payload,
    create_supabase_client,
)
from taskboard.utils.errors import ConfigurationError, StoreError
from taskboard.utils.settings import EngineSettings
from tests.utils.factories import create_task_data
from tests.utils.helpers import make_query, make_supabase_client


def task_row(**overrides):
    row = create_task_data(**overrides)
    row["task_required_skills"] = [{"skill": "Python"}, {"skill": "SQL"}]
    row["required_skills"] = ["legacy"]
    row["complexity_multiplier"] = 1.0
    return row


def missing_function_error():
    return PostgrestAPIError({
        "message": "Could not find the function public.adjust_worker_ledger in the schema cache",
        "code": "PGRST202",
        "hint": None,
        "details": None,
    })


def employee_row(user_id="u1", **overrides):
    row = {
        "id": "p1",
        "user_id": user_id,
        "employee_skills": [{"skill": "Go"}],
        "skills": ["ignored"],
        "department": "Engineering",
        "availability": True,
        "current_workload": 2,
        "performance_score": 0.75,
        "tasks_completed": 1,
        "hourly_rate": 0,
    }
    row.update(overrides)
    return row


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_supabase_client_requires_credentials():
    with pytest.raises(ConfigurationError):
        await create_supabase_client(EngineSettings())


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_supabase_client(test_settings):
    with patch("taskboard.services.supabase_client.acreate_client", new_callable=AsyncMock) as mock_create:
        client = await create_supabase_client(test_settings)

    assert client is mock_create.return_value
    assert mock_create.call_args[0][:2] == ("https://test.supabase.co", "test-key")


@pytest.mark.unit
class TestTaskRepository:
    """Tests for SupabaseTaskRepository."""

    @pytest.mark.asyncio
    async def test_get_hydrates_required_skills(self):
        row = task_row()
        tasks = make_query([row])
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": tasks}))

        task = await repo.get(row["id"])

        assert task.id == row["id"]
        assert task.required_skills == ["Python", "SQL"]
        tasks.select.assert_called_with("*, task_required_skills(skill)")
        tasks.eq.assert_any_call("id", row["id"])

    @pytest.mark.asyncio
    async def test_get_missing(self):
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": make_query([])}))
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_update_is_conditional(self):
        row = task_row(status="accepted", assigned_to="w1")
        tasks = make_query([row])
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": tasks}))

        task = await repo.update(
            row["id"],
            {"status": "accepted"},
            expected_status=[TaskStatus.INVITED],
            expected_assignee="w1",
        )

        assert task.status == TaskStatus.ACCEPTED
        tasks.update.assert_called_once_with({"status": "accepted"})
        tasks.in_.assert_called_once_with("status", ["invited"])
        tasks.eq.assert_any_call("assigned_to", "w1")

    @pytest.mark.asyncio
    async def test_update_lost_race_returns_none(self):
        tasks = make_query([])
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": tasks}))

        assert await repo.update("t1", {"status": "accepted"}, expected_status=["invited"]) is None
        tasks.select.assert_not_called()

    @pytest.mark.asyncio
    async def test_errors_become_store_errors(self):
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": make_query(error=RuntimeError("boom"))}))

        with pytest.raises(StoreError, match="boom"):
            await repo.list_tasks(status="pending")

    @pytest.mark.asyncio
    async def test_insert_without_data(self):
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": make_query([])}))

        with pytest.raises(StoreError, match="no data returned"):
            await repo.insert(create_task_data())

    @pytest.mark.asyncio
    async def test_count_active_by_assignee(self):
        tasks = make_query([{"assigned_to": "a"}, {"assigned_to": "a"}, {"assigned_to": "b"}])
        repo = SupabaseTaskRepository(make_supabase_client({"tasks": tasks}))

        assert await repo.count_active_by_assignee() == {"a": 2, "b": 1}
        statuses = tasks.in_.call_args[0][1]
        assert sorted(statuses) == ["accepted", "invited", "ongoing"]
        tasks.is_.assert_called_once_with("assigned_to", "null")

    @pytest.mark.asyncio
    async def test_set_required_skills_replaces_rows(self):
        skills = make_query([])
        repo = SupabaseTaskRepository(make_supabase_client({"task_required_skills": skills}))

        await repo.set_required_skills("t1", ["Python ", "SQL"])

        skills.delete.assert_called_once()
        skills.insert.assert_called_once_with([
            {"task_id": "t1", "skill": "Python"},
            {"task_id": "t1", "skill": "SQL"},
        ])

    @pytest.mark.asyncio
    async def test_set_required_skills_empty_only_deletes(self):
        skills = make_query([])
        repo = SupabaseTaskRepository(make_supabase_client({"task_required_skills": skills}))

        await repo.set_required_skills("t1", [])

        skills.insert.assert_not_called()


@pytest.mark.unit
class TestWorkerRepository:
    """Tests for SupabaseWorkerRepository."""

    @pytest.mark.asyncio
    async def test_get_merges_profile_and_skills(self):
        client = make_supabase_client({
            "employee_profiles": make_query([employee_row()]),
            "profiles": make_query([{"id": "u1", "full_name": "Ana Ruiz", "email": "ana@example.com"}]),
        })

        worker = await SupabaseWorkerRepository(client).get("u1")

        assert worker.user_id == "u1"
        assert worker.profile_id == "p1"
        assert worker.full_name == "Ana Ruiz"
        assert worker.skills == ["Go"]
        assert worker.current_workload == 2
        assert worker.hourly_rate is None

    @pytest.mark.asyncio
    async def test_list_available_only(self):
        profiles = make_query([employee_row()])
        client = make_supabase_client({"employee_profiles": profiles})

        workers = await SupabaseWorkerRepository(client).list_workers(available_only=True)

        assert [w.user_id for w in workers] == ["u1"]
        profiles.eq.assert_called_once_with("availability", True)

    @pytest.mark.asyncio
    async def test_search_by_name_without_matches(self):
        people = make_query([])
        employees = make_query([employee_row()])
        client = make_supabase_client({"profiles": people, "employee_profiles": employees})

        assert await SupabaseWorkerRepository(client).search_by_name("zed") == []
        people.ilike.assert_called_once_with("full_name", "%zed%")
        employees.select.assert_not_called()

    @pytest.mark.asyncio
    async def test_increment_counters_uses_rpc(self):
        employees = make_query([employee_row(current_workload=3)])
        client = make_supabase_client({"employee_profiles": employees})

        worker = await SupabaseWorkerRepository(client).increment_counters("u1", 1)

        client.rpc.assert_called_once_with(
            "adjust_worker_ledger",
            {"p_user_id": "u1", "p_workload_delta": 1, "p_completed_delta": 0},
        )
        employees.update.assert_not_called()
        assert worker.current_workload == 3

    @pytest.mark.asyncio
    async def test_increment_counters_falls_back_without_rpc(self):
        employees = make_query([employee_row(current_workload=2, tasks_completed=1)])
        client = make_supabase_client({"employee_profiles": employees})
        client.rpc = MagicMock(return_value=make_query(error=missing_function_error()))

        await SupabaseWorkerRepository(client).increment_counters("u1", -1, completed_delta=1)

        employees.update.assert_called_once_with({"current_workload": 1, "tasks_completed": 2})

    @pytest.mark.asyncio
    async def test_fallback_clamps_at_zero(self):
        employees = make_query([employee_row(current_workload=0, tasks_completed=0)])
        client = make_supabase_client({"employee_profiles": employees})
        client.rpc = MagicMock(return_value=make_query(error=missing_function_error()))

        await SupabaseWorkerRepository(client).increment_counters("u1", -1)

        employees.update.assert_called_once_with({"current_workload": 0, "tasks_completed": 0})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        TimeoutError("read timed out"),
        PostgrestAPIError({"message": "canceling statement", "code": "57014", "hint": None, "details": None}),
    ])
    async def test_transient_rpc_failure_is_not_reapplied(self, error):
        employees = make_query([employee_row(current_workload=2)])
        client = make_supabase_client({"employee_profiles": employees})
        client.rpc = MagicMock(return_value=make_query(error=error))

        with pytest.raises(StoreError, match="Failed to adjust worker counters"):
            await SupabaseWorkerRepository(client).increment_counters("u1", 1)

        employees.select.assert_not_called()
        employees.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_fallback_unknown_worker(self):
        client = make_supabase_client({"employee_profiles": make_query([])})
        client.rpc = MagicMock(return_value=make_query(error=missing_function_error()))

        with pytest.raises(StoreError, match="not found"):
            await SupabaseWorkerRepository(client).increment_counters("ghost", 1)

    @pytest.mark.asyncio
    async def test_set_workload(self):
        employees = make_query([employee_row(current_workload=4)])
        client = make_supabase_client({"employee_profiles": employees})

        await SupabaseWorkerRepository(client).set_workload("u1", -2)

        employees.update.assert_called_once_with({"current_workload": 0})


@pytest.mark.unit
class TestRealtimePayloads:
    """Tests for postgres_changes payload normalization."""

    def test_nested_payload(self):
        payload = {"data": {
            "type": "UPDATE",
            "record": {"id": "t1", "status": "accepted"},
            "old_record": {"id": "t1", "status": "invited"},
            "commit_timestamp": "2026-10-19T10:00:00Z",
        }}

        kind, new, old, ts = _parse_realtime_payload(payload)

        assert kind is ChangeKind.UPDATE
        assert new["status"] == "accepted"
        assert old["status"] == "invited"
        assert ts == "2026-10-19T10:00:00Z"

    def test_flat_payload(self):
        kind, new, old, ts = _parse_realtime_payload({"eventType": "DELETE", "old": {"id": "t1"}})

        assert kind is ChangeKind.DELETE
        assert new == {}
        assert old == {"id": "t1"}
        assert ts is None

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            _parse_realtime_payload({"type": "TRUNCATE"})


@pytest.mark.unit
class TestChangeFeed:
    """Tests for SupabaseChangeFeed."""

    @pytest.fixture
    def channel(self):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        return channel

    @pytest.fixture
    def client(self, channel):
        client = MagicMock()
        client.channel.return_value = channel
        client.remove_channel = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_open_routes_changes_and_status(self, client, channel):
        on_change, on_status = MagicMock(), MagicMock()
        feed = SupabaseChangeFeed(client)

        handle = await feed.open("taskboard:tasks:1", "tasks", ChangeKind.UPDATE, "assigned_to=eq.u1", on_change, on_status)

        assert handle is channel
        client.channel.assert_called_once_with("taskboard:tasks:1")
        args, kwargs = channel.on_postgres_changes.call_args
        assert args == ("UPDATE",)
        assert kwargs["table"] == "tasks"
        assert kwargs["schema"] == "public"
        assert kwargs["filter"] == "assigned_to=eq.u1"

        kwargs["callback"]({"data": {"type": "UPDATE", "record": {"id": "t1"}, "old_record": {}}})
        on_change.assert_called_once_with(ChangeKind.UPDATE, {"id": "t1"}, {}, None)

        status_callback = channel.subscribe.call_args[0][0]
        status_callback("SUBSCRIBED")
        status_callback(MagicMock(value="CHANNEL_ERROR"), RuntimeError("socket closed"))
        assert on_status.call_args_list[0][0] == (ConnectionState.CONNECTED, None)
        assert on_status.call_args_list[1][0] == (ConnectionState.ERROR, "socket closed")

    @pytest.mark.asyncio
    async def test_malformed_payload_is_ignored(self, client, channel):
        on_change = MagicMock()
        await SupabaseChangeFeed(client).open("c", "tasks", ChangeKind.ALL, None, on_change, MagicMock())

        channel.on_postgres_changes.call_args[1]["callback"]({"data": {"type": "BOGUS"}})

        on_change.assert_not_called()

    @pytest.mark.asyncio
    async def test_subscribe_failure(self, client, channel):
        channel.subscribe.side_effect = RuntimeError("no socket")

        with pytest.raises(StoreError, match="no socket"):
            await SupabaseChangeFeed(client).open("c", "tasks", ChangeKind.ALL, None, MagicMock(), MagicMock())

    @pytest.mark.asyncio
    async def test_close_removes_channel(self, client, channel):
        await SupabaseChangeFeed(client).close(channel)
        client.remove_channel.assert_awaited_once_with(channel)
