"""Supabase-backed record store: client factory, repositories and realtime change feed."""

from typing import Any, Iterable, Optional

from supabase import AsyncClient, PostgrestAPIError, acreate_client
from supabase.lib.client_options import AsyncClientOptions

from taskboard.models.events import ChangeKind, ConnectionState
from taskboard.models.task import ACTIVE_STATUSES, Task, TaskPriority, TaskStatus, TaskUpdate
from taskboard.models.worker import WorkerProfile
from taskboard.services.repositories import (
    ChangeCallback,
    ChangeFeed,
    StatusCallback,
    TaskRepository,
    WorkerRepository,
)
from taskboard.utils.errors import StoreError
from taskboard.utils.logging import get_structured_logger, log_timing, mask_user_id
from taskboard.utils.settings import EngineSettings

logger = get_structured_logger(__name__)

TASK_SELECT = "*, task_required_skills(skill)"
WORKER_SELECT = "*, employee_skills(skill)"

# PostgREST "function not in schema cache" and Postgres undefined_function
MISSING_FUNCTION_CODES = {"PGRST202", "42883"}


async def create_supabase_client(settings: EngineSettings) -> AsyncClient:
    """Create an async Supabase client for the configured project."""
    url, key = settings.require_supabase()

    options = AsyncClientOptions(
        auto_refresh_token=False,
        persist_session=False,
    )
    client = await acreate_client(url, key, options)
    logger.info("Supabase client initialized", supabase_url=url)
    return client


def _task_from_row(row: dict[str, Any]) -> Task:
    row = dict(row)
    skills = row.pop("task_required_skills", None) or []
    # Legacy array column superseded by task_required_skills
    row.pop("required_skills", None)
    row.pop("complexity_multiplier", None)
    return Task(**row, required_skills=[s["skill"] for s in skills])


class SupabaseTaskRepository(TaskRepository):
    def __init__(self, client: AsyncClient):
        self.client = client

    async def insert(self, record: dict[str, Any]) -> Task:
        try:
            result = await self.client.table("tasks").insert(record).execute()
        except Exception as e:
            raise StoreError(f"Failed to create task: {e}") from e
        if result.data and len(result.data) > 0:
            return _task_from_row(result.data[0])
        raise StoreError("Failed to create task: no data returned")

    async def get(self, task_id: str) -> Optional[Task]:
        try:
            result = await self.client.table("tasks").select(TASK_SELECT).eq("id", task_id).limit(1).execute()
        except Exception as e:
            raise StoreError(f"Failed to get task: {e}") from e
        return _task_from_row(result.data[0]) if result.data else None

    async def update(
        self,
        task_id: str,
        fields: dict[str, Any],
        expected_status: Optional[Iterable[TaskStatus]] = None,
        expected_assignee: Optional[str] = None,
    ) -> Optional[Task]:
        try:
            query = self.client.table("tasks").update(fields).eq("id", task_id)
            if expected_status is not None:
                query = query.in_("status", [TaskStatus(s).value for s in expected_status])
            if expected_assignee is not None:
                query = query.eq("assigned_to", expected_assignee)
            result = await query.execute()
        except Exception as e:
            raise StoreError(f"Failed to update task {task_id}: {e}") from e
        if not result.data:
            return None
        # The update response carries no embedded skills; re-read the full row
        return await self.get(task_id)

    async def delete(self, task_id: str) -> bool:
        try:
            result = await self.client.table("tasks").delete().eq("id", task_id).execute()
        except Exception as e:
            raise StoreError(f"Failed to delete task: {e}") from e
        return bool(result.data)

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        assigned_to: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        try:
            query = self.client.table("tasks").select(TASK_SELECT).order("created_at", desc=True)
            if status is not None:
                query = query.eq("status", TaskStatus(status).value)
            if priority is not None:
                query = query.eq("priority", TaskPriority(priority).value)
            if assigned_to is not None:
                query = query.eq("assigned_to", assigned_to)
            if limit is not None:
                query = query.limit(limit)
            result = await query.execute()
        except Exception as e:
            raise StoreError(f"Database error while fetching tasks: {e}") from e
        return [_task_from_row(r) for r in result.data or []]

    async def count_active_by_assignee(self) -> dict[str, int]:
        try:
            result = await (
                self.client.table("tasks")
                .select("assigned_to")
                .in_("status", [s.value for s in ACTIVE_STATUSES])
                .not_.is_("assigned_to", "null")
                .execute()
            )
        except Exception as e:
            raise StoreError(f"Failed to count active tasks: {e}") from e

        counts: dict[str, int] = {}
        for row in result.data or []:
            counts[row["assigned_to"]] = counts.get(row["assigned_to"], 0) + 1
        return counts

    async def set_required_skills(self, task_id: str, skills: list[str]) -> None:
        """Replace the task's skills (delete then insert)."""
        try:
            await self.client.table("task_required_skills").delete().eq("task_id", task_id).execute()
            if skills:
                await self.client.table("task_required_skills").insert(
                    [{"task_id": task_id, "skill": s.strip()} for s in skills]
                ).execute()
        except Exception as e:
            raise StoreError(f"Failed to set required skills: {e}") from e

    async def append_update(self, record: dict[str, Any]) -> TaskUpdate:
        try:
            result = await self.client.table("task_updates").insert(record).execute()
        except Exception as e:
            raise StoreError(f"Failed to add update: {e}") from e
        if result.data and len(result.data) > 0:
            return TaskUpdate(**result.data[0])
        raise StoreError("Failed to add update: no data returned")

    async def recent_updates(self, task_id: str, limit: int = 5) -> list[TaskUpdate]:
        try:
            result = await (
                self.client.table("task_updates")
                .select("*")
                .eq("task_id", task_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            raise StoreError(f"Failed to get task updates: {e}") from e
        return [TaskUpdate(**r) for r in result.data or []]


class SupabaseWorkerRepository(WorkerRepository):
    """employee_profiles + employee_skills + profiles, merged into WorkerProfile."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def _hydrate(self, rows: list[dict[str, Any]]) -> list[WorkerProfile]:
        if not rows:
            return []
        user_ids = [r["user_id"] for r in rows]
        try:
            result = await self.client.table("profiles").select("id, full_name, email").in_("id", user_ids).execute()
        except Exception as e:
            raise StoreError(f"Failed to fetch employee profiles: {e}") from e
        people = {p["id"]: p for p in result.data or []}

        workers = []
        for row in rows:
            person = people.get(row["user_id"], {})
            skills = [s["skill"] for s in row.get("employee_skills") or []]
            workers.append(WorkerProfile(
                user_id=row["user_id"],
                profile_id=row.get("id"),
                full_name=person.get("full_name"),
                email=person.get("email"),
                skills=skills or row.get("skills") or [],
                department=row.get("department"),
                designation=row.get("designation"),
                availability=row.get("availability", True),
                current_workload=row.get("current_workload"),
                performance_score=row.get("performance_score"),
                tasks_completed=row.get("tasks_completed"),
                hourly_rate=row.get("hourly_rate"),
            ))
        return workers

    async def get(self, user_id: str) -> Optional[WorkerProfile]:
        try:
            result = await (
                self.client.table("employee_profiles").select(WORKER_SELECT).eq("user_id", user_id).limit(1).execute()
            )
        except Exception as e:
            raise StoreError(f"Failed to get employee profile: {e}") from e
        workers = await self._hydrate(result.data or [])
        return workers[0] if workers else None

    async def list_workers(self, available_only: bool = False) -> list[WorkerProfile]:
        try:
            query = self.client.table("employee_profiles").select(WORKER_SELECT)
            if available_only:
                query = query.eq("availability", True)
            result = await query.execute()
        except Exception as e:
            raise StoreError(f"Database error while searching employees: {e}") from e
        return await self._hydrate(result.data or [])

    async def search_by_name(self, fragment: str, limit: int = 5) -> list[WorkerProfile]:
        try:
            people = await (
                self.client.table("profiles").select("id").ilike("full_name", f"%{fragment}%").limit(limit).execute()
            )
            ids = [p["id"] for p in people.data or []]
            if not ids:
                return []
            result = await self.client.table("employee_profiles").select(WORKER_SELECT).in_("user_id", ids).execute()
        except Exception as e:
            raise StoreError(f"Failed to search employees: {e}") from e
        return await self._hydrate(result.data or [])

    async def increment_counters(
        self,
        user_id: str,
        workload_delta: int,
        completed_delta: int = 0,
    ) -> WorkerProfile:
        """Atomic adjustment via the adjust_worker_ledger function.

        Falls back to read-modify-write only when the function is not
        installed. Any other RPC failure may already have been applied on the
        server, so it is raised as StoreError instead of being retried.
        """
        params = {
            "p_user_id": user_id,
            "p_workload_delta": workload_delta,
            "p_completed_delta": completed_delta,
        }
        try:
            with log_timing("adjust_worker_ledger_rpc", logger=logger, worker_id=mask_user_id(user_id)):
                await self.client.rpc("adjust_worker_ledger", params).execute()
        except PostgrestAPIError as e:
            if e.code not in MISSING_FUNCTION_CODES:
                raise StoreError(f"Failed to adjust worker counters: {e.message}") from e
            logger.warning(
                "adjust_worker_ledger function missing, falling back to read-modify-write",
                worker_id=mask_user_id(user_id),
                error_code=e.code,
            )
            await self._increment_without_rpc(user_id, workload_delta, completed_delta)
        except Exception as e:
            raise StoreError(f"Failed to adjust worker counters: {e}") from e

        worker = await self.get(user_id)
        if worker is None:
            raise StoreError(f"Worker profile not found: {user_id}")
        return worker

    async def _increment_without_rpc(self, user_id: str, workload_delta: int, completed_delta: int) -> None:
        try:
            current = await (
                self.client.table("employee_profiles")
                .select("current_workload, tasks_completed")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
            if not current.data:
                raise StoreError(f"Worker profile not found: {user_id}")
            row = current.data[0]
            await self.client.table("employee_profiles").update({
                "current_workload": max(0, (row.get("current_workload") or 0) + workload_delta),
                "tasks_completed": max(0, (row.get("tasks_completed") or 0) + completed_delta),
            }).eq("user_id", user_id).execute()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to adjust worker counters: {e}") from e

    async def set_workload(self, user_id: str, value: int) -> WorkerProfile:
        try:
            result = await self.client.table("employee_profiles").update(
                {"current_workload": max(0, value)}
            ).eq("user_id", user_id).execute()
        except Exception as e:
            raise StoreError(f"Failed to set workload: {e}") from e
        if not result.data:
            raise StoreError(f"Worker profile not found: {user_id}")
        worker = await self.get(user_id)
        if worker is None:
            raise StoreError(f"Worker profile not found: {user_id}")
        return worker


def _parse_realtime_payload(payload: dict[str, Any]) -> tuple[ChangeKind, dict, dict, Optional[str]]:
    """Normalize a postgres_changes payload to (kind, new, old, commit_timestamp)."""
    data = payload.get("data", payload)
    kind = data.get("type") or data.get("eventType")
    new = data.get("record") or data.get("new") or {}
    old = data.get("old_record") or data.get("old") or {}
    return ChangeKind(kind), new, old, data.get("commit_timestamp")


_SUBSCRIBE_STATES = {
    "SUBSCRIBED": ConnectionState.CONNECTED,
    "CLOSED": ConnectionState.DISCONNECTED,
    "CHANNEL_ERROR": ConnectionState.ERROR,
    "TIMED_OUT": ConnectionState.ERROR,
}


class SupabaseChangeFeed(ChangeFeed):
    """Change notifications from Supabase Realtime postgres_changes."""

    def __init__(self, client: AsyncClient, schema: str = "public"):
        self.client = client
        self.schema = schema

    async def open(
        self,
        name: str,
        table: str,
        kind: ChangeKind,
        row_filter: Optional[str],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> Any:
        def handle_change(payload: dict[str, Any]) -> None:
            try:
                change_kind, new, old, commit_timestamp = _parse_realtime_payload(payload)
            except (ValueError, AttributeError) as e:
                logger.warning("Ignoring malformed realtime payload", channel=name, error=str(e))
                return
            on_change(change_kind, new, old, commit_timestamp)

        def handle_status(status: Any, error: Optional[Exception] = None) -> None:
            state = _SUBSCRIBE_STATES.get(getattr(status, "value", str(status)), ConnectionState.ERROR)
            on_status(state, str(error) if error else None)

        channel = self.client.channel(name)
        channel.on_postgres_changes(
            kind.value,
            callback=handle_change,
            table=table,
            schema=self.schema,
            filter=row_filter,
        )
        try:
            await channel.subscribe(handle_status)
        except Exception as e:
            raise StoreError(f"Failed to subscribe to {table} changes: {e}") from e
        return channel

    async def close(self, handle: Any) -> None:
        try:
            await self.client.remove_channel(handle)
        except Exception as e:
            raise StoreError(f"Failed to remove realtime channel: {e}") from e
