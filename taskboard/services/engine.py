"""Engine container - wires repositories, ledger, lifecycle, matching, workforce queries and sync."""

from typing import Optional

from taskboard.services.lifecycle import Clock, TaskLifecycle, utc_now
from taskboard.services.matching import MatchingEngine
from taskboard.services.memory_store import InMemoryRecordStore
from taskboard.services.realtime_sync import RealtimeSync
from taskboard.services.repositories import ChangeFeed, TaskRepository, WorkerRepository
from taskboard.services.workforce import WorkforceQuery
from taskboard.services.workload_ledger import ReconciliationJob, WorkloadLedger
from taskboard.utils.logging import get_structured_logger
from taskboard.utils.settings import EngineSettings

logger = get_structured_logger(__name__)


class TaskEngine:
    """All engine components over one record store."""

    def __init__(
        self,
        tasks: TaskRepository,
        workers: WorkerRepository,
        feed: ChangeFeed,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or EngineSettings()
        self.store: Optional[InMemoryRecordStore] = None
        self.tasks = tasks
        self.workers = workers
        self.ledger = WorkloadLedger(workers, tasks)
        self.lifecycle = TaskLifecycle(
            tasks,
            workers,
            self.ledger,
            retry_limit=self.settings.transition_retry_limit,
            clock=clock,
        )
        self.matching = MatchingEngine(workers, tasks, self.settings.max_assumed_workload)
        self.workforce = WorkforceQuery(workers, tasks)
        self.sync = RealtimeSync(feed, debounce_seconds=self.settings.sync_debounce_seconds)
        self.reconciliation = ReconciliationJob(self.ledger, self.settings.reconcile_interval_seconds)

    @classmethod
    async def from_supabase(cls, settings: Optional[EngineSettings] = None) -> "TaskEngine":
        """Build an engine backed by the configured Supabase project."""
        from taskboard.services.supabase_client import (
            SupabaseChangeFeed,
            SupabaseTaskRepository,
            SupabaseWorkerRepository,
            create_supabase_client,
        )

        settings = settings or EngineSettings.from_env()
        client = await create_supabase_client(settings)
        logger.info("Task engine initialized", store="supabase")
        return cls(
            SupabaseTaskRepository(client),
            SupabaseWorkerRepository(client),
            SupabaseChangeFeed(client),
            settings=settings,
        )

    @classmethod
    def in_memory(
        cls,
        store: Optional[InMemoryRecordStore] = None,
        settings: Optional[EngineSettings] = None,
        clock: Clock = utc_now,
    ) -> "TaskEngine":
        """Build an engine over an in-memory store (local runs and tests)."""
        store = store or InMemoryRecordStore()
        engine = cls(store.tasks, store.workers, store.feed, settings=settings, clock=clock)
        engine.store = store
        return engine

    async def close(self) -> None:
        await self.reconciliation.stop()
        await self.sync.close()
