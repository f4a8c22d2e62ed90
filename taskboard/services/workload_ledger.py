"""Workload ledger - per-worker active assignment counters.

Every adjustment for a given worker goes through that worker's lock and is
applied by a single store call (an atomic RPC on Supabase), so two concurrent
decrements can never collapse into one. The counter is clamped at zero; any
drift the clamp would hide is found and corrected by reconcile().
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from pydantic import BaseModel

from taskboard.models.worker import WorkerProfile
from taskboard.services.repositories import TaskRepository, WorkerRepository
from taskboard.utils.errors import LedgerAdjustmentError, StoreError, TaskboardError
from taskboard.utils.logging import (
    correlation_context,
    get_structured_logger,
    mask_user_id,
    timed,
)

logger = get_structured_logger(__name__)


class ReconciliationEntry(BaseModel):
    """Outcome of reconciling one worker's counter."""
    worker_id: str
    recorded: int
    actual: int
    corrected: bool


class SettlementGate:
    """Shared/exclusive gate between task commits and reconciliation.

    Lifecycle operations hold it shared from their task commit until their
    ledger deltas are applied; reconcile() holds it exclusively, so it never
    counts a committed task whose delta has not landed yet.
    """

    def __init__(self):
        self._condition = asyncio.Condition()
        self._settling = 0
        self._exclusive = False

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._settling += 1
        try:
            yield
        finally:
            async with self._condition:
                self._settling -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._exclusive = True
            await self._condition.wait_for(lambda: self._settling == 0)
        try:
            yield
        finally:
            async with self._condition:
                self._exclusive = False
                self._condition.notify_all()


class WorkloadLedger:
    """Applies signed deltas to worker workload counters."""

    def __init__(self, workers: WorkerRepository, tasks: TaskRepository):
        self.workers = workers
        self.tasks = tasks
        self.gate = SettlementGate()
        self._locks: dict[str, asyncio.Lock] = {}

    def settling(self):
        """Hold while committing a task change and applying its deltas."""
        return self.gate.shared()

    def _lock_for(self, worker_id: str) -> asyncio.Lock:
        lock = self._locks.get(worker_id)
        if lock is None:
            lock = self._locks[worker_id] = asyncio.Lock()
        return lock

    @timed("ledger_adjust")
    async def adjust(self, worker_id: str, delta: int, completed_delta: int = 0) -> WorkerProfile:
        """Apply ``delta`` to current_workload (and ``completed_delta`` to tasks_completed).

        Raises:
            LedgerAdjustmentError: the store rejected the adjustment
        """
        async with self._lock_for(worker_id):
            try:
                profile = await self.workers.increment_counters(worker_id, delta, completed_delta)
            except StoreError as e:
                logger.error(
                    "Workload adjustment failed",
                    worker_id=mask_user_id(worker_id),
                    delta=delta,
                    completed_delta=completed_delta,
                    error=str(e),
                )
                raise LedgerAdjustmentError(
                    f"Failed to adjust workload for worker {worker_id}: {e}",
                    worker_id=worker_id,
                    delta=delta,
                ) from e

        logger.info(
            "Workload adjusted",
            worker_id=mask_user_id(worker_id),
            delta=delta,
            completed_delta=completed_delta,
            current_workload=profile.current_workload,
        )
        return profile

    @timed("ledger_reconcile")
    async def reconcile(self, worker_ids: Optional[Iterable[str]] = None) -> list[ReconciliationEntry]:
        """Recount active tasks and overwrite any counter that drifted.

        Checks every known worker unless ``worker_ids`` narrows the pass.
        Task commits in this process wait until the pass is done, so counts
        and counters are read from the same settled state.
        """
        async with self.gate.exclusive():
            counts = await self.tasks.count_active_by_assignee()
            workers = await self.workers.list_workers()
            if worker_ids is not None:
                wanted = set(worker_ids)
                workers = [w for w in workers if w.user_id in wanted]

            entries = []
            for worker in workers:
                async with self._lock_for(worker.user_id):
                    current = await self.workers.get(worker.user_id)
                    if current is None:
                        continue
                    actual = counts.get(worker.user_id, 0)
                    corrected = current.current_workload != actual
                    if corrected:
                        await self.workers.set_workload(worker.user_id, actual)
                        logger.warning(
                            "Workload drift corrected",
                            worker_id=mask_user_id(worker.user_id),
                            recorded=current.current_workload,
                            actual=actual,
                        )
                entries.append(ReconciliationEntry(
                    worker_id=worker.user_id,
                    recorded=current.current_workload,
                    actual=actual,
                    corrected=corrected,
                ))

        logger.info(
            "Workload reconciliation finished",
            workers_checked=len(entries),
            workers_corrected=sum(1 for e in entries if e.corrected),
        )
        return entries


class ReconciliationJob:
    """Runs WorkloadLedger.reconcile() on a fixed interval."""

    def __init__(self, ledger: WorkloadLedger, interval_seconds: float):
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> list[ReconciliationEntry]:
        with correlation_context():
            return await self.ledger.reconcile()

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except TaskboardError as e:
                logger.error("Scheduled reconciliation failed", error_code=e.code, error=str(e))
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Reconciliation job started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation job stopped")
