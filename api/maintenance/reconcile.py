"""Workload reconciliation endpoint (can be called via Vercel cron)."""

import json
import asyncio

from taskboard.services.engine import TaskEngine
from taskboard.utils.errors import TaskboardError
from taskboard.utils.logging import correlation_context, get_structured_logger, setup_logging

setup_logging()
logger = get_structured_logger(__name__)


async def run_reconciliation(engine: TaskEngine, worker_ids=None) -> dict:
    entries = await engine.ledger.reconcile(worker_ids)
    return {
        "ok": True,
        "checked": len(entries),
        "corrected": [e.model_dump() for e in entries if e.corrected],
    }


async def _reconcile_once(worker_ids=None) -> dict:
    engine = await TaskEngine.from_supabase()
    try:
        return await run_reconciliation(engine, worker_ids)
    finally:
        await engine.close()


def handler(request):
    """
    Recount active tasks per worker and fix drifted workload counters.

    Optional query parameter ``worker_ids`` (comma separated) narrows the pass.
    """
    with correlation_context():
        query_params = request.get("query", {}) or {}
        worker_ids = query_params.get("worker_ids")
        if worker_ids:
            worker_ids = [w.strip() for w in worker_ids.split(",") if w.strip()]

        try:
            summary = asyncio.run(_reconcile_once(worker_ids or None))
        except TaskboardError as e:
            logger.error("Reconciliation failed", error_code=e.code, error=str(e))
            return {
                "statusCode": 500,
                "headers": {"Content-Type": "application/json"},
                "body": json.dumps({"error": str(e), "code": e.code})
            }

        return {
            "statusCode": 200,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(summary)
        }
