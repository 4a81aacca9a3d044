"""
Background jobs for the webinar sync feature.

Each job has a run-once function (usable from tests or a cron) and a
scheduler loop for the worker service:

- webinar_sync_scheduler: incremental sync of every active connection
- webinar_metrics_repair: recompute counters that look wrong
- webinar_stuck_job_cleanup: resolve jobs abandoned by crashed workers
- webinar_sync_schema: create missing tables and indexes, then exit
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.db.schema import apply_schema
from app.features.webinar_sync.domain.errors import (
    AlreadyRunning,
    AuthInvalid,
    ConnectionInvalid,
    Fatal,
)
from app.features.webinar_sync.domain.models import JobKind
from app.features.webinar_sync.services.container import SyncServices, build_sync_services
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

MAX_CONCURRENT_SYNCS = 4  # provider limits are per connection, not per app
ERROR_BACKOFF_SECONDS = 60

_services: SyncServices | None = None


class ScheduledSyncMetrics:
    """Outcome counters for one scheduler cycle."""

    def __init__(self):
        self.start_time = datetime.now(UTC)
        self.connections = 0
        self.completed = 0
        self.skipped_running = 0
        self.failed = 0
        self.errors: list[dict] = []

    def record_failure(self, connection_id: str, error: Exception) -> None:
        self.failed += 1
        self.errors.append(
            {"connection_id": connection_id, "error": str(error), "error_type": type(error).__name__}
        )
        logger.warning(
            "Scheduled sync failed",
            connection_id=connection_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    def to_dict(self) -> dict:
        return {
            "job_run": "webinar_sync_scheduler",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(
                (datetime.now(UTC) - self.start_time).total_seconds(), 2
            ),
            "connections": self.connections,
            "completed": self.completed,
            "skipped_running": self.skipped_running,
            "failed": self.failed,
            "errors_count": len(self.errors),
        }


async def get_worker_services() -> SyncServices:
    """Open the pool and Redis once per worker process and build the services."""
    global _services

    if not db_pool.initialized:
        await db_pool.initialize()
    if not fast_redis.initialized:
        try:
            await fast_redis.initialize()
        except RuntimeError as e:
            logger.warning("Worker running without Redis progress telemetry", error=str(e))

    if _services is None:
        _services = build_sync_services(fast_redis)
    return _services


async def _sync_connection(
    services: SyncServices,
    connection_id: str,
    semaphore: asyncio.Semaphore,
    metrics: ScheduledSyncMetrics,
) -> None:
    async with semaphore:
        try:
            await services.orchestrator.start_sync(connection_id, JobKind.INCREMENTAL, wait=True)
            metrics.completed += 1
        except AlreadyRunning as e:
            metrics.skipped_running += 1
            logger.info(
                "Connection already syncing, skipping",
                connection_id=connection_id,
                job_id=e.job_id,
            )
        except (ConnectionInvalid, AuthInvalid, Fatal, DatabaseError) as e:
            metrics.record_failure(connection_id, e)
        except Exception as e:
            logger.exception("Unexpected scheduled sync error", connection_id=connection_id)
            metrics.record_failure(connection_id, e)


async def run_scheduled_sync() -> dict:
    """Run one incremental sync for every active connection."""
    services = await get_worker_services()
    metrics = ScheduledSyncMetrics()

    connection_ids = await services.connections.list_active_connection_ids()
    metrics.connections = len(connection_ids)
    if not connection_ids:
        logger.info("No active webinar connections to sync")
        return metrics.to_dict()

    semaphore = asyncio.Semaphore(MAX_CONCURRENT_SYNCS)
    await asyncio.gather(
        *(
            _sync_connection(services, connection_id, semaphore, metrics)
            for connection_id in connection_ids
        )
    )

    summary = metrics.to_dict()
    logger.info("Scheduled webinar sync finished", **summary)
    return summary


async def run_metrics_repair() -> dict:
    services = await get_worker_services()
    summary = await services.repair.repair_all()
    return {key: value for key, value in summary.items() if key not in ("results", "failures")}


async def run_stuck_job_cleanup() -> dict:
    services = await get_worker_services()
    return (await services.reconciler.reconcile()).to_dict()


async def _run_periodically(
    job_name: str, run_once: Callable[[], Awaitable[dict]], interval_minutes: int
) -> None:
    logger.info("Starting scheduler", job=job_name, interval_minutes=interval_minutes)

    while True:
        try:
            summary = await run_once()
            logger.info("Scheduler cycle completed", job=job_name, **summary)
            await asyncio.sleep(interval_minutes * 60)
        except Exception as e:
            logger.error(
                "Error in scheduler", job=job_name, error=str(e), error_type=type(e).__name__
            )
            # Avoid a tight error loop while storage is down
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def start_webinar_sync_scheduler() -> None:
    await _run_periodically(
        "webinar_sync_scheduler", run_scheduled_sync, settings.SYNC_SCHEDULER_INTERVAL_MINUTES
    )


async def start_metrics_repair_scheduler() -> None:
    await _run_periodically(
        "webinar_metrics_repair", run_metrics_repair, settings.METRICS_REPAIR_INTERVAL_MINUTES
    )


async def start_stuck_job_cleanup_scheduler() -> None:
    await _run_periodically(
        "webinar_stuck_job_cleanup",
        run_stuck_job_cleanup,
        settings.STUCK_JOB_CLEANUP_INTERVAL_MINUTES,
    )


async def run_schema_setup() -> None:
    """One-shot: provision the sync tables on the configured database."""
    if not db_pool.initialized:
        await db_pool.initialize()
    try:
        await apply_schema()
    finally:
        await db_pool.close()
