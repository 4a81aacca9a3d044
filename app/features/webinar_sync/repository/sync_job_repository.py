"""
Persistence and state transitions for webinar sync jobs.

State machine: pending → running → completed | failed | cancelled. Every
transition is a guarded UPDATE that only touches rows still in an active
status, so a terminal job is never reopened. Writes are last-write-wins;
the orchestrator serializes writes per job.
"""

from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.config import settings
from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from app.features.webinar_sync.domain.errors import AlreadyRunning
from app.features.webinar_sync.domain.models import (
    ACTIVE_JOB_STATUSES,
    JobKind,
    JobStatus,
    SyncJob,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500


def minutes_since(moment: datetime | None, now: datetime | None = None) -> float:
    if moment is None:
        return 0.0
    now = now or datetime.now(UTC)
    return max((now - moment).total_seconds() / 60.0, 0.0)


class SyncJobRepository:
    """Job store backing the sync orchestrator, reconciler and status API."""

    JOB_SELECT_COLUMNS = """
        id, connection_id, kind, status, created_at, started_at, completed_at,
        updated_at, total_items, processed_items, stage, current_item_index,
        error_message, metadata
    """

    def __init__(self, stuck_threshold_minutes: int | None = None):
        self.stuck_threshold_minutes = (
            stuck_threshold_minutes
            if stuck_threshold_minutes is not None
            else settings.SYNC_STUCK_SOFT_THRESHOLD_MINUTES
        )

    @staticmethod
    def _row_to_job(row: dict | None) -> SyncJob | None:
        if not row:
            return None

        return SyncJob(
            id=str(row["id"]),
            connection_id=str(row["connection_id"]),
            kind=row["kind"],
            status=row["status"],
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            updated_at=row.get("updated_at"),
            total_items=row.get("total_items") or 0,
            processed_items=row.get("processed_items") or 0,
            stage=row.get("stage"),
            current_item_index=row.get("current_item_index") or 0,
            error_message=row.get("error_message"),
            metadata=row.get("metadata") or {},
        )

    @with_db_retry()
    async def find_active(self, connection_id: str) -> SyncJob | None:
        """Return the pending/running job for a connection, if any."""
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM webinar_sync_jobs
            WHERE connection_id = %s AND status = ANY(%s)
            ORDER BY created_at DESC
            LIMIT 1
        """
        row = await fetch_one(query, (connection_id, list(ACTIVE_JOB_STATUSES)))
        return self._row_to_job(row)

    async def create(
        self,
        connection_id: str,
        kind: JobKind | str,
        metadata: dict[str, Any] | None = None,
    ) -> SyncJob:
        """
        Insert a pending job, enforcing one active job per connection.

        Raises:
            AlreadyRunning: an active job has shown activity within the stuck threshold
        """
        kind_value = JobKind(kind).value

        active = await self.find_active(connection_id)
        if active:
            idle_minutes = minutes_since(active.last_activity_at)
            if idle_minutes <= self.stuck_threshold_minutes:
                raise AlreadyRunning(active.id, idle_minutes)

            logger.warning(
                "Superseding stale sync job",
                job_id=active.id,
                connection_id=connection_id,
                idle_minutes=round(idle_minutes, 1),
            )
            await self.finalize(
                active.id,
                JobStatus.FAILED,
                f"Sync cleared due to timeout: superseded after {idle_minutes:.0f} minutes without progress",
            )

        insert_query = f"""
            INSERT INTO webinar_sync_jobs (
                connection_id, kind, status, stage, metadata, updated_at
            )
            SELECT %s, %s, 'pending', 'queued', %s, NOW()
            WHERE NOT EXISTS (
                SELECT 1 FROM webinar_sync_jobs
                WHERE connection_id = %s AND status IN ('pending', 'running')
            )
            RETURNING {self.JOB_SELECT_COLUMNS}
        """

        try:
            row = await fetch_one(
                insert_query, (connection_id, kind_value, Jsonb(metadata or {}), connection_id)
            )
        except DatabaseError as e:
            # webinar_sync_jobs_one_active_per_connection: a concurrent insert committed first
            if e.is_unique_violation:
                await self._raise_already_running(connection_id, e)
            raise

        if not row:
            # An active job appeared between find_active and the insert
            await self._raise_already_running(connection_id)

        job = self._row_to_job(row)
        logger.info("Sync job created", job_id=job.id, connection_id=connection_id, kind=kind_value)
        return job

    async def _raise_already_running(self, connection_id: str, cause: Exception | None = None) -> None:
        winner = await self.find_active(connection_id)
        raise AlreadyRunning(winner.id if winner else "unknown", 0.0) from cause

    @with_db_retry()
    async def load_job(self, job_id: str) -> SyncJob | None:
        query = f"SELECT {self.JOB_SELECT_COLUMNS} FROM webinar_sync_jobs WHERE id = %s"
        return self._row_to_job(await fetch_one(query, (job_id,)))

    @with_db_retry()
    async def mark_running(self, job_id: str) -> bool:
        """Move a pending job to running. False if it is no longer pending."""
        query = """
            UPDATE webinar_sync_jobs
            SET status = 'running',
                started_at = COALESCE(started_at, NOW()),
                stage = 'starting',
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
        """
        updated = await execute_query(query, (job_id,))
        if updated:
            logger.info("Sync job running", job_id=job_id)
        return updated > 0

    @with_db_retry()
    async def update_progress(
        self,
        job_id: str,
        processed: int,
        total: int,
        stage: str,
        *,
        current_item_index: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record progress on an active job.

        processed_items never decreases; metadata keys are merged into the
        stored map rather than replacing it.
        """
        query = """
            UPDATE webinar_sync_jobs
            SET processed_items = GREATEST(processed_items, %s),
                total_items = GREATEST(%s, processed_items, %s),
                stage = %s,
                current_item_index = COALESCE(%s::int, current_item_index),
                metadata = COALESCE(metadata, '{}'::jsonb) || %s,
                updated_at = NOW()
            WHERE id = %s AND status = ANY(%s)
        """
        updated = await execute_query(
            query,
            (
                processed,
                total,
                processed,
                stage,
                current_item_index,
                Jsonb(metadata or {}),
                job_id,
                list(ACTIVE_JOB_STATUSES),
            ),
        )
        return updated > 0

    @with_db_retry()
    async def finalize(
        self,
        job_id: str,
        outcome: JobStatus | str,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move an active job to a terminal status.

        Returns False when the job was already terminal (for example the
        reconciler got there first); the stored outcome is left alone.
        """
        outcome = JobStatus(outcome)
        if outcome.is_active:
            raise ValueError(f"{outcome.value} is not a terminal status")

        truncated_error = error[:MAX_ERROR_LENGTH] if error else None
        query = """
            UPDATE webinar_sync_jobs
            SET status = %s,
                completed_at = NOW(),
                updated_at = NOW(),
                stage = %s,
                error_message = %s,
                metadata = COALESCE(metadata, '{}'::jsonb) || %s
            WHERE id = %s AND status = ANY(%s)
        """
        updated = await execute_query(
            query,
            (
                outcome.value,
                outcome.value,
                truncated_error,
                Jsonb(metadata or {}),
                job_id,
                list(ACTIVE_JOB_STATUSES),
            ),
        )

        if not updated:
            logger.warning("Sync job already terminal, finalize skipped", job_id=job_id, outcome=outcome.value)
            return False

        if outcome is JobStatus.FAILED:
            logger.warning("Sync job failed", job_id=job_id, error=truncated_error)
        else:
            logger.info("Sync job finalized", job_id=job_id, outcome=outcome.value)
        return True

    @with_db_retry()
    async def list_recent(self, connection_id: str, limit: int = 10) -> list[SyncJob]:
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM webinar_sync_jobs
            WHERE connection_id = %s
            ORDER BY created_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (connection_id, max(1, min(limit, 100))))
        return [self._row_to_job(row) for row in rows]

    @with_db_retry()
    async def list_active(self, connection_id: str | None = None) -> list[SyncJob]:
        """Active jobs for one connection, or for every connection."""
        if connection_id:
            query = f"""
                SELECT {self.JOB_SELECT_COLUMNS} FROM webinar_sync_jobs
                WHERE connection_id = %s AND status = ANY(%s)
                ORDER BY created_at
            """
            params: tuple = (connection_id, list(ACTIVE_JOB_STATUSES))
        else:
            query = f"""
                SELECT {self.JOB_SELECT_COLUMNS} FROM webinar_sync_jobs
                WHERE status = ANY(%s)
                ORDER BY created_at
            """
            params = (list(ACTIVE_JOB_STATUSES),)

        rows = await fetch_all(query, params)
        return [self._row_to_job(row) for row in rows]

    @with_db_retry()
    async def request_cancellation(self, job_id: str) -> bool:
        """Flag an active job for cancellation. Does not count as progress."""
        query = """
            UPDATE webinar_sync_jobs
            SET metadata = COALESCE(metadata, '{}'::jsonb) || '{"cancel_requested": true}'::jsonb
            WHERE id = %s AND status = ANY(%s)
        """
        updated = await execute_query(query, (job_id, list(ACTIVE_JOB_STATUSES)))
        if updated:
            logger.info("Sync job cancellation requested", job_id=job_id)
        return updated > 0

    @with_db_retry()
    async def is_cancel_requested(self, job_id: str) -> bool:
        query = """
            SELECT COALESCE((metadata->>'cancel_requested')::boolean, false)
            FROM webinar_sync_jobs
            WHERE id = %s
        """
        return bool(await fetch_val(query, (job_id,)))
