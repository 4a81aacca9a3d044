"""
Stuck sync job detection and cleanup.

A job stuck in pending/running usually means a crashed or hung worker. Two
thresholds apply:

- soft: no progress for longer than the soft threshold. Running jobs are
  failed; pending jobs that never started, or jobs already asked to cancel,
  are cancelled.
- hard: older than the hard threshold since creation. Always failed, even if
  the job is still reporting progress.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.config import settings
from app.features.webinar_sync.domain.models import JobStatus, SyncJob
from app.features.webinar_sync.repository.sync_job_repository import (
    SyncJobRepository,
    minutes_since,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class ReconcileResult:
    cleaned: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"cleaned": list(self.cleaned), "cleaned_count": len(self.cleaned)}


class StuckJobReconciler:
    """Force-resolves sync jobs that stopped making progress."""

    def __init__(
        self,
        job_store: SyncJobRepository,
        soft_threshold_minutes: int | None = None,
        hard_threshold_minutes: int | None = None,
    ):
        self._job_store = job_store
        self.soft_threshold_minutes = (
            soft_threshold_minutes
            if soft_threshold_minutes is not None
            else settings.SYNC_STUCK_SOFT_THRESHOLD_MINUTES
        )
        self.hard_threshold_minutes = (
            hard_threshold_minutes
            if hard_threshold_minutes is not None
            else settings.SYNC_STUCK_HARD_THRESHOLD_MINUTES
        )
        if self.hard_threshold_minutes <= self.soft_threshold_minutes:
            raise ValueError("hard stuck threshold must be greater than the soft threshold")

    def classify(self, job: SyncJob, now: datetime) -> tuple[JobStatus, str] | None:
        """Terminal status and reason for a stuck job, or None if it is healthy."""
        age = minutes_since(job.created_at, now)
        if age > self.hard_threshold_minutes:
            return (
                JobStatus.FAILED,
                f"Sync cleared due to timeout: exceeded maximum runtime of "
                f"{self.hard_threshold_minutes} minutes",
            )

        idle = minutes_since(job.last_activity_at, now)
        if idle <= self.soft_threshold_minutes:
            return None

        if job.metadata.get("cancel_requested"):
            return JobStatus.CANCELLED, "Sync cancelled: worker stopped before acknowledging cancellation"
        if job.status == JobStatus.PENDING.value and job.started_at is None:
            return JobStatus.CANCELLED, f"Sync never started within {self.soft_threshold_minutes} minutes"
        return (
            JobStatus.FAILED,
            f"Sync cleared due to timeout: no progress for {idle:.0f} minutes",
        )

    async def reconcile(self, connection_id: str | None = None) -> ReconcileResult:
        """
        Clean stuck jobs for one connection, or all connections.

        Safe to call repeatedly; with nothing stuck it does nothing.
        """
        now = datetime.now(UTC)
        result = ReconcileResult()

        for job in await self._job_store.list_active(connection_id):
            verdict = self.classify(job, now)
            if verdict is None:
                continue

            outcome, reason = verdict
            finalized = await self._job_store.finalize(
                job.id,
                outcome,
                reason,
                metadata={"reconciled_at": now.isoformat(), "reconciled_from": job.status},
            )
            if finalized:
                result.cleaned.append(job.id)
                logger.warning(
                    "Stuck sync job cleaned",
                    job_id=job.id,
                    connection_id=job.connection_id,
                    previous_status=job.status,
                    outcome=outcome.value,
                    reason=reason,
                )

        if result.cleaned:
            logger.info(
                "Stuck job reconciliation finished",
                connection_id=connection_id,
                cleaned_count=len(result.cleaned),
            )
        return result
