"""
Best-effort progress telemetry for running sync jobs.

The latest record per job is kept in Redis for polling UIs. Nothing here may
break a sync: every failure is logged and swallowed.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PROGRESS_KEY_PREFIX = "webinar_sync:progress:"


class KeyValueStore(Protocol):
    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> bool: ...


def estimate_completion(
    started_at: datetime | None,
    processed: int,
    total: int,
    now: datetime | None = None,
) -> datetime | None:
    """Project a finish time from the rate observed so far."""
    if not started_at or processed <= 0 or total <= processed:
        return None
    now = now or datetime.now(UTC)
    elapsed = (now - started_at).total_seconds()
    if elapsed <= 0:
        return None
    remaining = (total - processed) * (elapsed / processed)
    return now + timedelta(seconds=remaining)


class ProgressReporter:
    """Publishes the latest progress record per job id."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int | None = None):
        self._store = store
        self._ttl_seconds = ttl_seconds or settings.SYNC_PROGRESS_TTL_SECONDS

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{PROGRESS_KEY_PREFIX}{job_id}"

    async def publish(
        self,
        job_id: str,
        processed: int,
        total: int,
        label: str,
        estimated_completion: datetime | None = None,
    ) -> bool:
        record = {
            "job_id": job_id,
            "processed": processed,
            "total": total,
            "percentage": round(processed / total * 100, 1) if total else 0.0,
            "label": label,
            "estimated_completion": (
                estimated_completion.isoformat() if estimated_completion else None
            ),
            "published_at": datetime.now(UTC).isoformat(),
        }
        try:
            return bool(
                await self._store.set_with_ttl(self._key(job_id), json.dumps(record), self._ttl_seconds)
            )
        except Exception as e:
            logger.warning("Progress publish failed", job_id=job_id, error=str(e))
            return False

    async def latest(self, job_id: str) -> dict[str, Any] | None:
        try:
            raw = await self._store.get(self._key(job_id))
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.warning("Progress read failed", job_id=job_id, error=str(e))
            return None

    async def clear(self, job_id: str) -> None:
        try:
            await self._store.delete(self._key(job_id))
        except Exception as e:
            logger.warning("Progress clear failed", job_id=job_id, error=str(e))
