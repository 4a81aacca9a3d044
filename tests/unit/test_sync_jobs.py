import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.webinar_sync.domain.models import JobStatus
from app.features.webinar_sync.jobs import sync_jobs


@pytest.fixture
def worker_services(sync_services, monkeypatch):
    monkeypatch.setattr(
        "app.features.webinar_sync.jobs.sync_jobs.get_worker_services",
        AsyncMock(return_value=sync_services),
    )
    return sync_services


@pytest.mark.asyncio
async def test_scheduled_sync_covers_every_active_connection(worker_services):
    connections = worker_services.connections
    connections.add("conn-busy")
    connections.add("conn-broken")
    connections.add("conn-off", is_active=False)
    connections.unreadable.add("conn-broken")
    worker_services.job_store.add_job("conn-busy", status=JobStatus.RUNNING.value)

    summary = await sync_jobs.run_scheduled_sync()

    assert summary["connections"] == 3
    assert summary["completed"] == 1
    assert summary["skipped_running"] == 1
    assert summary["failed"] == 1
    assert summary["errors_count"] == 1

    jobs = worker_services.job_store.jobs.values()
    assert [job.kind for job in jobs if job.connection_id == "conn-1"] == ["incremental"]


@pytest.mark.asyncio
async def test_scheduled_sync_without_connections(worker_services):
    worker_services.connections.connections.clear()

    summary = await sync_jobs.run_scheduled_sync()

    assert summary["connections"] == 0
    assert worker_services.job_store.jobs == {}


@pytest.mark.asyncio
async def test_auth_failure_is_recorded_not_raised(worker_services, fake_provider):
    fake_provider.script("users/me/webinars", 401)

    summary = await sync_jobs.run_scheduled_sync()

    assert summary["failed"] == 1
    assert summary["completed"] == 0


@pytest.mark.asyncio
async def test_metrics_repair_job_returns_counts_only(worker_services):
    worker_services.webinars.add_webinar(registrant_count=3, attendee_count=0)

    summary = await sync_jobs.run_metrics_repair()

    assert summary == {"total": 1, "repaired": 1, "errors": 0}


@pytest.mark.asyncio
async def test_stuck_job_cleanup_job(worker_services):
    stale = datetime.now(UTC) - timedelta(minutes=20)
    job = worker_services.job_store.add_job(status="running", created_at=stale, updated_at=stale)

    summary = await sync_jobs.run_stuck_job_cleanup()

    assert summary == {"cleaned": [job.id], "cleaned_count": 1}


@pytest.mark.asyncio
async def test_scheduler_loop_backs_off_after_errors(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)
        if len(delays) == 2:
            raise asyncio.CancelledError

    run_once = AsyncMock(side_effect=[RuntimeError("db down"), {"total": 0}])
    monkeypatch.setattr("app.features.webinar_sync.jobs.sync_jobs.asyncio.sleep", fake_sleep)

    with pytest.raises(asyncio.CancelledError):
        await sync_jobs._run_periodically("test_job", run_once, interval_minutes=5)

    assert delays == [sync_jobs.ERROR_BACKOFF_SECONDS, 300]
