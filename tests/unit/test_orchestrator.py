import json
from datetime import UTC, datetime, timedelta

import pytest

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.webinar_sync.domain.errors import (
    AUTH_INVALID_MESSAGE,
    PROVIDER_UNAVAILABLE_MESSAGE,
    STORAGE_FAILURE_MESSAGE,
    AlreadyRunning,
    AuthInvalid,
    ConnectionInvalid,
    Fatal,
    JobNotFound,
)
from app.features.webinar_sync.domain.models import JobKind, JobStatus, SyncOptions


def populate(provider, registrants=(20, 20, 10), participants=(15, 15, 10)):
    """Three ended webinars; participant i shares an email with registrant i."""
    for n, (registrant_count, participant_count) in enumerate(zip(registrants, participants), start=1):
        provider_id = str(1000 + n)
        day = f"2024-03-0{n}"
        provider.webinars.append(
            {
                "id": int(provider_id),
                "uuid": f"uuid-{provider_id}",
                "topic": f"Webinar {n}",
                "status": "finished",
                "start_time": f"{day}T15:00:00Z",
                "duration": 60,
                "type": 5,
            }
        )
        provider.registrants[provider_id] = [
            {
                "id": f"{provider_id}-r{i}",
                "email": f"Person{i}@Example.com",
                "first_name": f"Person {i}",
                "create_time": f"{day}T09:00:00Z",
                "status": "approved",
            }
            for i in range(registrant_count)
        ]
        provider.participants[provider_id] = [
            {
                "id": f"identity-{i}",
                "user_id": f"{provider_id}-u{i}",
                "name": f"Person {i}",
                "user_email": f"person{i}@example.com",
                "join_time": f"{day}T15:05:00Z",
                "leave_time": f"{day}T15:15:00Z",
                "duration": 600,
                "status": "left",
            }
            for i in range(participant_count)
        ]


def stored(services, provider_id):
    webinar_id = services.webinars.keys[("conn-1", provider_id)]
    return services.webinars.webinars[webinar_id]


@pytest.mark.asyncio
async def test_full_sync_stores_everything_and_computes_metrics(sync_services, fake_provider, fake_redis):
    populate(fake_provider)

    job_id = await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)

    job = sync_services.job_store.jobs[job_id]
    assert job.status == JobStatus.COMPLETED.value
    assert job.processed_items == 93
    assert job.total_items == 93
    assert job.error_message is None
    assert job.metadata["webinars_synced"] == 3
    assert job.metadata["registrants_synced"] == 50
    assert job.metadata["participants_synced"] == 40
    assert job.metadata["error_count"] == 0

    first = stored(sync_services, "1001")
    assert first.registrant_count == 20
    assert first.attendee_count == 15
    assert first.total_engaged_minutes == 150
    assert first.avg_attendance_duration == 10.0
    assert first.participant_sync_status == "completed"
    assert stored(sync_services, "1003").total_engaged_minutes == 100

    attendance = sync_services.webinars.attendance.values()
    assert len(attendance) == 50
    assert sum(1 for match in attendance if match.attended) == 40

    # progress telemetry is removed once the job is terminal
    assert fake_redis.store == {}


@pytest.mark.asyncio
async def test_rerunning_a_full_sync_changes_nothing(sync_services, fake_provider):
    populate(fake_provider)
    await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)
    snapshot = sync_services.webinars.snapshot()

    await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)

    assert sync_services.webinars.snapshot() == snapshot


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_published(sync_services, fake_provider, fake_redis):
    populate(fake_provider)
    seen_labels = []
    fake_provider.on_request = lambda path: seen_labels.extend(
        json.loads(value)["label"] for value in fake_redis.store.values()
    )

    await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)

    processed = [update["processed"] for update in sync_services.job_store.progress_updates]
    assert processed == sorted(processed)
    assert all(u["total"] >= u["processed"] for u in sync_services.job_store.progress_updates)
    assert "syncing_webinars" in seen_labels
    assert "syncing_registrants:Webinar 1" in seen_labels


@pytest.mark.asyncio
async def test_second_start_while_active_is_rejected(sync_services):
    active = sync_services.job_store.add_job(status="running", started_at=datetime.now(UTC))

    with pytest.raises(AlreadyRunning) as exc_info:
        await sync_services.orchestrator.start_sync("conn-1")

    assert exc_info.value.job_id == active.id
    assert len(sync_services.job_store.active_for("conn-1")) == 1


@pytest.mark.asyncio
async def test_stuck_job_is_cleared_before_starting(sync_services, fake_provider):
    populate(fake_provider, registrants=(1,), participants=(1,))
    stale_time = datetime.now(UTC) - timedelta(minutes=15)
    stuck = sync_services.job_store.add_job(
        status="running", created_at=stale_time, started_at=stale_time, updated_at=stale_time
    )

    job_id = await sync_services.orchestrator.start_sync("conn-1")

    assert sync_services.job_store.jobs[stuck.id].status == JobStatus.FAILED.value
    assert sync_services.job_store.jobs[job_id].status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_unusable_connection_creates_no_job(sync_services):
    sync_services.connections.add("conn-off", is_active=False)

    with pytest.raises(ConnectionInvalid):
        await sync_services.orchestrator.start_sync("conn-off")
    with pytest.raises(ConnectionInvalid):
        await sync_services.orchestrator.start_sync("conn-missing")

    assert sync_services.job_store.jobs == {}


@pytest.mark.asyncio
async def test_invalid_records_are_skipped_and_counted(sync_services, fake_provider):
    populate(fake_provider, registrants=(3,), participants=(2,))
    fake_provider.registrants["1001"].append({"id": "no-email", "first_name": "Nobody"})
    fake_provider.registrants["1001"].append("not-an-object")

    job_id = await sync_services.orchestrator.start_sync("conn-1")

    job = sync_services.job_store.jobs[job_id]
    assert job.status == JobStatus.COMPLETED.value
    assert job.metadata["skipped_rows"] == 2
    assert job.metadata["error_count"] == 2
    assert {sample["field"] for sample in job.metadata["skipped_samples"]} == {"email", "record"}
    assert stored(sync_services, "1001").registrant_count == 3


@pytest.mark.asyncio
async def test_rate_limits_are_waited_out(sync_services, fake_provider, sleeps):
    populate(fake_provider, registrants=(5,), participants=(5,))
    fake_provider.script("registrants", 429, {"Retry-After": "2"})

    job_id = await sync_services.orchestrator.start_sync("conn-1")

    assert sync_services.job_store.jobs[job_id].status == JobStatus.COMPLETED.value
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_rejected_credentials_fail_the_job(sync_services, fake_provider, sleeps):
    populate(fake_provider)
    fake_provider.script("users/me/webinars", 401)

    with pytest.raises(AuthInvalid):
        await sync_services.orchestrator.start_sync("conn-1")

    job = next(iter(sync_services.job_store.jobs.values()))
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == AUTH_INVALID_MESSAGE
    assert job.metadata["error_type"] == "AuthInvalid"
    assert sleeps == []


@pytest.mark.asyncio
async def test_participant_failure_marks_webinar_and_job_failed(sync_services, fake_provider):
    populate(fake_provider)
    fake_provider.script("participants", 503, times=3)

    with pytest.raises(Fatal):
        await sync_services.orchestrator.start_sync("conn-1")

    job = next(iter(sync_services.job_store.jobs.values()))
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == PROVIDER_UNAVAILABLE_MESSAGE
    # registrants written before the failure are kept and counted
    assert job.processed_items == 23

    first = stored(sync_services, "1001")
    assert first.participant_sync_status == "failed"
    assert sync_services.webinars.sync_errors[first.id] == PROVIDER_UNAVAILABLE_MESSAGE


@pytest.mark.asyncio
async def test_storage_failure_fails_the_job(sync_services, fake_provider):
    populate(fake_provider, registrants=(2,), participants=(2,))
    sync_services.webinars.participant_upsert_error = DatabaseError("disk full", "upsert")

    with pytest.raises(DatabaseError):
        await sync_services.orchestrator.start_sync("conn-1")

    job = next(iter(sync_services.job_store.jobs.values()))
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == STORAGE_FAILURE_MESSAGE


@pytest.mark.asyncio
async def test_cancellation_stops_after_current_page(sync_services, fake_provider, fake_redis):
    populate(fake_provider)
    store = sync_services.job_store

    def request_cancel(path):
        if "registrants" in path:
            for job in store.jobs.values():
                if job.is_active:
                    job.metadata["cancel_requested"] = True

    fake_provider.on_request = request_cancel

    job_id = await sync_services.orchestrator.start_sync("conn-1")

    job = store.jobs[job_id]
    assert job.status == JobStatus.CANCELLED.value
    # webinar page plus the registrant page in flight when cancel arrived
    assert job.processed_items == 13
    assert len(sync_services.webinars.registrants[stored(sync_services, "1001").id]) == 10
    assert not any("participants" in path for path in fake_provider.requests)
    assert fake_redis.store == {}


@pytest.mark.asyncio
async def test_cancelling_a_pending_job_never_runs_it(sync_services, fake_provider):
    populate(fake_provider)
    orchestrator = sync_services.orchestrator

    job_id = await orchestrator.start_sync("conn-1", wait=False)
    cancelled = await orchestrator.cancel_sync(job_id)
    await orchestrator.wait_for(job_id)

    assert cancelled.status == JobStatus.CANCELLED.value
    assert cancelled.error_message == "Sync cancelled before it started"
    assert fake_provider.requests == []


@pytest.mark.asyncio
async def test_cancel_of_terminal_or_unknown_job(sync_services, fake_provider):
    populate(fake_provider, registrants=(1,), participants=(1,))
    job_id = await sync_services.orchestrator.start_sync("conn-1")

    job = await sync_services.orchestrator.cancel_sync(job_id)
    assert job.status == JobStatus.COMPLETED.value

    with pytest.raises(JobNotFound):
        await sync_services.orchestrator.cancel_sync("job-unknown")


@pytest.mark.asyncio
async def test_background_sync_reports_status(sync_services, fake_provider):
    populate(fake_provider, registrants=(4,), participants=(4,))
    orchestrator = sync_services.orchestrator

    job_id = await orchestrator.start_sync("conn-1", JobKind.FULL, wait=False)
    await orchestrator.wait_for(job_id)
    status = await orchestrator.get_job_status(job_id)

    assert status["status"] == JobStatus.COMPLETED.value
    assert status["progress"] is None
    assert [job.id for job in await orchestrator.list_recent_jobs("conn-1")] == [job_id]


@pytest.mark.asyncio
async def test_incremental_sync_skips_settled_webinars(sync_services, fake_provider):
    populate(fake_provider)
    await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)
    fake_provider.requests.clear()

    await sync_services.orchestrator.start_sync("conn-1", JobKind.INCREMENTAL)
    assert fake_provider.requests == ["/v2/users/me/webinars"]

    fake_provider.requests.clear()
    await sync_services.orchestrator.start_sync(
        "conn-1", JobKind.INCREMENTAL, SyncOptions(force_refresh=True)
    )
    assert any("participants" in path for path in fake_provider.requests)


@pytest.mark.asyncio
async def test_upcoming_webinars_get_registrants_only(sync_services, fake_provider):
    start = (datetime.now(UTC) + timedelta(days=3)).strftime("%Y-%m-%dT%H:%M:%SZ")
    fake_provider.webinars.append(
        {"id": 2001, "topic": "Next week", "status": "waiting", "start_time": start, "duration": 45}
    )
    fake_provider.registrants["2001"] = [{"id": "r1", "email": "early@example.com"}]

    await sync_services.orchestrator.start_sync("conn-1")

    webinar = stored(sync_services, "2001")
    assert webinar.participant_sync_status == "pending"
    assert webinar.registrant_count is None
    assert not any("participants" in path for path in fake_provider.requests)
    assert len(sync_services.webinars.registrants[webinar.id]) == 1


@pytest.mark.asyncio
async def test_missing_participant_report_is_noted_not_fatal(sync_services, fake_provider):
    populate(fake_provider, registrants=(3, 3), participants=(2, 2))
    fake_provider.missing_reports.add("1002")

    job_id = await sync_services.orchestrator.start_sync("conn-1")

    job = sync_services.job_store.jobs[job_id]
    assert job.status == JobStatus.COMPLETED.value
    unavailable = job.metadata["unavailable_resources"]
    assert unavailable == [
        {"webinar_id": stored(sync_services, "1002").id, "endpoint": "participants", "status_code": 404}
    ]
    assert stored(sync_services, "1002").participant_sync_status == "pending"
    assert stored(sync_services, "1001").participant_sync_status == "completed"


@pytest.mark.asyncio
async def test_ended_webinar_without_attendees(sync_services, fake_provider):
    populate(fake_provider, registrants=(4,), participants=(0,))

    await sync_services.orchestrator.start_sync("conn-1")

    webinar = stored(sync_services, "1001")
    assert webinar.attendee_count == 0
    assert webinar.participant_sync_status == "no_participants"


@pytest.mark.asyncio
async def test_polls_and_qa_are_stored_when_requested(sync_services, fake_provider):
    populate(fake_provider, registrants=(1,), participants=(1,))
    fake_provider.polls["1001"] = {"questions": [{"name": "Ada", "question_details": []}]}
    fake_provider.qa["1001"] = {"questions": [{"name": "Bob", "question_details": []}]}

    await sync_services.orchestrator.start_sync(
        "conn-1", JobKind.FULL, SyncOptions(include_polls=True, include_qa=True)
    )

    reports = sync_services.webinars.engagement_reports[stored(sync_services, "1001").id]
    assert reports["polls"]["questions"][0]["name"] == "Ada"
    assert reports["qa"]["questions"][0]["name"] == "Bob"


@pytest.mark.asyncio
async def test_participants_only_targets_eligible_unsynced_webinars(sync_services, fake_provider):
    webinars = sync_services.webinars
    ended = webinars.add_webinar(provider_webinar_id="3001", topic="Past")
    settled = webinars.add_webinar(provider_webinar_id="3002", participant_sync_status="completed")
    future = webinars.add_webinar(
        provider_webinar_id="3003",
        status="scheduled",
        start_time=datetime.now(UTC) + timedelta(days=1),
        duration=60,
    )
    fake_provider.participants["3001"] = [
        {"id": "a", "user_id": "u1", "user_email": "a@example.com", "duration": 300},
        {"id": "b", "user_id": "u2", "user_email": "b@example.com", "duration": 900},
    ]

    job_id = await sync_services.orchestrator.start_sync("conn-1", JobKind.PARTICIPANTS_ONLY)

    assert fake_provider.requests == ["/v2/report/webinars/3001/participants"]
    assert sync_services.job_store.jobs[job_id].status == JobStatus.COMPLETED.value
    assert webinars.webinars[ended.id].attendee_count == 2
    assert webinars.webinars[ended.id].participant_sync_status == "completed"
    assert webinars.webinars[settled.id].participant_sync_status == "completed"
    assert webinars.webinars[future.id].participant_sync_status == "pending"


@pytest.mark.asyncio
async def test_shutdown_stops_background_jobs(sync_services, fake_provider):
    populate(fake_provider)
    orchestrator = sync_services.orchestrator

    job_id = await orchestrator.start_sync("conn-1", wait=False)
    await orchestrator.shutdown(timeout=5)

    assert sync_services.job_store.jobs[job_id].status == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_rejoining_attendee_is_counted_once(sync_services, fake_provider):
    populate(fake_provider)
    fake_provider.participants["1001"].append(
        {
            "id": "identity-0",
            "user_id": "1001-u0-rejoin",
            "name": "Person 0",
            "user_email": "person0@example.com",
            "join_time": "2024-03-01T15:20:00Z",
            "leave_time": "2024-03-01T15:30:00Z",
            "duration": 600,
            "status": "left",
        }
    )

    job_id = await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)

    job = sync_services.job_store.jobs[job_id]
    assert job.metadata["participants_synced"] == 41
    first = stored(sync_services, "1001")
    assert first.attendee_count == 15
    assert first.total_engaged_minutes == 160
    webinars = sync_services.webinars.webinars.values()
    assert sum(w.registrant_count for w in webinars) == 50
    assert sum(w.attendee_count for w in webinars) == 40
    attendance = sync_services.webinars.attendance.values()
    assert sum(1 for match in attendance if match.attended) == 40


@pytest.mark.asyncio
async def test_page_ceiling_trims_total_to_what_was_fetched(sync_services, fake_provider, monkeypatch):
    populate(fake_provider)
    monkeypatch.setattr(settings, "SYNC_MAX_CHILD_PAGES", 1)

    job_id = await sync_services.orchestrator.start_sync("conn-1", JobKind.FULL)

    job = sync_services.job_store.jobs[job_id]
    assert job.status == JobStatus.COMPLETED.value
    # page size 10: three webinars, then one page per child stream
    assert job.processed_items == 63
    assert job.total_items == 63
    reasons = {entry["reason"] for entry in job.metadata["truncated_streams"]}
    assert reasons == {"max_pages"}
    assert len(job.metadata["truncated_streams"]) == 4
