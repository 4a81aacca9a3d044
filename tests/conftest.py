import copy
import itertools
import random
import re
from collections import defaultdict
from dataclasses import asdict
from datetime import UTC, datetime

import httpx
import pytest

from app.auth.verify import auth_dependency
from app.features.webinar_sync.client.provider_client import ProviderApiClient
from app.features.webinar_sync.domain.errors import AlreadyRunning, ConnectionInvalid
from app.features.webinar_sync.domain.models import (
    AttendanceMatch,
    Connection,
    JobKind,
    JobStatus,
    ParticipantSyncStatus,
    RegistrantRef,
    StoredWebinar,
    SyncJob,
    WebinarStatus,
)
from app.features.webinar_sync.repository.sync_job_repository import minutes_since
from app.features.webinar_sync.repository.webinar_repository import dedupe_by_key
from app.features.webinar_sync.services.container import SyncServices
from app.features.webinar_sync.services.metrics_repair import MetricsRepairPass
from app.features.webinar_sync.services.orchestrator import SyncOrchestrator
from app.features.webinar_sync.services.progress import ProgressReporter
from app.features.webinar_sync.services.reconciler import StuckJobReconciler
from app.utils.retry import RetryPolicy

PROVIDER_BASE_URL = "https://provider.test/v2"


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.store.pop(key, None) is not None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


# ----------------------------------------------------------------------
# Storage fakes
# ----------------------------------------------------------------------


class FakeConnectionRepository:
    def __init__(self):
        self.connections: dict[str, Connection] = {}
        self.unreadable: set[str] = set()

    def add(self, connection_id: str = "conn-1", user_id: str = "user-123", **kwargs) -> Connection:
        connection = Connection(
            id=connection_id,
            user_id=user_id,
            access_token=kwargs.pop("access_token", "token-abc"),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        self.connections[connection_id] = connection
        return connection

    async def load_connection(self, connection_id: str) -> Connection:
        connection = self.connections.get(connection_id)
        if connection is None:
            raise ConnectionInvalid(connection_id, "connection not found")
        if not connection.is_active:
            raise ConnectionInvalid(connection_id, "connection is inactive")
        if connection_id in self.unreadable:
            raise ConnectionInvalid(connection_id, "stored credentials are unreadable")
        return connection

    async def get_owner_id(self, connection_id: str) -> str | None:
        connection = self.connections.get(connection_id)
        return connection.user_id if connection else None

    async def list_active_connection_ids(self) -> list[str]:
        return [c.id for c in self.connections.values() if c.is_active]


class FakeJobStore:
    """In-memory stand-in for SyncJobRepository with the same state rules."""

    def __init__(self, stuck_threshold_minutes: int = 10):
        self.stuck_threshold_minutes = stuck_threshold_minutes
        self.jobs: dict[str, SyncJob] = {}
        self.progress_updates: list[dict] = []
        self._ids = itertools.count(1)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def add_job(self, connection_id: str = "conn-1", **fields) -> SyncJob:
        """Seed a job row directly, e.g. one left behind by a crashed worker."""
        now = self._now()
        fields.setdefault("kind", JobKind.FULL.value)
        fields.setdefault("status", JobStatus.RUNNING.value)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", fields["created_at"])
        job = SyncJob(id=f"job-{next(self._ids)}", connection_id=connection_id, **fields)
        self.jobs[job.id] = job
        return copy.deepcopy(job)

    def active_for(self, connection_id: str) -> list[SyncJob]:
        return [j for j in self.jobs.values() if j.connection_id == connection_id and j.is_active]

    async def find_active(self, connection_id: str) -> SyncJob | None:
        active = self.active_for(connection_id)
        if not active:
            return None
        return copy.deepcopy(max(active, key=lambda job: job.created_at))

    async def create(self, connection_id, kind, metadata=None) -> SyncJob:
        kind_value = JobKind(kind).value
        active = await self.find_active(connection_id)
        if active:
            idle_minutes = minutes_since(active.last_activity_at)
            if idle_minutes <= self.stuck_threshold_minutes:
                raise AlreadyRunning(active.id, idle_minutes)
            await self.finalize(active.id, JobStatus.FAILED, "Sync cleared due to timeout: superseded")

        now = self._now()
        job = SyncJob(
            id=f"job-{next(self._ids)}",
            connection_id=connection_id,
            kind=kind_value,
            status=JobStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            stage="queued",
            metadata=copy.deepcopy(metadata or {}),
        )
        self.jobs[job.id] = job
        return copy.deepcopy(job)

    async def load_job(self, job_id: str) -> SyncJob | None:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def mark_running(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if not job or job.status != JobStatus.PENDING.value:
            return False
        job.status = JobStatus.RUNNING.value
        job.started_at = job.started_at or self._now()
        job.stage = "starting"
        job.updated_at = self._now()
        return True

    async def update_progress(
        self, job_id, processed, total, stage, *, current_item_index=None, metadata=None
    ) -> bool:
        job = self.jobs.get(job_id)
        if not job or not job.is_active:
            return False
        job.processed_items = max(job.processed_items, processed)
        job.total_items = max(total, job.processed_items)
        job.stage = stage
        if current_item_index is not None:
            job.current_item_index = current_item_index
        job.metadata.update(copy.deepcopy(metadata or {}))
        job.updated_at = self._now()
        self.progress_updates.append(
            {"job_id": job_id, "processed": job.processed_items, "total": job.total_items, "stage": stage}
        )
        return True

    async def finalize(self, job_id, outcome, error=None, metadata=None) -> bool:
        outcome = JobStatus(outcome)
        if outcome.is_active:
            raise ValueError(f"{outcome.value} is not a terminal status")
        job = self.jobs.get(job_id)
        if not job or not job.is_active:
            return False
        now = self._now()
        job.status = outcome.value
        job.stage = outcome.value
        job.completed_at = now
        job.updated_at = now
        job.error_message = error[:500] if error else None
        job.metadata.update(copy.deepcopy(metadata or {}))
        return True

    async def list_recent(self, connection_id, limit=10) -> list[SyncJob]:
        jobs = [j for j in self.jobs.values() if j.connection_id == connection_id]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return [copy.deepcopy(job) for job in jobs[: max(1, min(limit, 100))]]

    async def list_active(self, connection_id=None) -> list[SyncJob]:
        jobs = [
            j for j in self.jobs.values()
            if j.is_active and (connection_id is None or j.connection_id == connection_id)
        ]
        return [copy.deepcopy(job) for job in sorted(jobs, key=lambda job: job.created_at)]

    async def request_cancellation(self, job_id) -> bool:
        job = self.jobs.get(job_id)
        if not job or not job.is_active:
            return False
        job.metadata["cancel_requested"] = True
        return True

    async def is_cancel_requested(self, job_id) -> bool:
        job = self.jobs.get(job_id)
        return bool(job and job.metadata.get("cancel_requested"))


class FakeWebinarRepository:
    """In-memory stand-in for WebinarRepository keyed by the same natural keys."""

    def __init__(self):
        self.webinars: dict[str, StoredWebinar] = {}
        self.webinar_rows: dict[str, object] = {}
        self.keys: dict[tuple[str, str], str] = {}
        self.registrants: dict[str, dict] = defaultdict(dict)
        self.registrant_ids: dict[tuple[str, str], str] = {}
        self.participants: dict[str, dict] = defaultdict(dict)
        self.attendance: dict[str, AttendanceMatch] = {}
        self.engagement_reports: dict[str, dict] = defaultdict(dict)
        self.sync_errors: dict[str, str | None] = {}
        self.sync_completed_at: dict[str, int] = {}
        self.participant_upsert_error: Exception | None = None
        self.upsert_calls = 0
        self._ids = itertools.count(1)
        self._stamps = itertools.count(1)

    def add_webinar(self, connection_id: str = "conn-1", **fields) -> StoredWebinar:
        webinar_id = f"web-{next(self._ids)}"
        fields.setdefault("provider_webinar_id", webinar_id.replace("web", "prov"))
        fields.setdefault("topic", "Seeded webinar")
        fields.setdefault("status", WebinarStatus.ENDED.value)
        webinar = StoredWebinar(id=webinar_id, connection_id=connection_id, **fields)
        self.webinars[webinar_id] = webinar
        self.keys[(connection_id, webinar.provider_webinar_id)] = webinar_id
        return copy.deepcopy(webinar)

    async def upsert_webinars(self, rows) -> list[StoredWebinar]:
        self.upsert_calls += 1
        stored = []
        for row in dedupe_by_key(rows, "provider_webinar_id"):
            key = (row.connection_id, row.provider_webinar_id)
            webinar_id = self.keys.get(key)
            if webinar_id is None:
                webinar_id = f"web-{next(self._ids)}"
                self.keys[key] = webinar_id
                self.webinars[webinar_id] = StoredWebinar(
                    id=webinar_id,
                    connection_id=row.connection_id,
                    provider_webinar_id=row.provider_webinar_id,
                    topic=row.topic,
                    status=row.status,
                )
            webinar = self.webinars[webinar_id]
            webinar.topic = row.topic
            webinar.status = row.status
            webinar.start_time = row.start_time
            webinar.duration = row.duration
            self.webinar_rows[webinar_id] = copy.deepcopy(row)
            stored.append(copy.deepcopy(webinar))
        return stored

    async def upsert_registrants(self, webinar_id, rows) -> int:
        self.upsert_calls += 1
        rows = dedupe_by_key(rows, "provider_registrant_id")
        for row in rows:
            key = (webinar_id, row.provider_registrant_id)
            self.registrant_ids.setdefault(key, f"reg-{next(self._ids)}")
            self.registrants[webinar_id][row.provider_registrant_id] = copy.deepcopy(row)
        return len(rows)

    async def upsert_participants(self, webinar_id, rows) -> int:
        self.upsert_calls += 1
        if self.participant_upsert_error is not None:
            raise self.participant_upsert_error
        rows = dedupe_by_key(rows, "provider_participant_id")
        for row in rows:
            self.participants[webinar_id][row.provider_participant_id] = copy.deepcopy(row)
        return len(rows)

    async def get_webinar(self, webinar_id):
        webinar = self.webinars.get(webinar_id)
        return copy.deepcopy(webinar) if webinar else None

    async def list_participant_sync_candidates(self, connection_id, include_synced=False):
        pending = (ParticipantSyncStatus.PENDING.value, ParticipantSyncStatus.FAILED.value)
        webinars = [
            w for w in self.webinars.values()
            if w.connection_id == connection_id
            and (include_synced or w.participant_sync_status in pending)
        ]
        return [copy.deepcopy(w) for w in webinars]

    async def count_registrants(self, webinar_id) -> int:
        return len(self.registrants.get(webinar_id, {}))

    async def list_registrant_refs(self, webinar_id):
        return [
            RegistrantRef(
                id=self.registrant_ids[(webinar_id, provider_id)],
                provider_registrant_id=provider_id,
                email=row.email,
            )
            for provider_id, row in self.registrants.get(webinar_id, {}).items()
        ]

    async def list_participants(self, webinar_id):
        rows = self.participants.get(webinar_id, {})
        return [copy.deepcopy(rows[key]) for key in sorted(rows)]

    async def save_webinar_metrics(self, webinar_id, metrics, participant_sync_status, attendance):
        webinar = self.webinars[webinar_id]
        webinar.registrant_count = metrics.registrant_count
        webinar.attendee_count = metrics.attendee_count
        webinar.total_engaged_minutes = metrics.total_engaged_minutes
        webinar.avg_attendance_duration = metrics.avg_attendance_duration
        webinar.total_absentees = metrics.total_absentees
        if participant_sync_status is not None:
            if webinar.participant_sync_status != participant_sync_status.value:
                self.sync_completed_at[webinar_id] = next(self._stamps)
            webinar.participant_sync_status = participant_sync_status.value
            self.sync_errors[webinar_id] = None
        for match in attendance:
            self.attendance[match.registrant_id] = copy.deepcopy(match)

    async def set_participant_sync_status(self, webinar_id, status, error=None):
        self.webinars[webinar_id].participant_sync_status = status.value
        self.sync_errors[webinar_id] = error

    async def save_engagement_reports(self, webinar_id, reports):
        if reports:
            self.engagement_reports[webinar_id].update(copy.deepcopy(reports))

    def _needs_repair(self, webinar: StoredWebinar) -> bool:
        zero_attendees = (
            not webinar.attendee_count
            and (webinar.registrant_count or 0) > 0
            and webinar.status == WebinarStatus.ENDED.value
        )
        return zero_attendees or webinar.participant_sync_status in ("pending", "failed")

    async def find_webinars_needing_repair(self, connection_id=None):
        return [
            w.id for w in self.webinars.values()
            if (connection_id is None or w.connection_id == connection_id) and self._needs_repair(w)
        ]

    async def repair_report(self, connection_id=None):
        webinars = [
            w for w in self.webinars.values()
            if connection_id is None or w.connection_id == connection_id
        ]
        return {
            "total_webinars": len(webinars),
            "needing_repair": sum(1 for w in webinars if self._needs_repair(w)),
            "zero_attendees": sum(
                1 for w in webinars
                if w.status == WebinarStatus.ENDED.value and not w.attendee_count
            ),
            "pending_participant_sync": sum(
                1 for w in webinars if w.participant_sync_status == "pending"
            ),
            "failed_participant_sync": sum(
                1 for w in webinars if w.participant_sync_status == "failed"
            ),
        }

    def snapshot(self) -> dict:
        """Comparable view of everything stored."""
        return {
            "webinars": {k: asdict(v) for k, v in self.webinars.items()},
            "registrants": {
                w: {k: asdict(r) for k, r in rows.items()} for w, rows in self.registrants.items()
            },
            "participants": {
                w: {k: asdict(p) for k, p in rows.items()} for w, rows in self.participants.items()
            },
            "attendance": {k: asdict(v) for k, v in self.attendance.items()},
            "sync_completed_at": dict(self.sync_completed_at),
        }


# ----------------------------------------------------------------------
# Provider fake served through httpx.MockTransport
# ----------------------------------------------------------------------


class FakeProvider:
    """
    Minimal provider API: cursor-paginated webinars, registrants and
    participant reports plus poll/Q&A reports.

    `script(fragment, status, headers)` queues an error response for the next
    request whose path contains `fragment`.
    """

    REGISTRANTS = re.compile(r"^/v2/webinars/(?P<id>[^/]+)/registrants$")
    PARTICIPANTS = re.compile(r"^/v2/report/webinars/(?P<id>[^/]+)/participants$")
    POLLS = re.compile(r"^/v2/past_webinars/(?P<id>[^/]+)/polls$")
    QA = re.compile(r"^/v2/past_webinars/(?P<id>[^/]+)/qa$")

    def __init__(self):
        self.webinars: list[dict] = []
        self.registrants: dict[str, list[dict]] = {}
        self.participants: dict[str, list[dict]] = {}
        self.polls: dict[str, dict] = {}
        self.qa: dict[str, dict] = {}
        self.missing_reports: set[str] = set()
        self.requests: list[str] = []
        self.scripted: list[tuple[str, int, dict]] = []
        self.on_request = None

    def script(self, fragment: str, status_code: int, headers: dict | None = None, times: int = 1):
        for _ in range(times):
            self.scripted.append((fragment, status_code, headers or {}))

    @staticmethod
    def _page(request: httpx.Request, key: str, records: list[dict]) -> httpx.Response:
        offset = int(request.url.params.get("next_page_token") or 0)
        size = int(request.url.params.get("page_size") or 300)
        chunk = records[offset : offset + size]
        next_token = str(offset + size) if offset + size < len(records) else ""
        return httpx.Response(
            200,
            json={
                key: chunk,
                "page_size": size,
                "total_records": len(records),
                "next_page_token": next_token,
            },
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if self.on_request is not None:
            self.on_request(path)

        for index, (fragment, status_code, headers) in enumerate(self.scripted):
            if fragment in path:
                del self.scripted[index]
                return httpx.Response(status_code, headers=headers, json={"message": "scripted"})

        if path == "/v2/users/me/webinars":
            return self._page(request, "webinars", self.webinars)

        if match := self.PARTICIPANTS.match(path):
            webinar_id = match["id"]
            if webinar_id in self.missing_reports:
                return httpx.Response(404, json={"code": 3001, "message": "Report not found"})
            return self._page(request, "participants", self.participants.get(webinar_id, []))

        if match := self.REGISTRANTS.match(path):
            return self._page(request, "registrants", self.registrants.get(match["id"], []))

        if match := self.POLLS.match(path):
            return httpx.Response(200, json=self.polls.get(match["id"], {"questions": []}))

        if match := self.QA.match(path):
            return httpx.Response(200, json=self.qa.get(match["id"], {"questions": []}))

        return httpx.Response(404, json={"message": f"no route for {path}"})


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client_factory(fake_provider, sleeps):
    async def _sleep(delay):
        sleeps.append(delay)

    def _factory(connection: Connection) -> ProviderApiClient:
        return ProviderApiClient(
            connection.access_token,
            base_url=PROVIDER_BASE_URL,
            transport=httpx.MockTransport(fake_provider.handle),
            rate_limit_policy=RetryPolicy(max_retries=3, base_delay=1.0, max_delay=8.0),
            transient_policy=RetryPolicy(max_retries=2, base_delay=0.5, max_delay=4.0),
            max_retry_after=30,
            sleep=_sleep,
            rng=random.Random(7),
        )

    return _factory


@pytest.fixture
def sync_services(fake_redis, client_factory) -> SyncServices:
    """Sync services wired to in-memory stores and the fake provider."""
    connections = FakeConnectionRepository()
    connections.add("conn-1")
    job_store = FakeJobStore()
    webinars = FakeWebinarRepository()
    reconciler = StuckJobReconciler(job_store, soft_threshold_minutes=10, hard_threshold_minutes=30)
    progress = ProgressReporter(fake_redis, ttl_seconds=3600)

    orchestrator = SyncOrchestrator(
        connections=connections,
        job_store=job_store,
        reconciler=reconciler,
        webinars=webinars,
        progress=progress,
        client_factory=client_factory,
        page_size=10,
        participant_buffer_minutes=5,
    )
    return SyncServices(
        connections=connections,
        job_store=job_store,
        webinars=webinars,
        reconciler=reconciler,
        progress=progress,
        repair=MetricsRepairPass(webinars),
        orchestrator=orchestrator,
    )
