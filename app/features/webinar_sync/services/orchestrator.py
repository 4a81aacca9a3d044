"""
Sync orchestrator: drives one sync job from creation to a terminal status.

Per job the work is strictly sequential (fetch page → transform → upsert →
record progress), because provider cursors are stateful and the rate limit
is shared per connection. Jobs for different connections run concurrently
as separate asyncio tasks; the one-active-job-per-connection rule lives in
the job store, not in this process.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.webinar_sync.client.provider_client import (
    ProviderApiClient,
    ProviderEndpoint,
    build_provider_client,
)
from app.features.webinar_sync.domain.errors import (
    AuthInvalid,
    Fatal,
    JobNotFound,
    ResourceUnavailable,
    ValidationError,
    describe_failure,
)
from app.features.webinar_sync.domain.models import (
    Connection,
    JobKind,
    JobStatus,
    Page,
    ParticipantSyncStatus,
    StoredWebinar,
    SyncJob,
    SyncOptions,
    WebinarStatus,
)
from app.features.webinar_sync.pipeline.transformer import (
    to_participant_row,
    to_registrant_row,
    to_webinar_row,
)
from app.features.webinar_sync.repository.connection_repository import ConnectionRepository
from app.features.webinar_sync.repository.sync_job_repository import SyncJobRepository
from app.features.webinar_sync.repository.webinar_repository import WebinarRepository
from app.features.webinar_sync.services.aggregates import (
    compute_metrics,
    is_participant_eligible,
    match_attendance,
)
from app.features.webinar_sync.services.progress import ProgressReporter, estimate_completion
from app.features.webinar_sync.services.reconciler import StuckJobReconciler
from app.infrastructure.observability.logging import bind_job_context, clear_job_context, get_logger

logger = get_logger(__name__)

ClientFactory = Callable[[Connection], ProviderApiClient]

MAX_SKIP_SAMPLES = 20
MAX_UNAVAILABLE_SAMPLES = 50
ALREADY_SYNCED_STATUSES = (
    ParticipantSyncStatus.COMPLETED.value,
    ParticipantSyncStatus.NO_PARTICIPANTS.value,
)


class JobCancelled(Exception):
    """Raised between pages once cancellation has been requested."""


@dataclass(slots=True)
class SyncRunState:
    """Counters for one running job, flushed to the job row after every page."""

    job: SyncJob
    kind: JobKind
    options: SyncOptions
    started_at: datetime
    processed: int = 0
    total: int = 0
    stage: str = "starting"
    current_item_index: int = 0
    webinars_synced: int = 0
    registrants_synced: int = 0
    participants_synced: int = 0
    skipped_rows: int = 0
    skip_samples: list[dict[str, Any]] = field(default_factory=list)
    truncated_streams: list[dict[str, Any]] = field(default_factory=list)
    unavailable_resources: list[dict[str, Any]] = field(default_factory=list)

    def record_skip(self, entity: str, error: ValidationError, record: Any) -> None:
        self.skipped_rows += 1
        if len(self.skip_samples) < MAX_SKIP_SAMPLES:
            record_id = record.get("id") if isinstance(record, dict) else None
            self.skip_samples.append(
                {"entity": entity, "record_id": record_id, "field": error.field, "reason": error.reason}
            )

    def metadata(self) -> dict[str, Any]:
        return {
            "webinars_synced": self.webinars_synced,
            "registrants_synced": self.registrants_synced,
            "participants_synced": self.participants_synced,
            "skipped_rows": self.skipped_rows,
            "skipped_samples": self.skip_samples,
            "truncated_streams": self.truncated_streams,
            "unavailable_resources": self.unavailable_resources[:MAX_UNAVAILABLE_SAMPLES],
            "error_count": self.skipped_rows + len(self.unavailable_resources),
        }


class SyncOrchestrator:
    """
    Coordinates connection validation, stuck-job cleanup, job creation, the
    per-stream page loop and finalization.

    Build one per process and pass its collaborators in explicitly.
    """

    def __init__(
        self,
        *,
        connections: ConnectionRepository,
        job_store: SyncJobRepository,
        reconciler: StuckJobReconciler,
        webinars: WebinarRepository,
        progress: ProgressReporter,
        client_factory: ClientFactory = build_provider_client,
        page_size: int | None = None,
        participant_buffer_minutes: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._connections = connections
        self._job_store = job_store
        self._reconciler = reconciler
        self._webinars = webinars
        self._progress = progress
        self._client_factory = client_factory
        self._page_size = page_size or settings.SYNC_PAGE_SIZE
        self._participant_buffer_minutes = (
            participant_buffer_minutes
            if participant_buffer_minutes is not None
            else settings.SYNC_PARTICIPANT_BUFFER_MINUTES
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------

    async def start_sync(
        self,
        connection_id: str,
        kind: JobKind | str = JobKind.FULL,
        options: SyncOptions | None = None,
        *,
        wait: bool = True,
    ) -> str:
        """
        Create and run a sync job for a connection.

        With wait=True the job runs to completion before returning, and an
        AuthInvalid/Fatal/storage error that failed it is re-raised after the
        job row is finalized. With wait=False the job runs as a background
        task and the id is returned immediately.

        Raises:
            ConnectionInvalid: connection missing, inactive or unreadable
            AlreadyRunning: another job for the connection is active
        """
        kind = JobKind(kind)
        options = options or SyncOptions()

        connection = await self._connections.load_connection(connection_id)
        if connection.token_expires_at and connection.token_expires_at < self._clock():
            logger.warning(
                "Connection token past its expiry, provider will decide",
                connection_id=connection_id,
                token_expires_at=connection.token_expires_at.isoformat(),
            )

        await self._reconciler.reconcile(connection_id)

        job = await self._job_store.create(
            connection_id, kind, metadata={"options": options.to_dict()}
        )

        if wait:
            await self._execute(job, connection, kind, options, raise_errors=True)
        else:
            task = asyncio.create_task(
                self._execute(job, connection, kind, options, raise_errors=False),
                name=f"webinar-sync-{job.id}",
            )
            self._tasks[job.id] = task
            task.add_done_callback(lambda _task, job_id=job.id: self._tasks.pop(job_id, None))

        return job.id

    async def cancel_sync(self, job_id: str) -> SyncJob:
        """
        Request cooperative cancellation.

        A running job stops after its in-flight page is persisted. A job that
        is still pending is cancelled on the spot. Terminal jobs are returned
        unchanged.
        """
        job = await self._job_store.load_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if not job.is_active:
            return job

        self._cancel_requested.add(job_id)
        await self._job_store.request_cancellation(job_id)

        if job.status == JobStatus.PENDING.value:
            await self._job_store.finalize(job_id, JobStatus.CANCELLED, "Sync cancelled before it started")
            await self._progress.clear(job_id)
            self._cancel_requested.discard(job_id)

        return await self._job_store.load_job(job_id) or job

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        """Job row plus the latest published progress record while active."""
        job = await self._job_store.load_job(job_id)
        if job is None:
            raise JobNotFound(job_id)

        status = job.to_dict()
        status["progress"] = await self._progress.latest(job_id) if job.is_active else None
        return status

    async def list_recent_jobs(self, connection_id: str, limit: int = 10) -> list[SyncJob]:
        return await self._job_store.list_recent(connection_id, limit)

    async def wait_for(self, job_id: str) -> None:
        """Await a background job started by this process, if it is still running."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Ask background jobs to stop at their next page boundary and wait for them."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        self._cancel_requested.update(self._tasks.keys())
        logger.info("Waiting for background sync jobs to stop", job_count=len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        job: SyncJob,
        connection: Connection,
        kind: JobKind,
        options: SyncOptions,
        *,
        raise_errors: bool,
    ) -> None:
        bind_job_context(job.id, job.connection_id)
        state = SyncRunState(job=job, kind=kind, options=options, started_at=self._clock())
        client = self._client_factory(connection)

        try:
            if not await self._job_store.mark_running(job.id):
                logger.warning("Sync job no longer pending, not starting", job_id=job.id)
                return

            logger.info("Sync job started", kind=kind.value, options=options.to_dict())
            await self._run_streams(client, state, connection.id)

        except JobCancelled:
            await self._finish(state, JobStatus.CANCELLED)
        except (AuthInvalid, Fatal, DatabaseError) as e:
            await self._fail(state, e)
            if raise_errors:
                raise
        except Exception as e:
            logger.exception("Unexpected sync failure", error_type=type(e).__name__)
            await self._fail(state, e)
            if raise_errors:
                raise
        else:
            await self._finish(state, JobStatus.COMPLETED)
        finally:
            await client.close()
            self._cancel_requested.discard(job.id)
            clear_job_context()

    async def _run_streams(self, client: ProviderApiClient, state: SyncRunState, connection_id: str) -> None:
        if state.kind is JobKind.PARTICIPANTS_ONLY:
            candidates = await self._webinars.list_participant_sync_candidates(
                connection_id, include_synced=state.options.force_refresh
            )
            now = self._clock()
            targets = [
                webinar
                for webinar in candidates
                if is_participant_eligible(webinar, now, self._participant_buffer_minutes)
            ]
            logger.info("Participant-only sync targets selected", webinar_count=len(targets))

            for index, webinar in enumerate(targets, start=1):
                state.current_item_index = index
                participants_synced = await self._sync_participants(client, state, webinar)
                await self._recompute(webinar, participants_synced)
            return

        webinars = await self._sync_webinars(client, state, connection_id)

        for index, webinar in enumerate(webinars, start=1):
            state.current_item_index = index
            await self._sync_children(client, state, webinar)

    async def _sync_webinars(
        self, client: ProviderApiClient, state: SyncRunState, connection_id: str
    ) -> list[StoredWebinar]:
        stored_webinars: list[StoredWebinar] = []
        stream = client.stream(ProviderEndpoint.WEBINARS, page_size=self._page_size)

        async for page in stream:
            self._count_page(state, page, first=stream.pages_fetched == 1)
            state.stage = "syncing_webinars"
            rows = self._transform(state, "webinar", page.items, to_webinar_row, connection_id)
            stored = await self._webinars.upsert_webinars(rows)
            stored_webinars.extend(stored)
            state.webinars_synced += len(stored)
            await self._advance(state, len(page.items))

        self._note_truncation(state, stream, ProviderEndpoint.WEBINARS)
        logger.info("Webinar stream finished", webinar_count=len(stored_webinars))
        return stored_webinars

    async def _sync_children(
        self, client: ProviderApiClient, state: SyncRunState, webinar: StoredWebinar
    ) -> None:
        options = state.options
        if (
            state.kind is JobKind.INCREMENTAL
            and not options.force_refresh
            and webinar.status == WebinarStatus.ENDED.value
            and webinar.participant_sync_status in ALREADY_SYNCED_STATUSES
        ):
            logger.debug("Webinar already synced, skipping children", webinar_id=webinar.id)
            return

        if options.include_registrants:
            await self._sync_registrants(client, state, webinar)

        eligible = is_participant_eligible(webinar, self._clock(), self._participant_buffer_minutes)
        participants_synced = False
        if options.include_participants and eligible:
            participants_synced = await self._sync_participants(client, state, webinar)

        if eligible and (options.include_polls or options.include_qa):
            await self._sync_engagement(client, state, webinar)

        if webinar.status == WebinarStatus.ENDED.value or participants_synced:
            await self._recompute(webinar, participants_synced)

    async def _sync_registrants(
        self, client: ProviderApiClient, state: SyncRunState, webinar: StoredWebinar
    ) -> bool:
        stream = client.stream(
            ProviderEndpoint.REGISTRANTS,
            page_size=self._page_size,
            webinar_id=webinar.provider_webinar_id,
        )
        try:
            async for page in stream:
                self._count_page(state, page, first=stream.pages_fetched == 1)
                state.stage = f"syncing_registrants:{webinar.topic}"
                rows = self._transform(state, "registrant", page.items, to_registrant_row, webinar.id)
                state.registrants_synced += await self._webinars.upsert_registrants(webinar.id, rows)
                await self._advance(state, len(page.items))
        except ResourceUnavailable as e:
            self._note_unavailable(state, webinar, ProviderEndpoint.REGISTRANTS, e)
            return False

        self._note_truncation(state, stream, ProviderEndpoint.REGISTRANTS, webinar)
        return True

    async def _sync_participants(
        self, client: ProviderApiClient, state: SyncRunState, webinar: StoredWebinar
    ) -> bool:
        stream = client.stream(
            ProviderEndpoint.PARTICIPANTS,
            page_size=self._page_size,
            webinar_id=webinar.provider_webinar_id,
        )
        try:
            async for page in stream:
                self._count_page(state, page, first=stream.pages_fetched == 1)
                state.stage = f"syncing_participants:{webinar.topic}"
                rows = self._transform(state, "participant", page.items, to_participant_row, webinar.id)
                state.participants_synced += await self._webinars.upsert_participants(webinar.id, rows)
                await self._advance(state, len(page.items))
        except ResourceUnavailable as e:
            self._note_unavailable(state, webinar, ProviderEndpoint.PARTICIPANTS, e)
            return False
        except (AuthInvalid, Fatal, DatabaseError) as e:
            await self._mark_participant_sync_failed(webinar, e)
            raise

        self._note_truncation(state, stream, ProviderEndpoint.PARTICIPANTS, webinar)
        return True

    async def _sync_engagement(
        self, client: ProviderApiClient, state: SyncRunState, webinar: StoredWebinar
    ) -> None:
        wanted = (
            (state.options.include_polls, ProviderEndpoint.POLLS),
            (state.options.include_qa, ProviderEndpoint.QA),
        )
        reports: dict[str, Any] = {}
        for enabled, endpoint in wanted:
            if not enabled:
                continue
            try:
                reports[endpoint.value] = await client.fetch_resource(
                    endpoint, webinar_id=webinar.provider_webinar_id
                )
            except ResourceUnavailable as e:
                self._note_unavailable(state, webinar, endpoint, e)

        await self._webinars.save_engagement_reports(webinar.id, reports)

    async def _recompute(self, webinar: StoredWebinar, participants_synced: bool) -> None:
        """Rebuild counters and attendance from the stored child rows."""
        registrants = await self._webinars.list_registrant_refs(webinar.id)
        participants = await self._webinars.list_participants(webinar.id)
        metrics = compute_metrics(len(registrants), participants)

        outcome = None
        if participants_synced:
            outcome = (
                ParticipantSyncStatus.COMPLETED
                if metrics.attendee_count > 0
                else ParticipantSyncStatus.NO_PARTICIPANTS
            )

        await self._webinars.save_webinar_metrics(
            webinar.id, metrics, outcome, match_attendance(registrants, participants)
        )

    # ------------------------------------------------------------------
    # Page bookkeeping
    # ------------------------------------------------------------------

    def _transform(self, state: SyncRunState, entity: str, items: list, transform, parent_id: str) -> list:
        rows = []
        for record in items:
            try:
                if not isinstance(record, dict):
                    raise ValidationError("record", "is not an object")
                rows.append(transform(record, parent_id))
            except ValidationError as e:
                state.record_skip(entity, e, record)
                logger.warning(
                    "Skipping invalid provider record",
                    entity=entity,
                    field=e.field,
                    reason=e.reason,
                )
        return rows

    @staticmethod
    def _count_page(state: SyncRunState, page: Page, *, first: bool) -> None:
        # total_records describes the whole stream and arrives on every page
        if first:
            state.total += page.total_records if page.total_records is not None else len(page.items)
        elif page.total_records is None:
            state.total += len(page.items)

    async def _advance(self, state: SyncRunState, handled: int) -> None:
        """Persist progress for the page just written, then honor cancellation."""
        state.processed += handled
        state.total = max(state.total, state.processed)

        still_active = await self._job_store.update_progress(
            state.job.id,
            state.processed,
            state.total,
            state.stage,
            current_item_index=state.current_item_index,
            metadata=state.metadata(),
        )

        eta = estimate_completion(state.started_at, state.processed, state.total, self._clock())
        await self._progress.publish(state.job.id, state.processed, state.total, state.stage, eta)

        if not still_active:
            logger.warning("Sync job was finalized elsewhere, stopping")
            raise JobCancelled()

        await self._check_cancelled(state.job.id)

    async def _check_cancelled(self, job_id: str) -> None:
        if job_id in self._cancel_requested or await self._job_store.is_cancel_requested(job_id):
            logger.info("Sync job cancellation acknowledged")
            raise JobCancelled()

    def _note_truncation(
        self,
        state: SyncRunState,
        stream,
        endpoint: ProviderEndpoint,
        webinar: StoredWebinar | None = None,
    ) -> None:
        if not stream.truncated:
            return
        # Earlier streams are fully processed and later ones are not counted yet,
        # so whatever total exceeds processed here is the unfetched remainder
        state.total = state.processed
        entry = {"endpoint": endpoint.value, "reason": stream.stop_reason, "pages": stream.pages_fetched}
        if webinar is not None:
            entry["webinar_id"] = webinar.id
        state.truncated_streams.append(entry)

    @staticmethod
    def _note_unavailable(
        state: SyncRunState, webinar: StoredWebinar, endpoint: ProviderEndpoint, error: ResourceUnavailable
    ) -> None:
        state.unavailable_resources.append(
            {"webinar_id": webinar.id, "endpoint": endpoint.value, "status_code": error.status_code}
        )
        logger.info(
            "Provider resource unavailable, skipping",
            webinar_id=webinar.id,
            endpoint=endpoint.value,
            status_code=error.status_code,
        )

    async def _mark_participant_sync_failed(self, webinar: StoredWebinar, error: Exception) -> None:
        try:
            await self._webinars.set_participant_sync_status(
                webinar.id, ParticipantSyncStatus.FAILED, describe_failure(error)
            )
        except DatabaseError as e:
            logger.error("Could not record participant sync failure", webinar_id=webinar.id, error=str(e))

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _flush(self, state: SyncRunState) -> None:
        """Write the last known counters before the job is closed."""
        try:
            await self._job_store.update_progress(
                state.job.id,
                state.processed,
                state.total,
                state.stage,
                current_item_index=state.current_item_index,
                metadata=state.metadata(),
            )
        except DatabaseError as e:
            logger.error("Could not flush progress before failing job", error=str(e))

    async def _finish(self, state: SyncRunState, outcome: JobStatus) -> None:
        if state.truncated_streams:
            await self._flush(state)
        await self._job_store.finalize(state.job.id, outcome, metadata=state.metadata())
        await self._progress.clear(state.job.id)
        logger.info(
            "Sync job finished",
            outcome=outcome.value,
            processed=state.processed,
            total=state.total,
            skipped_rows=state.skipped_rows,
        )

    async def _fail(self, state: SyncRunState, error: Exception) -> None:
        message = describe_failure(error)
        await self._flush(state)
        metadata = state.metadata()
        metadata["error_type"] = type(error).__name__
        try:
            await self._job_store.finalize(state.job.id, JobStatus.FAILED, message, metadata=metadata)
        except DatabaseError as e:
            # The reconciler will close the job once it goes stale
            logger.error("Could not finalize failed job", error=str(e))
        await self._progress.clear(state.job.id)
        logger.error(
            "Sync job failed",
            error=str(error),
            error_type=type(error).__name__,
            processed=state.processed,
        )

