"""
Webinar sync API request/response models.
Used by the router for input validation and response shaping.
"""

from typing import Any

from pydantic import BaseModel, Field

from app.features.webinar_sync.domain.models import JobKind, SyncOptions


class SyncOptionsRequest(BaseModel):
    """Which streams a sync should pull."""

    include_registrants: bool = Field(default=True, description="Sync registrant lists")
    include_participants: bool = Field(
        default=True, description="Sync participant reports for ended webinars"
    )
    include_polls: bool = Field(default=False, description="Fetch poll reports")
    include_qa: bool = Field(default=False, description="Fetch Q&A reports")
    force_refresh: bool = Field(
        default=False, description="Re-sync webinars already marked as synced"
    )

    def to_options(self) -> SyncOptions:
        return SyncOptions(**self.model_dump())


class StartSyncRequest(BaseModel):
    """Request for starting a sync job."""

    kind: JobKind = Field(default=JobKind.INCREMENTAL, description="Sync mode")
    options: SyncOptionsRequest = Field(default_factory=SyncOptionsRequest)


class StartSyncResponse(BaseModel):
    job_id: str
    connection_id: str
    kind: JobKind
    status_url: str


class JobStatusResponse(BaseModel):
    """Polling view of one sync job."""

    id: str
    connection_id: str
    kind: str
    status: str
    stage: str | None = None
    processed_items: int = 0
    total_items: int = 0
    current_item_index: int = 0
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    progress: dict[str, Any] | None = None


class JobListResponse(BaseModel):
    jobs: list[JobStatusResponse]
    total_count: int


class ReconcileResponse(BaseModel):
    cleaned: list[str]
    cleaned_count: int


class RepairReportResponse(BaseModel):
    total_webinars: int = 0
    needing_repair: int = 0
    zero_attendees: int = 0
    pending_participant_sync: int = 0
    failed_participant_sync: int = 0


class RepairResultResponse(BaseModel):
    webinar_id: str
    registrants: int
    attendees: int
    minutes: int
    average_duration: float
    absentees: int = 0
    participant_sync_status: str | None = None


class RepairSummaryResponse(BaseModel):
    total: int
    repaired: int
    errors: int
    results: list[RepairResultResponse]
    failures: list[dict[str, Any]]
