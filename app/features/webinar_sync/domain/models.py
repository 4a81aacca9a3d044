"""
Domain models for the webinar sync feature.

Plain dataclasses shared by the transformer, repositories, services and the
HTTP layer. Business rules live in the services; these only describe shapes.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
TERMINAL_JOB_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class JobKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    PARTICIPANTS_ONLY = "participants-only"


class WebinarStatus(str, Enum):
    SCHEDULED = "scheduled"
    UPCOMING = "upcoming"
    STARTED = "started"
    ENDED = "ended"
    OTHER = "other"


class RegistrantStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    DENIED = "denied"


class ParticipantStatus(str, Enum):
    IN_MEETING = "in_meeting"
    IN_WAITING_ROOM = "in_waiting_room"
    LEFT = "left"


class ParticipantSyncStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NO_PARTICIPANTS = "no_participants"
    FAILED = "failed"


@dataclass(slots=True)
class Connection:
    """A webinar provider account. Owned by the caller, read-only here."""

    id: str
    user_id: str | None
    access_token: str
    is_active: bool
    token_expires_at: datetime | None = None


@dataclass(slots=True)
class SyncOptions:
    """Per-job switches accepted by start_sync."""

    include_registrants: bool = True
    include_participants: bool = True
    include_polls: bool = False
    include_qa: bool = False
    force_refresh: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass(slots=True)
class SyncJob:
    """Represents a webinar_sync_jobs row."""

    id: str
    connection_id: str
    kind: str
    status: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    total_items: int = 0
    processed_items: int = 0
    stage: str | None = None
    current_item_index: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    @property
    def last_activity_at(self) -> datetime:
        return self.updated_at or self.started_at or self.created_at

    def to_dict(self) -> dict[str, Any]:
        """Fields exposed to status polling."""
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "kind": self.kind,
            "status": self.status,
            "stage": self.stage,
            "processed_items": self.processed_items,
            "total_items": self.total_items,
            "current_item_index": self.current_item_index,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class Page:
    """One page of a provider list endpoint."""

    items: list[dict[str, Any]]
    next_cursor: str | None
    has_more: bool
    total_records: int | None = None


@dataclass(slots=True)
class WebinarRow:
    connection_id: str
    provider_webinar_id: str
    topic: str
    status: str
    provider_uuid: str | None = None
    agenda: str | None = None
    host_id: str | None = None
    host_email: str | None = None
    start_time: datetime | None = None
    duration: int | None = None  # minutes
    timezone: str | None = None
    webinar_type: int | None = None
    join_url: str | None = None
    registration_url: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RegistrantRow:
    webinar_id: str
    provider_registrant_id: str
    email: str
    status: str
    first_name: str | None = None
    last_name: str | None = None
    organization: str | None = None
    job_title: str | None = None
    custom_questions: list[dict[str, Any]] = field(default_factory=list)
    registration_time: datetime | None = None
    join_url: str | None = None


@dataclass(slots=True)
class ParticipantRow:
    webinar_id: str
    provider_participant_id: str
    status: str
    participant_identity: str | None = None
    registrant_provider_id: str | None = None
    name: str | None = None
    email: str | None = None
    join_time: datetime | None = None
    leave_time: datetime | None = None
    duration: int = 0  # seconds
    raised_hand: bool = False
    asked_question: bool = False
    answered_polling: bool = False
    camera_on_duration: int = 0

    @property
    def identity_key(self) -> str:
        """Key used to collapse several join/leave segments into one attendee."""
        if self.email:
            return f"email:{self.email.strip().lower()}"
        if self.participant_identity:
            return f"id:{self.participant_identity}"
        return f"row:{self.provider_participant_id}"


@dataclass(slots=True)
class RegistrantRef:
    """The slice of a stored registrant needed for attendance matching."""

    id: str
    provider_registrant_id: str
    email: str | None


@dataclass(slots=True)
class StoredWebinar:
    """Webinar row as read back from storage."""

    id: str
    connection_id: str
    provider_webinar_id: str
    topic: str
    status: str
    start_time: datetime | None = None
    duration: int | None = None
    registrant_count: int | None = None
    attendee_count: int | None = None
    total_engaged_minutes: int | None = None
    avg_attendance_duration: float | None = None
    total_absentees: int | None = None
    participant_sync_status: str = ParticipantSyncStatus.PENDING.value


@dataclass(slots=True)
class WebinarMetrics:
    """Aggregate counters derived from child rows."""

    registrant_count: int
    attendee_count: int
    total_engaged_minutes: int
    avg_attendance_duration: float
    total_absentees: int = 0


@dataclass(slots=True)
class AttendanceMatch:
    """Derived attendance for one registrant."""

    registrant_id: str
    attended: bool
    join_time: datetime | None = None
    leave_time: datetime | None = None
    duration: int = 0


@dataclass(slots=True)
class RepairResult:
    webinar_id: str
    registrants: int
    attendees: int
    minutes: int
    average_duration: float
    absentees: int
    participant_sync_status: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
