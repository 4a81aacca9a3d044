"""Domain layer exports for the webinar sync feature."""

from .errors import (  # noqa: F401
    AlreadyRunning,
    AuthInvalid,
    ConnectionInvalid,
    Fatal,
    JobNotFound,
    RateLimited,
    ResourceUnavailable,
    Transient,
    ValidationError,
    WebinarSyncError,
    describe_failure,
)
from .models import (  # noqa: F401
    AttendanceMatch,
    Connection,
    JobKind,
    JobStatus,
    Page,
    ParticipantRow,
    ParticipantStatus,
    ParticipantSyncStatus,
    RegistrantRef,
    RegistrantRow,
    RegistrantStatus,
    RepairResult,
    StoredWebinar,
    SyncJob,
    SyncOptions,
    WebinarMetrics,
    WebinarRow,
    WebinarStatus,
)
