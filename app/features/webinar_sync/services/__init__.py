"""Service layer for the webinar sync feature."""

from .aggregates import (  # noqa: F401
    compute_metrics,
    is_participant_eligible,
    match_attendance,
    participant_sync_outcome,
)
from .container import SyncServices, build_sync_services  # noqa: F401
from .metrics_repair import MetricsRepairPass  # noqa: F401
from .orchestrator import SyncOrchestrator  # noqa: F401
from .progress import ProgressReporter  # noqa: F401
from .reconciler import ReconcileResult, StuckJobReconciler  # noqa: F401
