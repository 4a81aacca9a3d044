"""
Webinar sync feature package.

Pulls webinars, registrants and participants from the webinar provider into
Postgres, tracks each pull as a sync job, recovers from crashed workers and
keeps the derived webinar counters correct.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as webinar_sync_router  # noqa: F401
from .services.container import SyncServices, build_sync_services  # noqa: F401
from .services.orchestrator import SyncOrchestrator  # noqa: F401
from .jobs.sync_jobs import (  # noqa: F401
    start_metrics_repair_scheduler,
    start_stuck_job_cleanup_scheduler,
    start_webinar_sync_scheduler,
)
from .domain.models import JobKind, JobStatus, SyncOptions  # noqa: F401
