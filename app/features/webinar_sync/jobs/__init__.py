"""
Job runners for the webinar sync feature.
"""

from .sync_jobs import (
    run_metrics_repair,
    run_scheduled_sync,
    run_schema_setup,
    run_stuck_job_cleanup,
    start_metrics_repair_scheduler,
    start_stuck_job_cleanup_scheduler,
    start_webinar_sync_scheduler,
)

__all__ = [
    "run_metrics_repair",
    "run_scheduled_sync",
    "run_schema_setup",
    "run_stuck_job_cleanup",
    "start_metrics_repair_scheduler",
    "start_stuck_job_cleanup_scheduler",
    "start_webinar_sync_scheduler",
]
