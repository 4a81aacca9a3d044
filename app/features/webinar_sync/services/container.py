"""
Wiring for the webinar sync services.

The API lifespan and the worker jobs both build their components here so a
process holds exactly one orchestrator and its collaborators share stores.
"""

from dataclasses import dataclass

from app.features.webinar_sync.repository.connection_repository import ConnectionRepository
from app.features.webinar_sync.repository.sync_job_repository import SyncJobRepository
from app.features.webinar_sync.repository.webinar_repository import WebinarRepository
from app.features.webinar_sync.services.metrics_repair import MetricsRepairPass
from app.features.webinar_sync.services.orchestrator import SyncOrchestrator
from app.features.webinar_sync.services.progress import KeyValueStore, ProgressReporter
from app.features.webinar_sync.services.reconciler import StuckJobReconciler


@dataclass(slots=True)
class SyncServices:
    connections: ConnectionRepository
    job_store: SyncJobRepository
    webinars: WebinarRepository
    reconciler: StuckJobReconciler
    progress: ProgressReporter
    repair: MetricsRepairPass
    orchestrator: SyncOrchestrator


def build_sync_services(store: KeyValueStore, **orchestrator_kwargs) -> SyncServices:
    """Assemble the sync components around a progress store (normally Redis)."""
    connections = ConnectionRepository()
    job_store = SyncJobRepository()
    webinars = WebinarRepository()
    reconciler = StuckJobReconciler(job_store)
    progress = ProgressReporter(store)

    orchestrator = SyncOrchestrator(
        connections=connections,
        job_store=job_store,
        reconciler=reconciler,
        webinars=webinars,
        progress=progress,
        **orchestrator_kwargs,
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
