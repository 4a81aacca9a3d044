"""
Webinar sync routes.

Start, cancel and poll sync jobs, clean stuck jobs on demand, and run the
metrics repair pass. Every endpoint is scoped to connections owned by the
authenticated user.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.auth.verify import auth_dependency
from app.db.helpers import DatabaseError
from app.features.webinar_sync.api.schemas import (
    JobListResponse,
    JobStatusResponse,
    ReconcileResponse,
    RepairReportResponse,
    RepairResultResponse,
    RepairSummaryResponse,
    StartSyncRequest,
    StartSyncResponse,
)
from app.features.webinar_sync.domain.errors import (
    AlreadyRunning,
    ConnectionInvalid,
    JobNotFound,
)
from app.features.webinar_sync.domain.models import JobStatus
from app.features.webinar_sync.services.container import SyncServices
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webinar-sync", tags=["webinar-sync"])


def get_sync_services(request: Request) -> SyncServices:
    """Sync components built by the application lifespan."""
    services = getattr(request.app.state, "webinar_sync", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webinar sync is not available",
        )
    return services


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


async def _authorize_connection(services: SyncServices, user_id: str, connection_id: str) -> None:
    owner_id = await services.connections.get_owner_id(connection_id)
    if owner_id != user_id:
        # Same answer for missing and foreign connections
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")


async def _load_authorized_job(services: SyncServices, user_id: str, job_id: str) -> dict:
    try:
        job = await services.orchestrator.get_job_status(job_id)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync job not found")

    owner_id = await services.connections.get_owner_id(job["connection_id"])
    if owner_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync job not found")
    return job


@router.post(
    "/connections/{connection_id}/sync",
    response_model=StartSyncResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_sync(
    connection_id: str,
    body: StartSyncRequest | None = None,
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    """Queue a sync job; the job runs in the background and is polled via /jobs/{id}."""
    user_id = _user_id(claims)
    await _authorize_connection(services, user_id, connection_id)
    body = body or StartSyncRequest()

    try:
        job_id = await services.orchestrator.start_sync(
            connection_id, body.kind, body.options.to_options(), wait=False
        )
    except AlreadyRunning as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(e),
                "job_id": e.job_id,
                "age_minutes": round(e.age_minutes, 1),
            },
        )
    except ConnectionInvalid as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DatabaseError as e:
        logger.error("Could not start sync", connection_id=connection_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not start sync"
        )

    logger.info("Sync requested", connection_id=connection_id, job_id=job_id, kind=body.kind.value)
    return StartSyncResponse(
        job_id=job_id,
        connection_id=connection_id,
        kind=body.kind,
        status_url=f"{router.prefix}/jobs/{job_id}",
    )


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_sync(
    job_id: str,
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    """Request cancellation; a running job stops after its current page."""
    await _load_authorized_job(services, _user_id(claims), job_id)

    try:
        job = await services.orchestrator.cancel_sync(job_id)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync job not found")

    return JobStatusResponse(**job.to_dict())


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    job = await _load_authorized_job(services, _user_id(claims), job_id)
    return JobStatusResponse(**job)


@router.get("/connections/{connection_id}/jobs", response_model=JobListResponse)
async def list_recent_jobs(
    connection_id: str,
    limit: int = Query(default=10, ge=1, le=100, description="Maximum jobs to return (1-100)"),
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    await _authorize_connection(services, _user_id(claims), connection_id)
    jobs = await services.orchestrator.list_recent_jobs(connection_id, limit)
    return JobListResponse(
        jobs=[JobStatusResponse(**job.to_dict()) for job in jobs],
        total_count=len(jobs),
    )


@router.post("/connections/{connection_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_connection(
    connection_id: str,
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    """Clear stuck jobs for one connection."""
    await _authorize_connection(services, _user_id(claims), connection_id)
    result = await services.reconciler.reconcile(connection_id)
    return ReconcileResponse(**result.to_dict())


@router.get("/repair/report", response_model=RepairReportResponse)
async def repair_report(
    connection_id: str = Query(..., description="Connection to report on"),
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    await _authorize_connection(services, _user_id(claims), connection_id)
    return RepairReportResponse(**await services.repair.report(connection_id))


@router.post("/repair", response_model=RepairSummaryResponse)
async def run_repair(
    connection_id: str = Query(..., description="Connection whose webinars to repair"),
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    """Recompute counters for every webinar of the connection that looks wrong."""
    await _authorize_connection(services, _user_id(claims), connection_id)
    return RepairSummaryResponse(**await services.repair.repair_all(connection_id))


@router.post("/repair/webinars/{webinar_id}", response_model=RepairResultResponse)
async def repair_webinar(
    webinar_id: str,
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    user_id = _user_id(claims)
    webinar = await services.webinars.get_webinar(webinar_id)
    if webinar is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webinar not found")
    await _authorize_connection(services, user_id, webinar.connection_id)

    try:
        result = await services.repair.repair(webinar_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webinar not found")

    return RepairResultResponse(**result.to_dict())


@router.get("/connections/{connection_id}/health")
async def connection_sync_health(
    connection_id: str,
    claims: dict = Depends(auth_dependency),
    services: SyncServices = Depends(get_sync_services),
):
    """Active job (if any) and the most recent outcome for a connection."""
    await _authorize_connection(services, _user_id(claims), connection_id)
    recent = await services.orchestrator.list_recent_jobs(connection_id, 1)
    active = await services.job_store.find_active(connection_id)

    last = recent[0] if recent else None
    return {
        "connection_id": connection_id,
        "active_job_id": active.id if active else None,
        "last_job_status": last.status if last else None,
        "last_error": last.error_message if last else None,
        "healthy": last is None or last.status != JobStatus.FAILED.value,
    }

