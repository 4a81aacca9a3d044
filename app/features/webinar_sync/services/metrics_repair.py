"""
Metrics repair / backfill pass.

Finds webinars whose cached counters look wrong after a partial sync and
rebuilds them from the registrant and participant rows. Pure recomputation,
so it can run at any time, alongside syncs or on its own schedule.
"""

from app.features.webinar_sync.domain.models import RepairResult
from app.features.webinar_sync.repository.webinar_repository import WebinarRepository
from app.features.webinar_sync.services.aggregates import (
    compute_metrics,
    match_attendance,
    participant_sync_outcome,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MetricsRepairPass:
    def __init__(self, webinars: WebinarRepository):
        self._webinars = webinars

    async def find_needing_repair(self, connection_id: str | None = None) -> list[str]:
        return await self._webinars.find_webinars_needing_repair(connection_id)

    async def repair(self, webinar_id: str) -> RepairResult:
        """
        Recompute one webinar's counters, attendance and participant sync status.

        Raises:
            LookupError: webinar does not exist
        """
        webinar = await self._webinars.get_webinar(webinar_id)
        if webinar is None:
            raise LookupError(f"Webinar {webinar_id} not found")

        registrants = await self._webinars.list_registrant_refs(webinar_id)
        participants = await self._webinars.list_participants(webinar_id)

        metrics = compute_metrics(len(registrants), participants)
        outcome = participant_sync_outcome(metrics)
        attendance = match_attendance(registrants, participants)

        await self._webinars.save_webinar_metrics(webinar_id, metrics, outcome, attendance)

        result = RepairResult(
            webinar_id=webinar_id,
            registrants=metrics.registrant_count,
            attendees=metrics.attendee_count,
            minutes=metrics.total_engaged_minutes,
            average_duration=metrics.avg_attendance_duration,
            absentees=metrics.total_absentees,
            participant_sync_status=(outcome.value if outcome else webinar.participant_sync_status),
        )

        if webinar.attendee_count != metrics.attendee_count or (
            webinar.registrant_count != metrics.registrant_count
        ):
            logger.info(
                "Webinar metrics corrected",
                webinar_id=webinar_id,
                previous_attendees=webinar.attendee_count,
                attendees=metrics.attendee_count,
                previous_registrants=webinar.registrant_count,
                registrants=metrics.registrant_count,
            )
        return result

    async def repair_all(self, connection_id: str | None = None) -> dict:
        """Repair every webinar matching the selection predicate."""
        webinar_ids = await self.find_needing_repair(connection_id)
        results: list[dict] = []
        errors: list[dict] = []

        for webinar_id in webinar_ids:
            try:
                results.append((await self.repair(webinar_id)).to_dict())
            except Exception as e:
                # One bad webinar must not stop the rest of the pass
                logger.error("Webinar metrics repair failed", webinar_id=webinar_id, error=str(e))
                errors.append({"webinar_id": webinar_id, "error": str(e)})

        summary = {
            "total": len(webinar_ids),
            "repaired": len(results),
            "errors": len(errors),
            "results": results,
            "failures": errors,
        }
        logger.info(
            "Metrics repair pass finished",
            connection_id=connection_id,
            total=summary["total"],
            repaired=summary["repaired"],
            errors=summary["errors"],
        )
        return summary

    async def report(self, connection_id: str | None = None) -> dict:
        """Counts describing how much repair work is outstanding."""
        return await self._webinars.repair_report(connection_id)

