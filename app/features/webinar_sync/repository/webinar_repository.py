"""
Persistence for webinars, registrants and participants.

Entity writes are upserts keyed by the provider's natural identifiers, so a
replayed page overwrites rather than duplicates. Upserts only touch
provider-owned columns; aggregate counters, the participant sync status and
registrant attendance are derived data written by `save_webinar_metrics`.
"""

from collections.abc import Iterable
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_many, execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from app.db.pool import get_db_transaction
from app.features.webinar_sync.domain.models import (
    AttendanceMatch,
    ParticipantRow,
    ParticipantSyncStatus,
    RegistrantRef,
    RegistrantRow,
    StoredWebinar,
    WebinarMetrics,
    WebinarRow,
    WebinarStatus,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

WEBINAR_SELECT_COLUMNS = """
    id, connection_id, provider_webinar_id, topic, status, start_time, duration,
    registrant_count, attendee_count, total_engaged_minutes, avg_attendance_duration,
    total_absentees, participant_sync_status
"""

UPSERT_WEBINAR_QUERY = f"""
    INSERT INTO webinars (
        connection_id, provider_webinar_id, provider_uuid, topic, agenda,
        host_id, host_email, start_time, duration, timezone, status,
        webinar_type, join_url, registration_url, settings,
        participant_sync_status, updated_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending', NOW())
    ON CONFLICT (connection_id, provider_webinar_id) DO UPDATE SET
        provider_uuid = EXCLUDED.provider_uuid,
        topic = EXCLUDED.topic,
        agenda = EXCLUDED.agenda,
        host_id = EXCLUDED.host_id,
        host_email = EXCLUDED.host_email,
        start_time = EXCLUDED.start_time,
        duration = EXCLUDED.duration,
        timezone = EXCLUDED.timezone,
        status = EXCLUDED.status,
        webinar_type = EXCLUDED.webinar_type,
        join_url = EXCLUDED.join_url,
        registration_url = EXCLUDED.registration_url,
        settings = EXCLUDED.settings,
        updated_at = NOW()
    RETURNING {WEBINAR_SELECT_COLUMNS}
"""

UPSERT_REGISTRANT_QUERY = """
    INSERT INTO webinar_registrants (
        webinar_id, provider_registrant_id, email, first_name, last_name,
        organization, job_title, custom_questions, status, registration_time,
        join_url, updated_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
    ON CONFLICT (webinar_id, provider_registrant_id) DO UPDATE SET
        email = EXCLUDED.email,
        first_name = EXCLUDED.first_name,
        last_name = EXCLUDED.last_name,
        organization = EXCLUDED.organization,
        job_title = EXCLUDED.job_title,
        custom_questions = EXCLUDED.custom_questions,
        status = EXCLUDED.status,
        registration_time = EXCLUDED.registration_time,
        join_url = EXCLUDED.join_url,
        updated_at = NOW()
"""

UPSERT_PARTICIPANT_QUERY = """
    INSERT INTO webinar_participants (
        webinar_id, provider_participant_id, participant_identity,
        registrant_provider_id, name, email, join_time, leave_time, duration,
        raised_hand, asked_question, answered_polling, camera_on_duration,
        status, updated_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
    ON CONFLICT (webinar_id, provider_participant_id) DO UPDATE SET
        participant_identity = EXCLUDED.participant_identity,
        registrant_provider_id = EXCLUDED.registrant_provider_id,
        name = EXCLUDED.name,
        email = EXCLUDED.email,
        join_time = EXCLUDED.join_time,
        leave_time = EXCLUDED.leave_time,
        duration = EXCLUDED.duration,
        raised_hand = EXCLUDED.raised_hand,
        asked_question = EXCLUDED.asked_question,
        answered_polling = EXCLUDED.answered_polling,
        camera_on_duration = EXCLUDED.camera_on_duration,
        status = EXCLUDED.status,
        updated_at = NOW()
"""

# Shared by find_webinars_needing_repair and repair_report
NEEDS_REPAIR_PREDICATE = """
    (
        (COALESCE(attendee_count, 0) = 0
         AND COALESCE(registrant_count, 0) > 0
         AND status = 'ended')
        OR participant_sync_status IN ('pending', 'failed')
    )
"""


def dedupe_by_key(rows: Iterable, key_attr: str) -> list:
    """Collapse rows sharing a natural key; the last one wins."""
    latest: dict[str, Any] = {}
    for row in rows:
        latest[getattr(row, key_attr)] = row
    return list(latest.values())


def _row_to_webinar(row: dict | None) -> StoredWebinar | None:
    if not row:
        return None

    avg = row.get("avg_attendance_duration")
    return StoredWebinar(
        id=str(row["id"]),
        connection_id=str(row["connection_id"]),
        provider_webinar_id=row["provider_webinar_id"],
        topic=row["topic"],
        status=row["status"],
        start_time=row.get("start_time"),
        duration=row.get("duration"),
        registrant_count=row.get("registrant_count"),
        attendee_count=row.get("attendee_count"),
        total_engaged_minutes=row.get("total_engaged_minutes"),
        avg_attendance_duration=float(avg) if avg is not None else None,
        total_absentees=row.get("total_absentees"),
        participant_sync_status=row.get("participant_sync_status")
        or ParticipantSyncStatus.PENDING.value,
    )


def _row_to_participant(row: dict) -> ParticipantRow:
    return ParticipantRow(
        webinar_id=str(row["webinar_id"]),
        provider_participant_id=row["provider_participant_id"],
        participant_identity=row.get("participant_identity"),
        registrant_provider_id=row.get("registrant_provider_id"),
        name=row.get("name"),
        email=row.get("email"),
        join_time=row.get("join_time"),
        leave_time=row.get("leave_time"),
        duration=row.get("duration") or 0,
        raised_hand=bool(row.get("raised_hand")),
        asked_question=bool(row.get("asked_question")),
        answered_polling=bool(row.get("answered_polling")),
        camera_on_duration=row.get("camera_on_duration") or 0,
        status=row["status"],
    )


class WebinarRepository:
    """Storage for the three synced entity tables."""

    @with_db_retry()
    async def upsert_webinars(self, rows: list[WebinarRow]) -> list[StoredWebinar]:
        """Upsert a page of webinars and return the stored rows in input order."""
        rows = dedupe_by_key(rows, "provider_webinar_id")
        if not rows:
            return []

        stored: list[StoredWebinar] = []
        async with await get_db_transaction() as conn:
            for row in rows:
                result = await fetch_one(
                    UPSERT_WEBINAR_QUERY,
                    (
                        row.connection_id,
                        row.provider_webinar_id,
                        row.provider_uuid,
                        row.topic,
                        row.agenda,
                        row.host_id,
                        row.host_email,
                        row.start_time,
                        row.duration,
                        row.timezone,
                        row.status,
                        row.webinar_type,
                        row.join_url,
                        row.registration_url,
                        Jsonb(row.settings),
                    ),
                    connection=conn,
                )
                stored.append(_row_to_webinar(result))

        logger.debug("Webinars upserted", batch_size=len(stored))
        return stored

    @with_db_retry()
    async def upsert_registrants(self, webinar_id: str, rows: list[RegistrantRow]) -> int:
        payload = [
            (
                webinar_id,
                row.provider_registrant_id,
                row.email,
                row.first_name,
                row.last_name,
                row.organization,
                row.job_title,
                Jsonb(row.custom_questions),
                row.status,
                row.registration_time,
                row.join_url,
            )
            for row in dedupe_by_key(rows, "provider_registrant_id")
        ]
        written = await execute_many(UPSERT_REGISTRANT_QUERY, payload)
        logger.debug("Registrants upserted", webinar_id=webinar_id, batch_size=written)
        return written

    @with_db_retry()
    async def upsert_participants(self, webinar_id: str, rows: list[ParticipantRow]) -> int:
        payload = [
            (
                webinar_id,
                row.provider_participant_id,
                row.participant_identity,
                row.registrant_provider_id,
                row.name,
                row.email,
                row.join_time,
                row.leave_time,
                row.duration,
                row.raised_hand,
                row.asked_question,
                row.answered_polling,
                row.camera_on_duration,
                row.status,
            )
            for row in dedupe_by_key(rows, "provider_participant_id")
        ]
        written = await execute_many(UPSERT_PARTICIPANT_QUERY, payload)
        logger.debug("Participants upserted", webinar_id=webinar_id, batch_size=written)
        return written

    @with_db_retry()
    async def get_webinar(self, webinar_id: str) -> StoredWebinar | None:
        query = f"SELECT {WEBINAR_SELECT_COLUMNS} FROM webinars WHERE id = %s"
        return _row_to_webinar(await fetch_one(query, (webinar_id,)))

    @with_db_retry()
    async def list_participant_sync_candidates(
        self, connection_id: str, include_synced: bool = False
    ) -> list[StoredWebinar]:
        """Stored webinars whose participants still need syncing (or all, when forced)."""
        query = f"""
            SELECT {WEBINAR_SELECT_COLUMNS}
            FROM webinars
            WHERE connection_id = %s
              AND (%s OR participant_sync_status IN ('pending', 'failed'))
            ORDER BY start_time DESC NULLS LAST
        """
        rows = await fetch_all(query, (connection_id, include_synced))
        return [_row_to_webinar(row) for row in rows]

    @with_db_retry()
    async def count_registrants(self, webinar_id: str) -> int:
        count = await fetch_val(
            "SELECT COUNT(*) FROM webinar_registrants WHERE webinar_id = %s", (webinar_id,)
        )
        return int(count or 0)

    @with_db_retry()
    async def list_registrant_refs(self, webinar_id: str) -> list[RegistrantRef]:
        rows = await fetch_all(
            """
            SELECT id, provider_registrant_id, email
            FROM webinar_registrants
            WHERE webinar_id = %s
            """,
            (webinar_id,),
        )
        return [
            RegistrantRef(
                id=str(row["id"]),
                provider_registrant_id=row["provider_registrant_id"],
                email=row.get("email"),
            )
            for row in rows
        ]

    @with_db_retry()
    async def list_participants(self, webinar_id: str) -> list[ParticipantRow]:
        rows = await fetch_all(
            """
            SELECT webinar_id, provider_participant_id, participant_identity,
                   registrant_provider_id, name, email, join_time, leave_time,
                   duration, raised_hand, asked_question, answered_polling,
                   camera_on_duration, status
            FROM webinar_participants
            WHERE webinar_id = %s
            ORDER BY provider_participant_id
            """,
            (webinar_id,),
        )
        return [_row_to_participant(row) for row in rows]

    @with_db_retry()
    async def save_webinar_metrics(
        self,
        webinar_id: str,
        metrics: WebinarMetrics,
        participant_sync_status: ParticipantSyncStatus | None,
        attendance: list[AttendanceMatch],
    ) -> None:
        """Write recomputed counters and registrant attendance in one transaction."""
        status_value = participant_sync_status.value if participant_sync_status else None

        async with await get_db_transaction() as conn:
            await execute_query(
                """
                UPDATE webinars
                SET registrant_count = %s,
                    attendee_count = %s,
                    total_engaged_minutes = %s,
                    avg_attendance_duration = %s,
                    total_absentees = %s,
                    participant_sync_status = COALESCE(%s::text, participant_sync_status),
                    participant_sync_error = CASE WHEN %s::text IS NULL
                        THEN participant_sync_error ELSE NULL END,
                    participant_sync_completed_at = CASE
                        WHEN %s::text IS NULL
                            OR participant_sync_status IS NOT DISTINCT FROM %s::text
                        THEN participant_sync_completed_at ELSE NOW() END,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (
                    metrics.registrant_count,
                    metrics.attendee_count,
                    metrics.total_engaged_minutes,
                    metrics.avg_attendance_duration,
                    metrics.total_absentees,
                    status_value,
                    status_value,
                    status_value,
                    status_value,
                    webinar_id,
                ),
                connection=conn,
            )

            if attendance:
                await execute_many(
                    """
                    UPDATE webinar_registrants
                    SET attended = %s, join_time = %s, leave_time = %s, duration = %s
                    WHERE id = %s
                    """,
                    [
                        (match.attended, match.join_time, match.leave_time, match.duration, match.registrant_id)
                        for match in attendance
                    ],
                    connection=conn,
                )

        logger.info(
            "Webinar metrics saved",
            webinar_id=webinar_id,
            registrants=metrics.registrant_count,
            attendees=metrics.attendee_count,
            participant_sync_status=status_value,
        )

    @with_db_retry()
    async def set_participant_sync_status(
        self, webinar_id: str, status: ParticipantSyncStatus, error: str | None = None
    ) -> None:
        await execute_query(
            """
            UPDATE webinars
            SET participant_sync_status = %s,
                participant_sync_error = %s,
                updated_at = NOW()
            WHERE id = %s
            """,
            (status.value, error[:500] if error else None, webinar_id),
        )

    @with_db_retry()
    async def save_engagement_reports(self, webinar_id: str, reports: dict[str, Any]) -> None:
        """Merge poll / Q&A report payloads into the webinar row."""
        if not reports:
            return
        await execute_query(
            """
            UPDATE webinars
            SET engagement_reports = COALESCE(engagement_reports, '{}'::jsonb) || %s,
                updated_at = NOW()
            WHERE id = %s
            """,
            (Jsonb(reports), webinar_id),
        )

    @with_db_retry()
    async def find_webinars_needing_repair(self, connection_id: str | None = None) -> list[str]:
        if connection_id:
            query = f"""
                SELECT id FROM webinars
                WHERE connection_id = %s AND {NEEDS_REPAIR_PREDICATE}
                ORDER BY start_time DESC NULLS LAST
            """
            rows = await fetch_all(query, (connection_id,))
        else:
            query = f"""
                SELECT id FROM webinars
                WHERE {NEEDS_REPAIR_PREDICATE}
                ORDER BY start_time DESC NULLS LAST
            """
            rows = await fetch_all(query)
        return [str(row["id"]) for row in rows]

    @with_db_retry()
    async def repair_report(self, connection_id: str | None = None) -> dict[str, int]:
        where = "WHERE connection_id = %s" if connection_id else ""
        params = (connection_id,) if connection_id else ()
        row = await fetch_one(
            f"""
            SELECT
                COUNT(*) AS total_webinars,
                COUNT(*) FILTER (WHERE {NEEDS_REPAIR_PREDICATE}) AS needing_repair,
                COUNT(*) FILTER (
                    WHERE status = %s AND COALESCE(attendee_count, 0) = 0
                ) AS zero_attendees,
                COUNT(*) FILTER (WHERE participant_sync_status = 'pending') AS pending_participant_sync,
                COUNT(*) FILTER (WHERE participant_sync_status = 'failed') AS failed_participant_sync
            FROM webinars
            {where}
            """,
            (WebinarStatus.ENDED.value, *params),
        )
        row = row or {}
        return {
            key: int(row.get(key) or 0)
            for key in (
                "total_webinars",
                "needing_repair",
                "zero_attendees",
                "pending_participant_sync",
                "failed_participant_sync",
            )
        }
