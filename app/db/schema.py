"""
Table definitions for the webinar sync store.

Every statement is idempotent (IF NOT EXISTS), so applying the schema on an
already provisioned database is a no-op. The repositories depend on the
unique keys declared here: entity upserts use them as ON CONFLICT targets and
job creation relies on the partial index to allow one active job per
connection.
"""

from app.db.helpers import execute_query
from app.db.pool import get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS webinar_connections (
        id                      UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id                 TEXT        NOT NULL,
        access_token_encrypted  BYTEA       NOT NULL,
        token_expires_at        TIMESTAMPTZ NULL,
        is_active               BOOLEAN     NOT NULL DEFAULT true,
        created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webinar_sync_jobs (
        id                  UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
        connection_id       UUID        NOT NULL REFERENCES webinar_connections(id) ON DELETE CASCADE,
        kind                TEXT        NOT NULL,
        status              TEXT        NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
        stage               TEXT        NULL,
        total_items         INTEGER     NOT NULL DEFAULT 0,
        processed_items     INTEGER     NOT NULL DEFAULT 0,
        current_item_index  INTEGER     NULL,
        error_message       TEXT        NULL,
        metadata            JSONB       NOT NULL DEFAULT '{}'::jsonb,
        created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
        started_at          TIMESTAMPTZ NULL,
        completed_at        TIMESTAMPTZ NULL,
        updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS webinar_sync_jobs_one_active_per_connection
        ON webinar_sync_jobs (connection_id)
        WHERE status IN ('pending', 'running')
    """,
    """
    CREATE INDEX IF NOT EXISTS webinar_sync_jobs_connection_created
        ON webinar_sync_jobs (connection_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS webinars (
        id                              UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
        connection_id                   UUID        NOT NULL REFERENCES webinar_connections(id) ON DELETE CASCADE,
        provider_webinar_id             TEXT        NOT NULL,
        provider_uuid                   TEXT        NULL,
        topic                           TEXT        NOT NULL,
        agenda                          TEXT        NULL,
        host_id                         TEXT        NULL,
        host_email                      TEXT        NULL,
        start_time                      TIMESTAMPTZ NULL,
        duration                        INTEGER     NULL,
        timezone                        TEXT        NULL,
        status                          TEXT        NOT NULL,
        webinar_type                    INTEGER     NULL,
        join_url                        TEXT        NULL,
        registration_url                TEXT        NULL,
        settings                        JSONB       NOT NULL DEFAULT '{}'::jsonb,
        engagement_reports              JSONB       NULL,
        registrant_count                INTEGER     NULL,
        attendee_count                  INTEGER     NULL,
        total_engaged_minutes           INTEGER     NULL,
        avg_attendance_duration         NUMERIC(10, 2) NULL,
        total_absentees                 INTEGER     NULL,
        participant_sync_status         TEXT        NOT NULL DEFAULT 'pending',
        participant_sync_error          TEXT        NULL,
        participant_sync_completed_at   TIMESTAMPTZ NULL,
        created_at                      TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at                      TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (connection_id, provider_webinar_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webinar_registrants (
        id                      UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
        webinar_id              UUID        NOT NULL REFERENCES webinars(id) ON DELETE CASCADE,
        provider_registrant_id  TEXT        NOT NULL,
        email                   TEXT        NOT NULL,
        first_name              TEXT        NULL,
        last_name               TEXT        NULL,
        organization            TEXT        NULL,
        job_title               TEXT        NULL,
        custom_questions        JSONB       NOT NULL DEFAULT '[]'::jsonb,
        status                  TEXT        NOT NULL,
        registration_time       TIMESTAMPTZ NULL,
        join_url                TEXT        NULL,
        attended                BOOLEAN     NOT NULL DEFAULT false,
        join_time               TIMESTAMPTZ NULL,
        leave_time              TIMESTAMPTZ NULL,
        duration                INTEGER     NOT NULL DEFAULT 0,
        created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (webinar_id, provider_registrant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webinar_participants (
        id                      UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
        webinar_id              UUID        NOT NULL REFERENCES webinars(id) ON DELETE CASCADE,
        provider_participant_id TEXT        NOT NULL,
        participant_identity    TEXT        NULL,
        registrant_provider_id  TEXT        NULL,
        name                    TEXT        NULL,
        email                   TEXT        NULL,
        join_time               TIMESTAMPTZ NULL,
        leave_time              TIMESTAMPTZ NULL,
        duration                INTEGER     NOT NULL DEFAULT 0,
        raised_hand             BOOLEAN     NOT NULL DEFAULT false,
        asked_question          BOOLEAN     NOT NULL DEFAULT false,
        answered_polling        BOOLEAN     NOT NULL DEFAULT false,
        camera_on_duration      INTEGER     NOT NULL DEFAULT 0,
        status                  TEXT        NOT NULL,
        created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (webinar_id, provider_participant_id)
    )
    """,
]


async def apply_schema() -> int:
    """Create any missing tables and indexes in one transaction."""
    async with await get_db_transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await execute_query(statement, connection=conn)

    logger.info("Webinar sync schema applied", statements=len(SCHEMA_STATEMENTS))
    return len(SCHEMA_STATEMENTS)
