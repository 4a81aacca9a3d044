from unittest.mock import AsyncMock

import pytest

from app.features.webinar_sync.domain.errors import ConnectionInvalid
from app.features.webinar_sync.domain.models import (
    AttendanceMatch,
    ParticipantRow,
    ParticipantSyncStatus,
    RegistrantRow,
    WebinarMetrics,
)
from app.features.webinar_sync.repository.connection_repository import ConnectionRepository
from app.features.webinar_sync.repository.webinar_repository import (
    WebinarRepository,
    dedupe_by_key,
)
from app.services.infrastructure.encryption_service import EncryptionError

CONNECTIONS = "app.features.webinar_sync.repository.connection_repository"
WEBINARS = "app.features.webinar_sync.repository.webinar_repository"


def connection_row(**fields):
    row = {
        "id": "conn-1",
        "user_id": "user-123",
        "access_token_encrypted": b"ciphertext",
        "token_expires_at": None,
        "is_active": True,
    }
    row.update(fields)
    return row


@pytest.mark.asyncio
async def test_load_connection_decrypts_token(monkeypatch):
    monkeypatch.setattr(f"{CONNECTIONS}.fetch_one", AsyncMock(return_value=connection_row()))
    monkeypatch.setattr(f"{CONNECTIONS}.decrypt_token", lambda blob: "plain-token")

    connection = await ConnectionRepository().load_connection("conn-1")

    assert connection.access_token == "plain-token"
    assert connection.user_id == "user-123"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "row,reason",
    [
        (None, "connection not found"),
        (connection_row(is_active=False), "connection is inactive"),
    ],
)
async def test_load_connection_rejects_unusable_rows(monkeypatch, row, reason):
    monkeypatch.setattr(f"{CONNECTIONS}.fetch_one", AsyncMock(return_value=row))

    with pytest.raises(ConnectionInvalid) as exc_info:
        await ConnectionRepository().load_connection("conn-1")

    assert exc_info.value.reason == reason


@pytest.mark.asyncio
async def test_load_connection_with_unreadable_token(monkeypatch):
    def broken(blob):
        raise EncryptionError("bad key")

    monkeypatch.setattr(f"{CONNECTIONS}.fetch_one", AsyncMock(return_value=connection_row()))
    monkeypatch.setattr(f"{CONNECTIONS}.decrypt_token", broken)

    with pytest.raises(ConnectionInvalid) as exc_info:
        await ConnectionRepository().load_connection("conn-1")

    assert exc_info.value.reason == "stored credentials are unreadable"


@pytest.mark.asyncio
async def test_get_owner_id(monkeypatch):
    fetch = AsyncMock(side_effect=[{"user_id": "user-123"}, None])
    monkeypatch.setattr(f"{CONNECTIONS}.fetch_one", fetch)
    repo = ConnectionRepository()

    assert await repo.get_owner_id("conn-1") == "user-123"
    assert await repo.get_owner_id("conn-x") is None


def test_dedupe_keeps_last_row_per_key():
    rows = [
        RegistrantRow("web-1", "r1", "old@example.com", "approved"),
        RegistrantRow("web-1", "r2", "b@example.com", "approved"),
        RegistrantRow("web-1", "r1", "new@example.com", "approved"),
    ]

    deduped = dedupe_by_key(rows, "provider_registrant_id")

    assert [row.email for row in deduped] == ["new@example.com", "b@example.com"]


@pytest.mark.asyncio
async def test_participant_upsert_dedupes_within_page(monkeypatch):
    execute_many = AsyncMock(side_effect=lambda query, payload: len(payload))
    monkeypatch.setattr(f"{WEBINARS}.execute_many", execute_many)
    rows = [
        ParticipantRow("web-1", "u1", "in_meeting", duration=60),
        ParticipantRow("web-1", "u1", "left", duration=120),
        ParticipantRow("web-1", "u2", "left", duration=30),
    ]

    written = await WebinarRepository().upsert_participants("web-1", rows)

    assert written == 2
    query, payload = execute_many.await_args.args
    assert "ON CONFLICT (webinar_id, provider_participant_id)" in query
    assert [params[8] for params in payload] == [120, 30]


@pytest.mark.asyncio
async def test_repair_report_coerces_counts(monkeypatch):
    fetch = AsyncMock(return_value={"total_webinars": 4, "needing_repair": 1, "zero_attendees": None})
    monkeypatch.setattr(f"{WEBINARS}.fetch_one", fetch)

    report = await WebinarRepository().repair_report("conn-1")

    assert report == {
        "total_webinars": 4,
        "needing_repair": 1,
        "zero_attendees": 0,
        "pending_participant_sync": 0,
        "failed_participant_sync": 0,
    }
    assert fetch.await_args.args[1] == ("ended", "conn-1")


class FakeTransaction:
    async def __aenter__(self):
        return "tx-conn"

    async def __aexit__(self, *exc_info):
        return False


@pytest.mark.asyncio
async def test_save_metrics_only_stamps_completion_on_status_change(monkeypatch):
    execute_query = AsyncMock(return_value=1)
    execute_many = AsyncMock(return_value=1)
    monkeypatch.setattr(f"{WEBINARS}.get_db_transaction", AsyncMock(return_value=FakeTransaction()))
    monkeypatch.setattr(f"{WEBINARS}.execute_query", execute_query)
    monkeypatch.setattr(f"{WEBINARS}.execute_many", execute_many)

    await WebinarRepository().save_webinar_metrics(
        "web-1",
        WebinarMetrics(2, 1, 40, 40.0, total_absentees=1),
        ParticipantSyncStatus.COMPLETED,
        [AttendanceMatch(registrant_id="reg-1", attended=True, duration=2400)],
    )

    query, params = execute_query.await_args.args
    assert "participant_sync_status IS NOT DISTINCT FROM %s::text" in query
    assert "total_absentees = %s" in query
    assert params == (2, 1, 40, 40.0, 1, "completed", "completed", "completed", "completed", "web-1")
    assert execute_query.await_args.kwargs == {"connection": "tx-conn"}
    assert execute_many.await_args.kwargs == {"connection": "tx-conn"}
