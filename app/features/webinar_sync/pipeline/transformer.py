"""
Provider record → internal row mapping.

Pure functions: no I/O, no logging, no clock. A record missing the fields
that identify it raises ValidationError; everything else is best-effort
(unknown statuses fall back to defaults, unparseable timestamps become None).
"""

from datetime import UTC, datetime
from typing import Any

from app.features.webinar_sync.domain.errors import ValidationError
from app.features.webinar_sync.domain.models import ParticipantRow, RegistrantRow, WebinarRow
from app.features.webinar_sync.domain.status import (
    normalize_participant_status,
    normalize_registrant_status,
    normalize_webinar_status,
)

DEFAULT_TOPIC = "Untitled Webinar"


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 provider timestamp ("Z" suffix allowed)."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    # Provider timestamps are UTC even when the offset is omitted
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _identifier(value: Any) -> str | None:
    """Provider ids arrive as ints or strings; empty means absent."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any, default: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def to_webinar_row(record: dict[str, Any], connection_id: str) -> WebinarRow:
    provider_id = _identifier(record.get("id"))
    if not provider_id:
        raise ValidationError("id", "is required on webinar records")

    settings = record.get("settings")
    return WebinarRow(
        connection_id=connection_id,
        provider_webinar_id=provider_id,
        provider_uuid=_text(record.get("uuid")),
        topic=_text(record.get("topic")) or DEFAULT_TOPIC,
        agenda=_text(record.get("agenda")),
        host_id=_text(record.get("host_id")),
        host_email=_text(record.get("host_email")),
        start_time=parse_datetime(record.get("start_time")),
        duration=_int(record.get("duration")),
        timezone=_text(record.get("timezone")),
        status=normalize_webinar_status(record.get("status")).value,
        webinar_type=_int(record.get("type")),
        join_url=_text(record.get("join_url")),
        registration_url=_text(record.get("registration_url")),
        settings=settings if isinstance(settings, dict) else {},
    )


def to_registrant_row(record: dict[str, Any], webinar_id: str) -> RegistrantRow:
    provider_id = _identifier(record.get("id")) or _identifier(record.get("registrant_id"))
    if not provider_id:
        raise ValidationError("id", "is required on registrant records")

    email = _text(record.get("email"))
    if not email:
        raise ValidationError("email", "is required on registrant records")

    questions = record.get("custom_questions")
    return RegistrantRow(
        webinar_id=webinar_id,
        provider_registrant_id=provider_id,
        email=email.lower(),
        first_name=_text(record.get("first_name")),
        last_name=_text(record.get("last_name")),
        organization=_text(record.get("org")) or _text(record.get("organization")),
        job_title=_text(record.get("job_title")),
        custom_questions=questions if isinstance(questions, list) else [],
        status=normalize_registrant_status(record.get("status")).value,
        registration_time=parse_datetime(record.get("create_time")),
        join_url=_text(record.get("join_url")),
    )


def _participant_key(record: dict[str, Any]) -> str:
    # user_id is unique per join segment; fall back to identity + join time
    segment_id = _identifier(record.get("user_id"))
    if segment_id:
        return segment_id

    identity = _identifier(record.get("id")) or _identifier(record.get("participant_user_id"))
    join_time = _text(record.get("join_time"))
    if identity and join_time:
        return f"{identity}:{join_time}"

    raise ValidationError("id", "participant record has no user_id, or id with join_time")


def to_participant_row(record: dict[str, Any], webinar_id: str) -> ParticipantRow:
    email = _text(record.get("user_email")) or _text(record.get("email"))
    return ParticipantRow(
        webinar_id=webinar_id,
        provider_participant_id=_participant_key(record),
        participant_identity=(
            _identifier(record.get("id")) or _identifier(record.get("participant_user_id"))
        ),
        registrant_provider_id=_identifier(record.get("registrant_id")),
        name=_text(record.get("name")),
        email=email.lower() if email else None,
        join_time=parse_datetime(record.get("join_time")),
        leave_time=parse_datetime(record.get("leave_time")),
        duration=max(_int(record.get("duration"), 0), 0),
        raised_hand=_flag(record.get("raised_hand")),
        asked_question=_flag(record.get("asked_question")),
        answered_polling=_flag(record.get("answered_polling")),
        camera_on_duration=max(_int(record.get("camera_on_duration"), 0), 0),
        status=normalize_participant_status(record.get("status")).value,
    )
