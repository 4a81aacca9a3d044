"""
Provider status vocabularies mapped onto internal enums.

The provider has used different status strings across API versions, so each
entity type gets exactly one lookup table plus a documented default. Unknown
or missing values never fail a row; they fall back to the default.
"""

from app.features.webinar_sync.domain.models import (
    ParticipantStatus,
    RegistrantStatus,
    WebinarStatus,
)

DEFAULT_WEBINAR_STATUS = WebinarStatus.SCHEDULED
DEFAULT_REGISTRANT_STATUS = RegistrantStatus.APPROVED
DEFAULT_PARTICIPANT_STATUS = ParticipantStatus.IN_MEETING

WEBINAR_STATUS_MAP: dict[str, WebinarStatus] = {
    "waiting": WebinarStatus.SCHEDULED,
    "scheduled": WebinarStatus.SCHEDULED,
    "available": WebinarStatus.SCHEDULED,
    "upcoming": WebinarStatus.UPCOMING,
    "started": WebinarStatus.STARTED,
    "live": WebinarStatus.STARTED,
    "in_progress": WebinarStatus.STARTED,
    "finished": WebinarStatus.ENDED,
    "ended": WebinarStatus.ENDED,
    "past": WebinarStatus.ENDED,
    "deleted": WebinarStatus.OTHER,
    "cancelled": WebinarStatus.OTHER,
    "unavailable": WebinarStatus.OTHER,
}

REGISTRANT_STATUS_MAP: dict[str, RegistrantStatus] = {
    "approved": RegistrantStatus.APPROVED,
    "pending": RegistrantStatus.PENDING,
    "waiting": RegistrantStatus.PENDING,
    "denied": RegistrantStatus.DENIED,
    "rejected": RegistrantStatus.DENIED,
    "cancelled": RegistrantStatus.DENIED,
}

PARTICIPANT_STATUS_MAP: dict[str, ParticipantStatus] = {
    "in_meeting": ParticipantStatus.IN_MEETING,
    "joined": ParticipantStatus.IN_MEETING,
    "attended": ParticipantStatus.IN_MEETING,
    "in_waiting_room": ParticipantStatus.IN_WAITING_ROOM,
    "waiting": ParticipantStatus.IN_WAITING_ROOM,
    "left": ParticipantStatus.LEFT,
    "leave": ParticipantStatus.LEFT,
}


def _lookup(table: dict, raw, default):
    if not isinstance(raw, str):
        return default
    return table.get(raw.strip().lower(), default)


def normalize_webinar_status(raw: str | None) -> WebinarStatus:
    return _lookup(WEBINAR_STATUS_MAP, raw, DEFAULT_WEBINAR_STATUS)


def normalize_registrant_status(raw: str | None) -> RegistrantStatus:
    return _lookup(REGISTRANT_STATUS_MAP, raw, DEFAULT_REGISTRANT_STATUS)


def normalize_participant_status(raw: str | None) -> ParticipantStatus:
    return _lookup(PARTICIPANT_STATUS_MAP, raw, DEFAULT_PARTICIPANT_STATUS)
