"""
Derived webinar data, recomputed from child rows.

Counters on the webinar row are a cache for dashboards. They are always
rebuilt from the full registrant and participant sets, never incremented,
so running any of these twice gives the same answer.
"""

from datetime import datetime, timedelta

from app.features.webinar_sync.domain.models import (
    AttendanceMatch,
    ParticipantRow,
    ParticipantSyncStatus,
    RegistrantRef,
    StoredWebinar,
    WebinarMetrics,
    WebinarStatus,
)


def compute_metrics(registrant_count: int, participants: list[ParticipantRow]) -> WebinarMetrics:
    """
    Aggregate counters for one webinar.

    Attendees are distinct identities: one person with several join/leave
    segments counts once, but all of their segments count towards minutes.
    The average is taken over raw seconds; only the minute total is rounded.
    Absentees are registrants minus distinct attendees, floored at zero
    since walk-ins can outnumber registrations.
    """
    attendees = len({participant.identity_key for participant in participants})
    total_seconds = sum(max(participant.duration, 0) for participant in participants)
    total_minutes = (total_seconds + 30) // 60  # nearest minute, halves up
    average = round(total_seconds / 60 / attendees, 2) if attendees else 0.0

    return WebinarMetrics(
        registrant_count=registrant_count,
        attendee_count=attendees,
        total_engaged_minutes=total_minutes,
        avg_attendance_duration=average,
        total_absentees=max(registrant_count - attendees, 0),
    )


def participant_sync_outcome(metrics: WebinarMetrics) -> ParticipantSyncStatus | None:
    """Sub-status implied by the counters; None leaves the stored value alone."""
    if metrics.attendee_count > 0:
        return ParticipantSyncStatus.COMPLETED
    if metrics.registrant_count > 0:
        return ParticipantSyncStatus.NO_PARTICIPANTS
    return None


def match_attendance(
    registrants: list[RegistrantRef], participants: list[ParticipantRow]
) -> list[AttendanceMatch]:
    """
    Best-effort registrant ↔ participant association.

    A participant belongs to a registrant when it carries that registrant's
    provider id, otherwise when the emails match case-insensitively. Every
    registrant gets a result so stale attendance is cleared.
    """
    by_registrant_id: dict[str, list[ParticipantRow]] = {}
    by_email: dict[str, list[ParticipantRow]] = {}
    for participant in participants:
        if participant.registrant_provider_id:
            by_registrant_id.setdefault(participant.registrant_provider_id, []).append(participant)
        elif participant.email:
            by_email.setdefault(participant.email.strip().lower(), []).append(participant)

    matches: list[AttendanceMatch] = []
    for registrant in registrants:
        segments = list(by_registrant_id.get(registrant.provider_registrant_id, []))
        if registrant.email:
            segments.extend(by_email.get(registrant.email.strip().lower(), []))

        if not segments:
            matches.append(AttendanceMatch(registrant_id=registrant.id, attended=False))
            continue

        joins = [segment.join_time for segment in segments if segment.join_time]
        leaves = [segment.leave_time for segment in segments if segment.leave_time]
        matches.append(
            AttendanceMatch(
                registrant_id=registrant.id,
                attended=True,
                join_time=min(joins) if joins else None,
                leave_time=max(leaves) if leaves else None,
                duration=sum(segment.duration for segment in segments),
            )
        )

    return matches


def is_participant_eligible(
    webinar: StoredWebinar, now: datetime, buffer_minutes: int
) -> bool:
    """A participant report exists once the webinar ended, or should have."""
    if webinar.status == WebinarStatus.ENDED.value:
        return True
    if webinar.start_time is None:
        return False
    expected_end = webinar.start_time + timedelta(minutes=(webinar.duration or 0) + buffer_minutes)
    return expected_end < now
