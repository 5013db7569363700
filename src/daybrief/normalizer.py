"""Map raw Google Calendar v3 event payloads onto :class:`CalendarEvent` snapshots.

Pure functions only: nothing here touches the network or the snapshot store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime
from typing import Any

from daybrief.models import (
    CalendarEvent,
    EventNormalizationError,
    EventStatus,
    EventType,
)

logger = logging.getLogger(__name__)

NO_TITLE_PLACEHOLDER = "No Title"

# Checked in order; the first set with a hit wins, so WORK beats PERSONAL.
EVENT_TYPE_KEYWORDS: tuple[tuple[EventType, frozenset[str]], ...] = (
    (
        EventType.work,
        frozenset(
            {
                "meeting",
                "call",
                "interview",
                "presentation",
                "conference",
                "workshop",
                "training",
                "review",
                "planning",
                "standup",
                "sprint",
                "demo",
                "client",
                "business",
                "work",
                "office",
                "team",
                "project",
                "deadline",
                "deliverable",
            }
        ),
    ),
    (
        EventType.personal,
        frozenset(
            {
                "birthday",
                "anniversary",
                "dinner",
                "lunch",
                "coffee",
                "date",
                "party",
                "celebration",
                "family",
                "friend",
                "personal",
                "vacation",
                "holiday",
                "doctor",
                "dentist",
                "appointment",
                "gym",
                "workout",
                "exercise",
            }
        ),
    ),
)


def categorize_event(
    summary: str | None,
    description: str | None = None,
    *,
    rules: Iterable[tuple[EventType, frozenset[str]]] = EVENT_TYPE_KEYWORDS,
) -> EventType:
    """Tag an event from keywords found in its title and description.

    Matching is substring-based on the lower-cased concatenation, mirroring how
    users actually title events ("Team standup", "Client call w/ ACME").
    """
    text = f"{summary or ''} {description or ''}".lower()
    for event_type, keywords in rules:
        if any(keyword in text for keyword in keywords):
            return event_type
    return EventType.unknown


def map_status(value: Any) -> EventStatus:
    """Map a remote status string; anything unrecognized is ``confirmed``."""
    if not isinstance(value, str):
        return EventStatus.confirmed
    try:
        return EventStatus(value.strip().lower())
    except ValueError:
        return EventStatus.confirmed


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        return None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_boundary(payload: Any, *, event_id: str, side: str) -> tuple[datetime, bool]:
    """Return ``(instant, has_time_of_day)`` for one ``start``/``end`` object."""
    if not isinstance(payload, dict):
        raise EventNormalizationError(f"Event {event_id!r} is missing its {side} boundary")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        try:
            return parse_rfc3339(date_time), True
        except ValueError as exc:
            raise EventNormalizationError(
                f"Event {event_id!r} has an invalid {side}.dateTime: {date_time!r}"
            ) from exc

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise EventNormalizationError(
                f"Event {event_id!r} has an invalid {side}.date: {date_value!r}"
            ) from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC), False

    raise EventNormalizationError(f"Event {event_id!r} has neither {side}.dateTime nor {side}.date")


def _extract_attendees(payload: Any) -> frozenset[str]:
    if not isinstance(payload, list):
        return frozenset()
    emails: set[str] = set()
    for entry in payload:
        if isinstance(entry, dict):
            entry = entry.get("email")
        if isinstance(entry, str) and entry.strip():
            emails.add(entry.strip().lower())
    return frozenset(emails)


def normalize_event(user_id: str, payload: dict[str, Any]) -> CalendarEvent:
    """Convert one remote event payload into the canonical snapshot shape.

    Raises:
        EventNormalizationError: when the payload lacks an id or usable
            start/end boundaries, or ends before it starts.
    """
    if not isinstance(payload, dict):
        raise EventNormalizationError("Remote event payload must be a JSON object")

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise EventNormalizationError("Remote event payload is missing a non-empty id")

    start_time, start_timed = _parse_boundary(payload.get("start"), event_id=event_id, side="start")
    end_time, end_timed = _parse_boundary(payload.get("end"), event_id=event_id, side="end")
    if start_time > end_time:
        raise EventNormalizationError(f"Event {event_id!r} ends before it starts")

    summary = _normalize_optional_text(payload.get("summary")) or NO_TITLE_PLACEHOLDER
    description = _normalize_optional_text(payload.get("description"))

    return CalendarEvent(
        user_id=user_id,
        event_id=event_id,
        summary=summary,
        description=description,
        location=_normalize_optional_text(payload.get("location")),
        start_time=start_time,
        end_time=end_time,
        all_day=not start_timed and not end_timed,
        event_type=categorize_event(summary, description),
        status=map_status(payload.get("status")),
        attendees=_extract_attendees(payload.get("attendees")),
        last_modified=_parse_rfc3339_optional(payload.get("updated")),
    )


def normalize_events(user_id: str, payloads: Iterable[dict[str, Any]]) -> list[CalendarEvent]:
    """Normalize a batch, dropping (and logging) malformed items, keeping order."""
    events: list[CalendarEvent] = []
    for payload in payloads:
        try:
            events.append(normalize_event(user_id, payload))
        except EventNormalizationError as exc:
            logger.warning("Skipping malformed remote event for user %s: %s", user_id, exc)
    return events
