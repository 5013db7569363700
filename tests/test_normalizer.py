"""Tests for daybrief.normalizer.

Covers:
- dateTime / date boundaries and the all-day flag
- "No Title" placeholder, status mapping, categorization order
- attendee extraction and ``updated`` parsing
- malformed payloads (single and batch)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import pytest
from conftest import NOW, raw_event

from daybrief.models import EventNormalizationError, EventStatus, EventType
from daybrief.normalizer import (
    categorize_event,
    map_status,
    normalize_event,
    normalize_events,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Boundaries
# ---------------------------------------------------------------------------


def test_timed_event_is_parsed_to_utc():
    event = normalize_event(
        "u1",
        raw_event()
        | {
            "start": {"dateTime": "2024-03-15T09:00:00-04:00"},
            "end": {"dateTime": "2024-03-15T14:30:00Z"},
        },
    )
    assert event.start_time == datetime(2024, 3, 15, 13, 0, tzinfo=UTC)
    assert event.end_time == datetime(2024, 3, 15, 14, 30, tzinfo=UTC)
    assert event.all_day is False


def test_date_only_event_is_all_day_at_midnight_utc():
    event = normalize_event("u1", raw_event(start="2024-03-15", end="2024-03-16"))
    assert event.all_day is True
    assert event.start_time == datetime(2024, 3, 15, tzinfo=UTC)
    assert event.end_time == datetime(2024, 3, 16, tzinfo=UTC)


def test_mixed_boundaries_are_not_all_day():
    payload = raw_event()
    payload["end"] = {"date": "2024-03-16"}
    assert normalize_event("u1", payload).all_day is False


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("summary", [None, "", "   "])
def test_missing_summary_uses_placeholder(summary):
    assert normalize_event("u1", raw_event(summary=summary)).summary == "No Title"


def test_optional_text_is_stripped_and_blank_becomes_none():
    event = normalize_event("u1", raw_event(description="  ", location=" Room 4 "))
    assert event.description is None
    assert event.location == "Room 4"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("confirmed", EventStatus.confirmed),
        ("TENTATIVE", EventStatus.tentative),
        ("cancelled", EventStatus.cancelled),
        ("something-new", EventStatus.confirmed),
        (None, EventStatus.confirmed),
    ],
)
def test_map_status(raw, expected):
    assert map_status(raw) is expected


def test_attendees_accept_objects_and_strings():
    event = normalize_event(
        "u1",
        raw_event(attendees=[{"email": "A@x.com"}, "b@x.com", {"displayName": "no email"}]),
    )
    assert event.attendees == frozenset({"a@x.com", "b@x.com"})


def test_updated_becomes_last_modified():
    assert normalize_event("u1", raw_event()).last_modified == NOW


def test_unparseable_updated_is_none():
    assert normalize_event("u1", raw_event(updated="yesterday")).last_modified is None


def test_user_id_is_attached():
    assert normalize_event("someone", raw_event()).user_id == "someone"


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("summary", "description", "expected"),
    [
        ("Sprint planning", None, EventType.work),
        ("Dentist", None, EventType.personal),
        ("Quiet time", "read a book", EventType.unknown),
        ("Something", "client lunch", EventType.work),
        ("BIRTHDAY party", None, EventType.personal),
    ],
)
def test_categorize_event(summary, description, expected):
    assert categorize_event(summary, description) is expected


def test_work_keywords_take_precedence_over_personal():
    # "lunch" is personal, "team" is work; work is checked first.
    assert categorize_event("Team lunch") is EventType.work


def test_normalized_event_carries_category():
    assert normalize_event("u1", raw_event(summary="Gym")).event_type is EventType.personal


# ---------------------------------------------------------------------------
# Malformed payloads
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "mutate",
    [
        lambda p: p.pop("id"),
        lambda p: p.pop("start"),
        lambda p: p.update(end={}),
        lambda p: p.update(start={"dateTime": "not a date"}),
        lambda p: p.update(start={"date": "2024-13-45"}),
        lambda p: p.update(
            start={"dateTime": "2024-03-15T10:00:00Z"}, end={"dateTime": "2024-03-15T09:00:00Z"}
        ),
    ],
)
def test_malformed_payload_raises(mutate):
    payload = raw_event()
    mutate(payload)
    with pytest.raises(EventNormalizationError):
        normalize_event("u1", payload)


def test_normalization_error_is_a_value_error():
    assert issubclass(EventNormalizationError, ValueError)


def test_normalize_events_skips_bad_items_and_keeps_order(caplog):
    payloads = [raw_event("a"), {"id": "broken"}, raw_event("b"), raw_event("c")]
    with caplog.at_level(logging.WARNING, logger="daybrief.normalizer"):
        events = normalize_events("u1", payloads)
    assert [e.event_id for e in events] == ["a", "b", "c"]
    assert "broken" in caplog.text
