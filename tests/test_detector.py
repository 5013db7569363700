"""Tests for daybrief.detector.

Covers:
- debounce and materiality policy functions
- pure detect_changes classification and ordering
- ChangeDetector: fetch-failure isolation, empty fetch, window validation,
  write-back and soft-delete without re-emission
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from conftest import NOW, make_event

from daybrief.detector import (
    ChangeDetector,
    content_differs,
    detect_changes,
    exceeds_debounce_window,
    is_material_change,
)
from daybrief.models import ChangeType, EventStatus, FetchFailure
from daybrief.testing import InMemorySnapshotStore

pytestmark = pytest.mark.unit

WINDOW = (NOW, NOW + timedelta(hours=24))


# ---------------------------------------------------------------------------
# Policy functions
# ---------------------------------------------------------------------------


def test_debounce_is_strictly_greater_than_threshold():
    assert not exceeds_debounce_window(timedelta(minutes=5))
    assert exceeds_debounce_window(timedelta(minutes=5, seconds=1))
    assert not exceeds_debounce_window(timedelta(minutes=1), timedelta(minutes=1))


def test_content_differs_on_compared_fields():
    base = make_event()
    assert not content_differs(base, make_event())
    assert content_differs(base, make_event(summary="Renamed"))
    assert content_differs(base, make_event(location="Room 1"))
    assert content_differs(base, make_event(start=NOW + timedelta(hours=3)))
    assert content_differs(base, make_event(duration=timedelta(minutes=30)))
    assert content_differs(base, make_event(status=EventStatus.tentative))


def test_content_differs_treats_none_and_empty_text_alike():
    assert not content_differs(make_event(description=None), make_event(description=""))


def test_content_differs_ignores_attendees_and_category():
    assert not content_differs(make_event(), make_event(attendees=["x@example.com"]))


def test_material_change_requires_all_three_conditions():
    stored = make_event(last_modified=NOW)
    later = NOW + timedelta(minutes=10)

    assert is_material_change(stored, make_event(summary="New", last_modified=later))
    # Content identical.
    assert not is_material_change(stored, make_event(last_modified=later))
    # Within the debounce window.
    assert not is_material_change(
        stored, make_event(summary="New", last_modified=NOW + timedelta(minutes=5))
    )
    # Older remote timestamp.
    assert not is_material_change(
        stored, make_event(summary="New", last_modified=NOW - timedelta(hours=1))
    )


def test_missing_timestamp_is_never_material():
    assert not is_material_change(make_event(last_modified=None), make_event(summary="New"))
    assert not is_material_change(make_event(), make_event(summary="New", last_modified=None))


# ---------------------------------------------------------------------------
# detect_changes
# ---------------------------------------------------------------------------


def test_new_event_is_added():
    changes = detect_changes([], [make_event("a")])
    assert [(c.type, c.event.event_id) for c in changes] == [(ChangeType.added, "a")]


def test_unchanged_event_produces_nothing():
    assert detect_changes([make_event("a")], [make_event("a")]) == []


def test_modified_event_carries_previous_snapshot():
    stored = make_event("a", last_modified=NOW)
    fresh = make_event("a", summary="Moved", last_modified=NOW + timedelta(minutes=6))
    [change] = detect_changes([stored], [fresh])
    assert change.type is ChangeType.modified
    assert change.event.summary == "Moved"
    assert change.previous == stored


def test_missing_event_is_deleted_with_stored_snapshot():
    stored = make_event("a")
    [change] = detect_changes([stored], [])
    assert change.type is ChangeType.deleted
    assert change.event == stored


def test_remote_cancellation_counts_as_deletion():
    stored = make_event("a")
    fresh = make_event("a", status=EventStatus.cancelled, last_modified=NOW + timedelta(hours=1))
    [change] = detect_changes([stored], [fresh])
    assert change.type is ChangeType.deleted


def test_remotely_cancelled_new_event_is_ignored():
    assert detect_changes([], [make_event("a", status=EventStatus.cancelled)]) == []


def test_locally_cancelled_event_is_never_re_emitted():
    cancelled = make_event("a", status=EventStatus.cancelled)
    assert detect_changes([cancelled], [make_event("a")]) == []
    assert detect_changes([], [make_event("a")], cancelled_ids={"a"}) == []


def test_ordering_added_modified_then_deleted():
    stored = [
        make_event("gone-1", start=NOW + timedelta(hours=1)),
        make_event("kept", last_modified=NOW),
        make_event("gone-2", start=NOW + timedelta(hours=5)),
    ]
    fresh = [
        make_event("new-b"),
        make_event("kept", summary="Changed", last_modified=NOW + timedelta(hours=1)),
        make_event("new-a"),
    ]
    changes = detect_changes(stored, fresh)
    assert [(c.type, c.event.event_id) for c in changes] == [
        (ChangeType.added, "new-b"),
        (ChangeType.modified, "kept"),
        (ChangeType.added, "new-a"),
        (ChangeType.deleted, "gone-1"),
        (ChangeType.deleted, "gone-2"),
    ]


def test_duplicate_fresh_ids_collapse_first_wins():
    changes = detect_changes([], [make_event("a", summary="First"), make_event("a", summary="2")])
    assert len(changes) == 1
    assert changes[0].event.summary == "First"


def test_custom_debounce_is_honoured():
    stored = make_event("a", last_modified=NOW)
    fresh = make_event("a", summary="x", last_modified=NOW + timedelta(minutes=2))
    assert detect_changes([stored], [fresh]) == []
    assert len(detect_changes([stored], [fresh], debounce=timedelta(minutes=1))) == 1


# ---------------------------------------------------------------------------
# ChangeDetector
# ---------------------------------------------------------------------------


async def test_fetch_failure_yields_no_changes_and_no_writes(store):
    await store.upsert(make_event("a"))
    writes = store.writes
    detector = ChangeDetector(store)

    changes = await detector.detect("u1", FetchFailure(reason="boom"), WINDOW)

    assert changes == []
    assert store.writes == writes
    assert not store.get("u1", "a").is_cancelled


async def test_successful_empty_fetch_deletes_everything_in_window(store):
    await store.upsert(make_event("a"))
    await store.upsert(make_event("b", start=NOW + timedelta(hours=30)))  # outside window
    detector = ChangeDetector(store)

    changes = await detector.detect("u1", [], WINDOW)

    assert [(c.type, c.event.event_id) for c in changes] == [(ChangeType.deleted, "a")]


async def test_window_must_be_ordered_and_aware(store):
    detector = ChangeDetector(store)
    with pytest.raises(ValueError, match="start < end"):
        await detector.detect("u1", [], (NOW, NOW))
    with pytest.raises(ValueError, match="timezone-aware"):
        await detector.detect("u1", [], (datetime(2024, 3, 15), NOW))


async def test_window_is_validated_even_on_fetch_failure(store):
    with pytest.raises(ValueError):
        await ChangeDetector(store).detect("u1", FetchFailure(reason="x"), (NOW, NOW))


async def test_apply_then_redetect_is_quiet(store):
    detector = ChangeDetector(store)
    fresh = [make_event("a"), make_event("b")]

    changes = await detector.detect("u1", fresh, WINDOW)
    await detector.apply("u1", changes)

    assert await detector.detect("u1", fresh, WINDOW) == []


async def test_soft_delete_is_not_re_emitted(store):
    detector = ChangeDetector(store)
    await store.upsert(make_event("a"))

    changes = await detector.detect("u1", [], WINDOW)
    await detector.apply("u1", changes)
    assert store.get("u1", "a").status is EventStatus.cancelled

    # Neither a second empty fetch nor the event reappearing re-notifies.
    assert await detector.detect("u1", [], WINDOW) == []
    assert await detector.detect("u1", [make_event("a")], WINDOW) == []


async def test_detection_is_scoped_to_user(store):
    await store.upsert(make_event("a", user_id="other"))
    assert await ChangeDetector(store).detect("u1", [], WINDOW) == []


async def test_detected_changes_are_counted():
    class _Metrics:
        def __init__(self):
            self.recorded = []

        def record_change(self, change_type):
            self.recorded.append(change_type)

    metrics = _Metrics()
    detector = ChangeDetector(InMemorySnapshotStore(), metrics=metrics)
    await detector.detect("u1", [make_event("a")], (NOW, NOW + timedelta(days=1)))
    assert metrics.recorded == [ChangeType.added]


