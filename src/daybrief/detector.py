"""Classify differences between a fresh remote feed and the snapshot store.

The policy functions and :func:`detect_changes` are pure. :class:`ChangeDetector`
wraps them with snapshot-store reads and the post-dispatch write-back.

A change on an existing event is only reported when all three hold:

1. the remote timestamp is strictly newer than the stored one,
2. the gap between them exceeds the debounce threshold,
3. at least one compared field actually differs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from daybrief.models import (
    CalendarEvent,
    ChangeRecord,
    ChangeType,
    EventStatus,
    FetchFailure,
    ensure_aware,
)

if TYPE_CHECKING:
    from daybrief.core.metrics import DaybriefMetrics
    from daybrief.store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = timedelta(minutes=5)

_TEXT_FIELDS = ("summary", "description", "location")


def exceeds_debounce_window(delta: timedelta, threshold: timedelta = DEFAULT_DEBOUNCE) -> bool:
    """Return True when *delta* is strictly greater than *threshold*."""
    return delta > threshold


def _text(value: str | None) -> str:
    return value or ""


def content_differs(stored: CalendarEvent, fresh: CalendarEvent) -> bool:
    """Compare the user-visible content of two versions of the same event.

    ``None`` and ``""`` are equivalent for the optional text fields.
    """
    for name in _TEXT_FIELDS:
        if _text(getattr(stored, name)) != _text(getattr(fresh, name)):
            return True
    return (
        stored.start_time != fresh.start_time
        or stored.end_time != fresh.end_time
        or stored.status != fresh.status
    )


def is_material_change(
    stored: CalendarEvent,
    fresh: CalendarEvent,
    debounce: timedelta = DEFAULT_DEBOUNCE,
) -> bool:
    if stored.last_modified is None or fresh.last_modified is None:
        return False
    delta = fresh.last_modified - stored.last_modified
    if delta <= timedelta(0):
        return False
    return exceeds_debounce_window(delta, debounce) and content_differs(stored, fresh)


def detect_changes(
    stored: Iterable[CalendarEvent],
    fresh: Iterable[CalendarEvent],
    *,
    cancelled_ids: Iterable[str] = (),
    debounce: timedelta = DEFAULT_DEBOUNCE,
) -> list[ChangeRecord]:
    """Diff *fresh* against *stored* snapshots of the same window.

    Returns added/modified records in fresh order followed by deleted records
    in stored order. Locally cancelled ids never produce a record.
    """
    terminal = set(cancelled_ids)
    active: dict[str, CalendarEvent] = {}
    for snapshot in stored:
        if snapshot.status == EventStatus.cancelled:
            terminal.add(snapshot.event_id)
        elif snapshot.event_id not in active:
            active[snapshot.event_id] = snapshot

    changes: list[ChangeRecord] = []
    seen: set[str] = set()
    for event in fresh:
        if event.event_id in seen:
            continue
        seen.add(event.event_id)

        # Remote-side cancellation counts as absence; handled by the deletion pass.
        if event.status == EventStatus.cancelled:
            continue
        if event.event_id in terminal:
            continue

        previous = active.get(event.event_id)
        if previous is None:
            changes.append(ChangeRecord(type=ChangeType.added, event=event))
        elif is_material_change(previous, event, debounce):
            changes.append(ChangeRecord(type=ChangeType.modified, event=event, previous=previous))

    live_ids = {
        event.event_id
        for event in fresh
        if event.status != EventStatus.cancelled and event.event_id not in terminal
    }
    for event_id, snapshot in active.items():
        if event_id not in live_ids:
            changes.append(ChangeRecord(type=ChangeType.deleted, event=snapshot))

    return changes


def validate_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Return the window in UTC, raising ``ValueError`` unless ``start < end``."""
    start = ensure_aware(start, field_name="window start")
    end = ensure_aware(end, field_name="window end")
    if start >= end:
        raise ValueError(
            f"Detection window must satisfy start < end ({start.isoformat()} >= {end.isoformat()})"
        )
    return start, end


class ChangeDetector:
    """Store-backed change detection for one process."""

    def __init__(
        self,
        store: SnapshotStore,
        *,
        debounce: timedelta = DEFAULT_DEBOUNCE,
        metrics: DaybriefMetrics | None = None,
    ) -> None:
        self._store = store
        self._debounce = debounce
        self._metrics = metrics

    async def detect(
        self,
        user_id: str,
        fetched: Sequence[CalendarEvent] | FetchFailure,
        window: tuple[datetime, datetime],
    ) -> list[ChangeRecord]:
        """Return the changes between *fetched* and the stored window.

        A :class:`FetchFailure` yields no changes and leaves the store
        untouched. A successful empty fetch is a valid answer and marks every
        stored event in the window as deleted.
        """
        start, end = validate_window(*window)

        if isinstance(fetched, FetchFailure):
            logger.warning(
                "Skipping change detection for user %s: fetch failed (%s)",
                user_id,
                fetched.reason,
            )
            return []

        snapshots = await self._store.find_by_user_and_range(user_id, start, end)
        # Looked up by id: a cancelled row may sit outside the window when the
        # event was moved away and back.
        cancelled = await self._store.find_cancelled_ids(
            user_id, {event.event_id for event in fetched}
        )
        changes = detect_changes(
            snapshots, fetched, cancelled_ids=cancelled, debounce=self._debounce
        )

        if changes:
            logger.info(
                "Detected %d change(s) for user %s (%s)",
                len(changes),
                user_id,
                ", ".join(f"{c.type}:{c.event.event_id}" for c in changes),
            )
        if self._metrics is not None:
            for change in changes:
                self._metrics.record_change(change.type)
        return changes

    async def record_baseline(
        self, user_id: str, fetched: Sequence[CalendarEvent]
    ) -> list[CalendarEvent]:
        """Store *fetched* as the known state without reporting anything.

        Remotely cancelled events are skipped, and locally cancelled rows stay
        cancelled.
        """
        stored = [
            await self._store.upsert(event)
            for event in fetched
            if event.user_id == user_id and event.status != EventStatus.cancelled
        ]
        logger.info("Recorded %d baseline snapshot(s) for user %s", len(stored), user_id)
        return stored

    async def apply(self, user_id: str, changes: Iterable[ChangeRecord]) -> None:
        """Write notified changes back to the snapshot store."""
        for change in changes:
            if change.type == ChangeType.deleted:
                await self._store.mark_cancelled(user_id, change.event.event_id)
            else:
                await self._store.upsert(change.event)
