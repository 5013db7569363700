"""Event snapshot persistence.

:class:`SnapshotStore` is the interface the detector depends on;
:class:`PostgresSnapshotStore` implements it over an asyncpg pool. At most one
row exists per ``(user_id, event_id)``, and a cancelled row is never
resurrected by a later upsert.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import asyncpg

from daybrief.detector import content_differs, validate_window
from daybrief.models import CalendarEvent, EventStatus, EventType

logger = logging.getLogger(__name__)

SNAPSHOT_TABLE = "calendar_event_snapshots"

_SCHEMA_DDL = f"""
CREATE TABLE IF NOT EXISTS {SNAPSHOT_TABLE} (
    user_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    description TEXT,
    location TEXT,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    all_day BOOLEAN NOT NULL DEFAULT FALSE,
    event_type TEXT NOT NULL DEFAULT 'unknown',
    status TEXT NOT NULL DEFAULT 'confirmed',
    attendees TEXT[] NOT NULL DEFAULT '{{}}',
    last_modified TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, event_id),
    CHECK (start_time <= end_time)
);
CREATE INDEX IF NOT EXISTS idx_{SNAPSHOT_TABLE}_user_range
    ON {SNAPSHOT_TABLE} (user_id, start_time, end_time);
"""

_COLUMNS = (
    "user_id, event_id, summary, description, location, start_time, end_time, "
    "all_day, event_type, status, attendees, last_modified"
)

# last_modified only advances when the compared content differs, and a
# cancelled row is left untouched.
_UPSERT_SQL = f"""
INSERT INTO {SNAPSHOT_TABLE} AS s ({_COLUMNS})
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
ON CONFLICT (user_id, event_id) DO UPDATE SET
    summary = EXCLUDED.summary,
    description = EXCLUDED.description,
    location = EXCLUDED.location,
    start_time = EXCLUDED.start_time,
    end_time = EXCLUDED.end_time,
    all_day = EXCLUDED.all_day,
    event_type = EXCLUDED.event_type,
    status = EXCLUDED.status,
    attendees = EXCLUDED.attendees,
    last_modified = CASE
        WHEN (
            s.summary, COALESCE(s.description, ''), COALESCE(s.location, ''),
            s.start_time, s.end_time, s.status
        ) IS DISTINCT FROM (
            EXCLUDED.summary, COALESCE(EXCLUDED.description, ''),
            COALESCE(EXCLUDED.location, ''),
            EXCLUDED.start_time, EXCLUDED.end_time, EXCLUDED.status
        )
        THEN EXCLUDED.last_modified
        ELSE s.last_modified
    END,
    updated_at = now()
WHERE s.status <> 'cancelled'
RETURNING {_COLUMNS}
"""


def overlaps_window(event: CalendarEvent, start: datetime, end: datetime) -> bool:
    """True when *event* intersects ``[start, end)``.

    Zero-length events count when their instant lies inside the window.
    """
    if event.start_time >= end:
        return False
    return event.end_time > start or event.start_time >= start


def merge_snapshot(
    existing: CalendarEvent | None,
    fresh: CalendarEvent,
    *,
    now: datetime | None = None,
) -> CalendarEvent:
    """Return the row an upsert of *fresh* over *existing* should leave behind."""
    if existing is not None and existing.is_cancelled:
        return existing
    stamp = fresh.last_modified or now or datetime.now(UTC)
    if existing is not None and not content_differs(existing, fresh):
        stamp = existing.last_modified or stamp
    return fresh.model_copy(update={"last_modified": stamp})


class SnapshotStore(abc.ABC):
    """Persistence for the last-known copy of each user's events."""

    @abc.abstractmethod
    async def find_by_user_and_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        *,
        include_cancelled: bool = False,
    ) -> list[CalendarEvent]:
        """Snapshots for *user_id* overlapping ``[start, end)``, ordered by start."""

    @abc.abstractmethod
    async def find_cancelled_ids(self, user_id: str, event_ids: Iterable[str]) -> set[str]:
        """The subset of *event_ids* already cancelled locally, whatever their times."""

    @abc.abstractmethod
    async def upsert(self, event: CalendarEvent) -> CalendarEvent:
        """Insert or update by ``(user_id, event_id)``; returns the stored row."""

    @abc.abstractmethod
    async def mark_cancelled(self, user_id: str, event_id: str) -> CalendarEvent | None:
        """Soft-delete one snapshot. Returns ``None`` when no such row exists."""


def _row_to_event(row: Any) -> CalendarEvent:
    return CalendarEvent(
        user_id=row["user_id"],
        event_id=row["event_id"],
        summary=row["summary"],
        description=row["description"],
        location=row["location"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        all_day=row["all_day"],
        event_type=EventType(row["event_type"]),
        status=EventStatus(row["status"]),
        attendees=frozenset(row["attendees"] or ()),
        last_modified=row["last_modified"],
    )


class PostgresSnapshotStore(SnapshotStore):
    """asyncpg-backed snapshot store."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        """Create the snapshot table and its range index if they do not exist."""
        async with self._pool.acquire() as conn:
            await conn.execute(_SCHEMA_DDL)
        logger.info("Snapshot table %s is ready", SNAPSHOT_TABLE)

    async def find_by_user_and_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        *,
        include_cancelled: bool = False,
    ) -> list[CalendarEvent]:
        start, end = validate_window(start, end)
        query = f"""
            SELECT {_COLUMNS} FROM {SNAPSHOT_TABLE}
            WHERE user_id = $1
              AND start_time < $3
              AND (end_time > $2 OR start_time >= $2)
              AND ($4 OR status <> 'cancelled')
            ORDER BY start_time, event_id
        """
        rows = await self._pool.fetch(query, user_id, start, end, include_cancelled)
        return [_row_to_event(row) for row in rows]

    async def find_cancelled_ids(self, user_id: str, event_ids: Iterable[str]) -> set[str]:
        ids = sorted(set(event_ids))
        if not ids:
            return set()
        rows = await self._pool.fetch(
            f"""
            SELECT event_id FROM {SNAPSHOT_TABLE}
            WHERE user_id = $1 AND event_id = ANY($2::text[]) AND status = 'cancelled'
            """,
            user_id,
            ids,
        )
        return {row["event_id"] for row in rows}

    async def upsert(self, event: CalendarEvent) -> CalendarEvent:
        row = await self._pool.fetchrow(
            _UPSERT_SQL,
            event.user_id,
            event.event_id,
            event.summary,
            event.description,
            event.location,
            event.start_time,
            event.end_time,
            event.all_day,
            event.event_type.value,
            event.status.value,
            sorted(event.attendees),
            event.last_modified or datetime.now(UTC),
        )
        if row is None:
            # Conflict with a cancelled row; the WHERE clause suppressed the update.
            row = await self._pool.fetchrow(
                f"SELECT {_COLUMNS} FROM {SNAPSHOT_TABLE} WHERE user_id = $1 AND event_id = $2",
                event.user_id,
                event.event_id,
            )
            logger.debug(
                "Ignored upsert for cancelled snapshot %s/%s", event.user_id, event.event_id
            )
        return _row_to_event(row)

    async def mark_cancelled(self, user_id: str, event_id: str) -> CalendarEvent | None:
        row = await self._pool.fetchrow(
            f"""
            UPDATE {SNAPSHOT_TABLE}
            SET status = 'cancelled',
                last_modified = CASE WHEN status = 'cancelled' THEN last_modified ELSE now() END,
                updated_at = now()
            WHERE user_id = $1 AND event_id = $2
            RETURNING {_COLUMNS}
            """,
            user_id,
            event_id,
        )
        if row is None:
            logger.debug("mark_cancelled: no snapshot for %s/%s", user_id, event_id)
            return None
        return _row_to_event(row)
