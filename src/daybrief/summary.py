"""Daily schedule summary: busy/free computation and plain-text rendering.

Rendering is hand-formatted (English weekday/month names, 12-hour clock) so
the same events always produce byte-identical text regardless of process
locale.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict

from daybrief.models import (
    DEFAULT_DISPLAY_NAME,
    CalendarEvent,
    ensure_aware,
    resolve_timezone,
)

DEFAULT_MIN_FREE_BLOCK = timedelta(minutes=15)

NO_EVENTS_TEXT = "No events scheduled for today."
NO_TIMED_EVENTS_TEXT = "No timed events scheduled for today."

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
_DAY_END = time(23, 59, 59)


class FreeBlock(BaseModel):
    """A gap between busy intervals within the day window."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def is_reportable(self, min_duration: timedelta = DEFAULT_MIN_FREE_BLOCK) -> bool:
        return self.duration >= min_duration


class DaySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: date
    timed_events: list[CalendarEvent]
    all_day_events: list[CalendarEvent]
    free_blocks: list[FreeBlock]
    reportable_free_blocks: list[FreeBlock]
    event_count: int
    first_meeting: datetime | None = None
    last_meeting: datetime | None = None
    text: str


def format_clock(value: datetime, tz: ZoneInfo, *, pad_hour: bool = True) -> str:
    """Render *value* in *tz* as ``09:05 AM`` (or ``9:05 AM`` without padding)."""
    local = value.astimezone(tz)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    hour_text = f"{hour:02d}" if pad_hour else str(hour)
    return f"{hour_text}:{local.minute:02d} {suffix}"


def format_day_heading(day: date) -> str:
    return f"{_WEEKDAYS[day.weekday()]}, {_MONTHS[day.month - 1]} {day.day}"


def day_window(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Local ``[00:00:00, 23:59:59)`` for *day* in *tz*."""
    return (
        datetime.combine(day, time(0, 0), tzinfo=tz),
        datetime.combine(day, _DAY_END, tzinfo=tz),
    )


def compute_free_blocks(
    timed_events: Iterable[CalendarEvent],
    day_start: datetime,
    day_end: datetime,
) -> list[FreeBlock]:
    """Return every gap in ``[day_start, day_end)`` not covered by an event.

    Events are sorted by start and clamped to the window; overlapping events
    merge naturally because the cursor only moves forward.
    """
    day_start = ensure_aware(day_start, field_name="day_start")
    day_end = ensure_aware(day_end, field_name="day_end")
    if day_start >= day_end:
        raise ValueError("Day window must satisfy start < end")

    blocks: list[FreeBlock] = []
    cursor = day_start
    for event in sorted(timed_events, key=lambda e: (e.start_time, e.end_time)):
        if event.start_time > event.end_time:
            raise ValueError(f"Event {event.event_id!r} starts after it ends")
        start = max(event.start_time, day_start)
        end = min(event.end_time, day_end)
        if start >= day_end or end < day_start:
            continue
        if cursor < start:
            blocks.append(FreeBlock(start=cursor, end=start))
        cursor = max(cursor, end)

    if cursor < day_end:
        blocks.append(FreeBlock(start=cursor, end=day_end))
    return blocks


def _occurs_on_day(event: CalendarEvent, day: date, day_start: datetime, day_end: datetime) -> bool:
    if event.all_day:
        # All-day boundaries are midnight UTC; compare calendar dates, end exclusive.
        first = event.start_time.date()
        last = max(event.end_time.date(), first + timedelta(days=1))
        return first <= day < last
    if event.start_time >= day_end:
        return False
    return event.end_time > day_start or event.start_time >= day_start


def _render_span(start: datetime, end: datetime, tz: ZoneInfo) -> str:
    return f"{format_clock(start, tz)} - {format_clock(end, tz)}"


def _render(
    *,
    header: str,
    timed: Sequence[CalendarEvent],
    all_day: Sequence[CalendarEvent],
    reportable: Sequence[FreeBlock],
    tz: ZoneInfo,
) -> str:
    if not timed and not all_day:
        return f"{header}\n\n{NO_EVENTS_TEXT}"

    all_day_section = ""
    if all_day:
        all_day_section = "🌅 ALL DAY:\n" + "".join(f"📝 {e.summary}\n" for e in all_day)

    if not timed:
        return f"{header}\n\n{NO_TIMED_EVENTS_TEXT}\n\n{all_day_section}".rstrip("\n")

    parts = [f"{header}\n\n"]
    if all_day_section:
        parts.append(f"{all_day_section}\n")

    parts.append("📅 BUSY:\n")
    for event in timed:
        location = f"\n📍 {event.location}" if event.location else ""
        parts.append(
            f"🕐 {_render_span(event.start_time, event.end_time, tz)}\n"
            f"📝 {event.summary}{location}\n\n"
        )

    if reportable:
        parts.append("⏰ FREE:\n")
        for block in reportable:
            parts.append(f"🆓 {_render_span(block.start, block.end, tz)}\n")
        parts.append("\n")

    parts.append(f"Total appointments: {len(timed)}")
    return "".join(parts)


def build_day_summary(
    events: Iterable[CalendarEvent],
    *,
    day: date,
    timezone: ZoneInfo | str,
    viewer_name: str = DEFAULT_DISPLAY_NAME,
    min_free_block: timedelta = DEFAULT_MIN_FREE_BLOCK,
) -> DaySummary:
    """Build the busy/free summary for *day* in the viewer's *timezone*.

    Cancelled events and events that do not touch the day are ignored.
    All-day events are listed for information only and never make time busy.
    """
    tz = resolve_timezone(timezone) if isinstance(timezone, str) else timezone
    day_start, day_end = day_window(day, tz)

    relevant = [
        event
        for event in events
        if not event.is_cancelled and _occurs_on_day(event, day, day_start, day_end)
    ]
    timed = sorted(
        (e for e in relevant if not e.all_day),
        key=lambda e: (e.start_time, e.end_time, e.event_id),
    )
    all_day = sorted(
        (e for e in relevant if e.all_day), key=lambda e: (e.start_time, e.summary, e.event_id)
    )

    free_blocks = compute_free_blocks(timed, day_start, day_end) if timed else []
    reportable = [block for block in free_blocks if block.is_reportable(min_free_block)]

    header = f"{viewer_name}'s Schedule – {format_day_heading(day)}"
    return DaySummary(
        day=day,
        timed_events=timed,
        all_day_events=all_day,
        free_blocks=free_blocks,
        reportable_free_blocks=reportable,
        event_count=len(timed),
        first_meeting=timed[0].start_time if timed else None,
        last_meeting=timed[-1].end_time if timed else None,
        text=_render(header=header, timed=timed, all_day=all_day, reportable=reportable, tz=tz),
    )
