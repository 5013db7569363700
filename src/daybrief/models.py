"""Domain records shared by the detection, summary and scheduling layers.

Snapshot rows, change records and per-user automation settings are pydantic
models so that every boundary (store rows, remote payloads, trigger results)
is validated on construction.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, time
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_DISPLAY_NAME = "Your"

_HHMM_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


class DaybriefError(Exception):
    """Base class for errors raised by daybrief."""


class EventNormalizationError(DaybriefError, ValueError):
    """Raised when a remote event payload cannot be mapped to a snapshot."""


class SummaryUnavailableError(DaybriefError):
    """Raised when a daily summary cannot be produced (remote fetch failed)."""


class EventType(StrEnum):
    """Heuristic categorization tag; derived, never authoritative."""

    work = "work"
    personal = "personal"
    free = "free"
    unknown = "unknown"


class EventStatus(StrEnum):
    """Snapshot lifecycle state. ``cancelled`` is terminal."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class ChangeType(StrEnum):
    added = "added"
    modified = "modified"
    deleted = "deleted"


def ensure_aware(value: datetime, *, field_name: str = "datetime") -> datetime:
    """Return *value* converted to UTC, rejecting naive datetimes."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{field_name} must be timezone-aware")
    return value.astimezone(UTC)


def parse_hhmm(value: str) -> time:
    """Parse ``"HH:MM"`` (24-hour clock) into a :class:`datetime.time`."""
    match = _HHMM_PATTERN.fullmatch(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM")
    return time(hour=hour, minute=minute)


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown IANA timezone: {name!r}") from exc


class CalendarEvent(BaseModel):
    """Last-known copy of one remote event for one user."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    event_id: str = Field(min_length=1)
    summary: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    event_type: EventType = EventType.unknown
    status: EventStatus = EventStatus.confirmed
    attendees: frozenset[str] = Field(default_factory=frozenset)
    # Remote "updated" stamp for fresh events; content-change time for snapshots.
    last_modified: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_boundary(cls, value: datetime, info: ValidationInfo) -> datetime:
        return ensure_aware(value, field_name=info.field_name or "datetime")

    @field_validator("last_modified")
    @classmethod
    def _normalize_last_modified(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_aware(value, field_name="last_modified")

    @field_validator("attendees", mode="before")
    @classmethod
    def _normalize_attendees(cls, value: Any) -> frozenset[str]:
        if value is None:
            return frozenset()
        return frozenset(
            email.strip().lower() for email in value if isinstance(email, str) and email.strip()
        )

    @model_validator(mode="after")
    def _validate_ordering(self) -> CalendarEvent:
        if self.start_time > self.end_time:
            raise ValueError(
                f"Event {self.event_id!r} starts after it ends "
                f"({self.start_time.isoformat()} > {self.end_time.isoformat()})"
            )
        return self

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.cancelled


class ChangeRecord(BaseModel):
    """One classified difference between the remote feed and the snapshot store."""

    model_config = ConfigDict(frozen=True)

    type: ChangeType
    event: CalendarEvent
    previous: CalendarEvent | None = None


class FetchFailure(BaseModel):
    """Explicit "the remote fetch failed" signal; never the same as zero events."""

    model_config = ConfigDict(frozen=True)

    reason: str


class UserAutomationConfig(BaseModel):
    """Per-user automation settings, owned by the user store."""

    user_id: str
    enabled: bool = False
    daily_summary_time: str = "08:00"
    timezone: str = DEFAULT_TIMEZONE
    recipients: list[str] = Field(default_factory=list)
    display_name: str = DEFAULT_DISPLAY_NAME

    @field_validator("daily_summary_time")
    @classmethod
    def _validate_summary_time(cls, value: str) -> str:
        parsed = parse_hhmm(value)
        return f"{parsed.hour:02d}:{parsed.minute:02d}"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = (value or "").strip() or DEFAULT_TIMEZONE
        resolve_timezone(normalized)
        return normalized

    @field_validator("recipients", mode="before")
    @classmethod
    def _normalize_recipients(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [r.strip() for r in value if isinstance(r, str) and r.strip()]

    @property
    def zoneinfo(self) -> ZoneInfo:
        return resolve_timezone(self.timezone)

    @property
    def summary_time(self) -> time:
        return parse_hhmm(self.daily_summary_time)


class DispatchResult(BaseModel):
    """Outcome of one fan-out over a recipient list."""

    sent: int = 0
    total: int = 0

    @property
    def success(self) -> bool:
        return self.sent > 0

    @property
    def ratio(self) -> str:
        return f"{self.sent}/{self.total}"


class TriggerResult(BaseModel):
    """Structured outcome of an on-demand trigger; never an exception."""

    success: bool
    message: str | None = None
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **detail: Any) -> TriggerResult:
        return cls(success=True, message=message, detail=detail)

    @classmethod
    def failed(cls, error: str, **detail: Any) -> TriggerResult:
        return cls(success=False, error=error, detail=detail)


class AutomationStatus(BaseModel):
    """Observational snapshot of one user's automation state."""

    enabled: bool
    daily_summary_time: str
    timezone: str
    job_active: bool
    change_detection_active: bool
    next_run_at: datetime | None = None
