"""Shared test fixtures for the daybrief test suite.

Factories build canonical snapshots and raw Google Calendar payloads; the
in-memory collaborators come from :mod:`daybrief.testing`.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from daybrief.models import CalendarEvent, EventStatus, UserAutomationConfig
from daybrief.testing import (
    InMemorySnapshotStore,
    InMemoryUserConfigSource,
    RecordingChannel,
    StaticEventSource,
)

docker_available = shutil.which("docker") is not None

# Fixed reference instant used across the suite: Friday 2024-03-15 12:00 UTC.
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


def make_event(
    event_id: str = "evt-1",
    *,
    user_id: str = "u1",
    summary: str = "Team sync",
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    end: datetime | None = None,
    last_modified: datetime | None = NOW,
    status: EventStatus = EventStatus.confirmed,
    **extra: Any,
) -> CalendarEvent:
    start = start or NOW + timedelta(hours=2)
    return CalendarEvent(
        user_id=user_id,
        event_id=event_id,
        summary=summary,
        start_time=start,
        end_time=end or start + duration,
        status=status,
        last_modified=last_modified,
        **extra,
    )


def raw_event(
    event_id: str = "evt-1",
    *,
    summary: str | None = "Team sync",
    start: datetime | str | None = None,
    end: datetime | str | None = None,
    updated: datetime | str | None = NOW,
    status: str | None = "confirmed",
    **extra: Any,
) -> dict[str, Any]:
    """Build a Google Calendar v3 shaped event payload."""
    start = start or NOW + timedelta(hours=2)
    end = end or (start + timedelta(hours=1) if isinstance(start, datetime) else start)

    def _boundary(value: datetime | str) -> dict[str, str]:
        if isinstance(value, datetime):
            return {"dateTime": value.isoformat()}
        return {"date": value}

    payload: dict[str, Any] = {"id": event_id, "start": _boundary(start), "end": _boundary(end)}
    if summary is not None:
        payload["summary"] = summary
    if status is not None:
        payload["status"] = status
    if updated is not None:
        payload["updated"] = (
            updated.isoformat().replace("+00:00", "Z") if isinstance(updated, datetime) else updated
        )
    payload.update(extra)
    return payload


def make_config(
    user_id: str = "u1",
    *,
    enabled: bool = True,
    daily_summary_time: str = "08:00",
    timezone: str = "UTC",
    recipients: list[str] | None = None,
    display_name: str = "Alex",
) -> UserAutomationConfig:
    return UserAutomationConfig(
        user_id=user_id,
        enabled=enabled,
        daily_summary_time=daily_summary_time,
        timezone=timezone,
        recipients=["+15550001111"] if recipients is None else recipients,
        display_name=display_name,
    )


@pytest.fixture
def event_factory() -> Callable[..., CalendarEvent]:
    return make_event


@pytest.fixture
def store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def users() -> InMemoryUserConfigSource:
    return InMemoryUserConfigSource([make_config()])


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def source() -> StaticEventSource:
    return StaticEventSource()
