"""Test support utilities for the daybrief package.

In-memory implementations of every external collaborator (snapshot store,
user settings, calendar feed, message channel). They have no dependency on
pytest, so they can also back local demos and dry runs.
"""

from __future__ import annotations

from daybrief.testing.memory import (
    InMemorySnapshotStore,
    InMemoryUserConfigSource,
    RecordingChannel,
    StaticEventSource,
)

__all__ = [
    "InMemorySnapshotStore",
    "InMemoryUserConfigSource",
    "RecordingChannel",
    "StaticEventSource",
]
