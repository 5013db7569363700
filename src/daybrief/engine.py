"""Run one automation action for one user: fetch, diff or summarize, notify."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

from daybrief.core.metrics import DaybriefMetrics
from daybrief.core.telemetry import action_span
from daybrief.detector import ChangeDetector
from daybrief.dispatcher import NotificationDispatcher
from daybrief.models import (
    CalendarEvent,
    ChangeRecord,
    DispatchResult,
    FetchFailure,
    SummaryUnavailableError,
    UserAutomationConfig,
)
from daybrief.normalizer import normalize_events
from daybrief.sources import EventSource
from daybrief.summary import DEFAULT_MIN_FREE_BLOCK, DaySummary, build_day_summary, day_window

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_S = 30.0
DEFAULT_CHANGE_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NotificationEngine:
    """Glue between the remote feed, the detector, the summary builder and the dispatcher."""

    def __init__(
        self,
        *,
        source: EventSource,
        detector: ChangeDetector,
        dispatcher: NotificationDispatcher,
        fetch_timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        change_window: timedelta = DEFAULT_CHANGE_WINDOW,
        min_free_block: timedelta = DEFAULT_MIN_FREE_BLOCK,
        clock: Callable[[], datetime] = _utcnow,
        metrics: DaybriefMetrics | None = None,
    ) -> None:
        self._source = source
        self._detector = detector
        self._dispatcher = dispatcher
        self._fetch_timeout_s = fetch_timeout_s
        self._change_window = change_window
        self._min_free_block = min_free_block
        self._clock = clock
        self._metrics = metrics

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    async def fetch(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[CalendarEvent] | FetchFailure:
        """Fetch and normalize remote events; any failure becomes a :class:`FetchFailure`."""
        try:
            raw = await asyncio.wait_for(
                self._source.fetch_events(user_id, start, end), timeout=self._fetch_timeout_s
            )
        except TimeoutError:
            raw = FetchFailure(reason=f"Calendar fetch timed out after {self._fetch_timeout_s}s")
        except Exception as exc:
            logger.exception("Calendar source raised for user %s", user_id)
            raw = FetchFailure(reason=f"Calendar fetch failed: {exc}")

        if isinstance(raw, FetchFailure):
            logger.warning("Calendar fetch failed for user %s: %s", user_id, raw.reason)
            if self._metrics is not None:
                self._metrics.record_fetch_failure()
            return raw
        return normalize_events(user_id, raw)

    async def run_change_check(self, config: UserAutomationConfig) -> list[ChangeRecord]:
        """Detect and notify changes in the next change window.

        Changes are written back to the snapshot store only after the
        notification reached at least one recipient, so an undelivered batch
        is detected again on the next pass.
        """
        with action_span("change_check", user_id=config.user_id):
            now = self._clock()
            window = (now, now + self._change_window)
            fetched = await self.fetch(config.user_id, *window)
            changes = await self._detector.detect(config.user_id, fetched, window)
            if not changes:
                return []

            result = await self._dispatcher.send_change_notification(
                config.recipients, changes, timezone=config.zoneinfo
            )
            if result.success:
                await self._detector.apply(config.user_id, changes)
            else:
                logger.warning(
                    "Change notification for user %s not delivered (%s); "
                    "snapshot left unchanged for retry",
                    config.user_id,
                    result.ratio,
                )
            return changes

    async def sync(self, config: UserAutomationConfig) -> list[CalendarEvent] | FetchFailure:
        """Record the next change window as the user's baseline. Sends nothing.

        Run after a user connects their calendar so the first change check
        does not announce every existing event. A failed fetch writes nothing.
        """
        with action_span("sync", user_id=config.user_id):
            now = self._clock()
            fetched = await self.fetch(config.user_id, now, now + self._change_window)
            if isinstance(fetched, FetchFailure):
                return fetched
            return await self._detector.record_baseline(config.user_id, fetched)

    async def build_summary(
        self, config: UserAutomationConfig, *, day: date | None = None
    ) -> DaySummary:
        """Build the summary of *day* (default: today in the user's timezone).

        Raises:
            SummaryUnavailableError: when the remote fetch fails.
        """
        tz = config.zoneinfo
        day = day or self._clock().astimezone(tz).date()
        start, end = day_window(day, tz)
        fetched = await self.fetch(config.user_id, start, end)
        if isinstance(fetched, FetchFailure):
            raise SummaryUnavailableError(fetched.reason)
        return build_day_summary(
            fetched,
            day=day,
            timezone=tz,
            viewer_name=config.display_name,
            min_free_block=self._min_free_block,
        )

    async def run_daily_summary(self, config: UserAutomationConfig) -> DispatchResult:
        """Build today's summary and send it to every recipient."""
        with action_span("daily_summary", user_id=config.user_id):
            summary = await self.build_summary(config)
            return await self._dispatcher.send_daily_summary(config.recipients, summary.text)
