"""Per-user automation scheduling.

:class:`AutomationScheduler` owns three kinds of asyncio tasks:

- one daily-summary timer per enabled user, computed with croniter in the
  user's own timezone;
- one global change-detection loop sweeping every enabled user;
- the in-flight actions those timers (and manual triggers) start.

Actions always run as their own tracked tasks, so cancelling a timer never
interrupts a summary or change check that is already running. A per-user
``asyncio.Lock`` keeps at most one action in flight per user: timer firings
that find the user busy are skipped, manual triggers wait their turn.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from datetime import UTC, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from daybrief.config import ConfigError
from daybrief.core.logging import set_user_context
from daybrief.core.telemetry import action_span
from daybrief.engine import NotificationEngine
from daybrief.models import AutomationStatus, FetchFailure, TriggerResult, UserAutomationConfig
from daybrief.users import UserConfigSource

logger = logging.getLogger(__name__)

DEFAULT_CHANGE_CHECK_INTERVAL = timedelta(minutes=5)
DEFAULT_SHUTDOWN_TIMEOUT_S = 30.0

USER_NOT_FOUND = "User not found"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def daily_cron(summary_time: time) -> str:
    return f"{summary_time.minute} {summary_time.hour} * * *"


def next_daily_run(summary_time: time, tz: ZoneInfo, *, now: datetime | None = None) -> datetime:
    """Next occurrence of *summary_time* wall-clock time in *tz*, as UTC.

    croniter is evaluated on a tz-aware anchor so the result follows DST
    transitions of the user's zone.
    """
    anchor = (now or _utcnow()).astimezone(tz)
    next_local = croniter(daily_cron(summary_time), anchor).get_next(datetime)
    return next_local.astimezone(UTC)


class AutomationScheduler:
    """Process-wide owner of every automation timer and in-flight action."""

    def __init__(
        self,
        *,
        users: UserConfigSource,
        engine: NotificationEngine,
        change_check_interval: timedelta = DEFAULT_CHANGE_CHECK_INTERVAL,
        shutdown_timeout_s: float = DEFAULT_SHUTDOWN_TIMEOUT_S,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._users = users
        self._engine = engine
        self._change_check_interval = change_check_interval
        self._shutdown_timeout_s = shutdown_timeout_s
        self._clock = clock
        self._sleep = sleep
        self._timers: dict[str, asyncio.Task] = {}
        self._next_runs: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: set[asyncio.Task] = set()
        self._change_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active_users(self) -> list[str]:
        return sorted(user_id for user_id, task in self._timers.items() if not task.done())

    @property
    def change_detection_active(self) -> bool:
        return self._change_task is not None and not self._change_task.done()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def is_busy(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def _job_active(self, user_id: str) -> bool:
        task = self._timers.get(user_id)
        return task is not None and not task.done()

    async def status(self, user_id: str) -> AutomationStatus | None:
        """Observational snapshot of one user's automation. ``None`` if unknown."""
        config = await self._users.get_config(user_id)
        if config is None:
            return None
        job_active = self._job_active(user_id)
        return AutomationStatus(
            enabled=config.enabled,
            daily_summary_time=config.daily_summary_time,
            timezone=config.timezone,
            job_active=job_active,
            change_detection_active=self.change_detection_active,
            next_run_at=self._next_runs.get(user_id) if job_active else None,
        )

    # ------------------------------------------------------------------
    # Per-user timers
    # ------------------------------------------------------------------

    async def start_user(self, user_id: str) -> bool:
        """(Re)install the daily-summary timer for *user_id*.

        Returns False without side effects when the user is unknown or has
        automation disabled.

        Raises:
            ConfigError: when the user's time of day or timezone is invalid.
        """
        config = await self._users.get_config(user_id)
        if config is None or not config.enabled:
            logger.info("Automation not started for user %s: missing or disabled", user_id)
            return False

        try:
            next_run = next_daily_run(config.summary_time, config.zoneinfo, now=self._clock())
        except (ValueError, KeyError) as exc:
            raise ConfigError(f"Invalid schedule for user {user_id}: {exc}") from exc

        # No await between cancelling the old timer and installing the new one,
        # so concurrent restarts always leave exactly one timer behind.
        previous = self._timers.pop(user_id, None)
        if previous is not None:
            previous.cancel()
        self._next_runs[user_id] = next_run
        timer = asyncio.create_task(self._daily_timer(config), name=f"daybrief-daily-{user_id}")
        timer.add_done_callback(self._log_timer_exit)
        self._timers[user_id] = timer
        logger.info(
            "Daily summary scheduled for user %s at %s %s (next run %s)",
            user_id,
            config.daily_summary_time,
            config.timezone,
            next_run.isoformat(),
        )

        if previous is not None:
            await self._await_cancelled(previous)
        return True

    async def stop_user(self, user_id: str) -> None:
        """Cancel the user's daily timer. In-flight actions keep running."""
        task = self._timers.pop(user_id, None)
        self._next_runs.pop(user_id, None)
        if task is None:
            return
        task.cancel()
        await self._await_cancelled(task)
        logger.info("Daily summary timer stopped for user %s", user_id)

    async def _daily_timer(self, config: UserAutomationConfig) -> None:
        user_id = config.user_id
        next_run = next_daily_run(config.summary_time, config.zoneinfo, now=self._clock())
        while True:
            self._next_runs[user_id] = next_run
            delay = max((next_run - self._clock()).total_seconds(), 0.0)
            await self._sleep(delay)
            config = await self._on_daily_timer(user_id) or config
            # The sleep may wake slightly early; always move past the run just fired.
            anchor = max(self._clock(), next_run + timedelta(seconds=1))
            next_run = next_daily_run(config.summary_time, config.zoneinfo, now=anchor)

    @staticmethod
    def _log_timer_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Daily timer %s stopped unexpectedly: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def _on_daily_timer(self, user_id: str) -> UserAutomationConfig | None:
        """Timer firing: re-read settings and start the summary if still enabled."""
        try:
            config = await self._users.get_config(user_id)
        except Exception:
            logger.exception("Could not reload settings for user %s; skipping run", user_id)
            return None

        if config is None or not config.enabled:
            logger.info("Skipping daily summary for user %s: missing or disabled", user_id)
            return config

        self._spawn(
            self._guarded(user_id, "daily_summary", self._daily_summary_action(config), wait=False),
            name=f"daybrief-summary-{user_id}",
        )
        return config

    # ------------------------------------------------------------------
    # Global change detection
    # ------------------------------------------------------------------

    def start_change_detection(self) -> bool:
        """Start the global change-detection loop; False if already running."""
        if self.change_detection_active:
            return False
        self._change_task = asyncio.create_task(
            self._change_detection_loop(), name="daybrief-change-detection"
        )
        logger.info(
            "Change detection started (interval=%ds)",
            int(self._change_check_interval.total_seconds()),
        )
        return True

    async def _change_detection_loop(self) -> None:
        interval = self._change_check_interval.total_seconds()
        while True:
            await self._sleep(interval)
            try:
                await self.run_change_sweep()
            except Exception as exc:
                logger.error("Change detection sweep error: %s", exc, exc_info=True)

    async def run_change_sweep(self) -> int:
        """Run one change check for every enabled user; returns users checked.

        Users are checked concurrently. One user's failure never affects the
        others, and users with an action already in flight are skipped.
        """
        with action_span("sweep"):
            configs = await self._users.get_enabled_users()
            tasks = [
                self._spawn(
                    self._guarded(
                        config.user_id,
                        "change_check",
                        self._change_check_action(config),
                        wait=False,
                    ),
                    name=f"daybrief-changes-{config.user_id}",
                )
                for config in configs
            ]
            if not tasks:
                return 0
            # Shielded so that cancelling the sweep never cancels the actions.
            results = await asyncio.gather(
                *(asyncio.shield(task) for task in tasks), return_exceptions=True
            )
            for config, outcome in zip(configs, results, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error("Change check for user %s raised: %s", config.user_id, outcome)
            return len(configs)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def start_all(self) -> int:
        """Start timers for every enabled user, then the change-detection loop."""
        configs = await self._users.get_enabled_users()
        started = 0
        for config in configs:
            try:
                if await self.start_user(config.user_id):
                    started += 1
            except Exception as exc:
                logger.error("Failed to start automation for user %s: %s", config.user_id, exc)
        self.start_change_detection()
        logger.info("Started automation for %d/%d enabled user(s)", started, len(configs))
        return started

    async def stop_all(self, timeout: float | None = None) -> None:
        """Cancel every timer, then drain in-flight actions up to *timeout*."""
        timeout = self._shutdown_timeout_s if timeout is None else timeout

        timers = list(self._timers.values())
        self._timers.clear()
        self._next_runs.clear()
        if self._change_task is not None:
            timers.append(self._change_task)
            self._change_task = None
        for task in timers:
            task.cancel()
        for task in timers:
            await self._await_cancelled(task)

        if not self._inflight:
            return
        logger.info("Waiting up to %.1fs for %d in-flight action(s)", timeout, len(self._inflight))
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        if pending:
            logger.warning("Cancelling %d action(s) still running at shutdown", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    async def trigger_summary_now(self, user_id: str) -> TriggerResult:
        """Build and send today's summary now, waiting for any in-flight action."""
        return await self._trigger(user_id, "daily_summary", self._daily_summary_action)

    async def trigger_change_check_now(self, user_id: str) -> TriggerResult:
        """Run a change check now, waiting for any in-flight action."""
        return await self._trigger(user_id, "change_check", self._change_check_action)

    async def trigger_sync_now(self, user_id: str) -> TriggerResult:
        """Store the user's upcoming events as the change-detection baseline."""
        return await self._trigger(user_id, "sync", self._sync_action)

    async def preview_summary(self, user_id: str) -> TriggerResult:
        """Render today's summary without sending it."""
        try:
            config = await self._users.get_config(user_id)
            if config is None:
                return TriggerResult.failed(USER_NOT_FOUND)
            summary = await self._engine.build_summary(config)
        except Exception as exc:
            logger.warning("Summary preview failed for user %s: %s", user_id, exc)
            return TriggerResult.failed(str(exc))
        return TriggerResult.ok(
            "Summary preview generated",
            text=summary.text,
            event_count=summary.event_count,
        )

    async def _trigger(
        self,
        user_id: str,
        action: str,
        factory: Callable[[UserAutomationConfig], Coroutine[Any, Any, TriggerResult]],
    ) -> TriggerResult:
        try:
            config = await self._users.get_config(user_id)
        except Exception as exc:
            logger.warning("Could not load settings for user %s: %s", user_id, exc)
            return TriggerResult.failed(str(exc))
        if config is None:
            return TriggerResult.failed(USER_NOT_FOUND)

        task = self._spawn(
            self._guarded(user_id, action, factory(config), wait=True),
            name=f"daybrief-trigger-{action}-{user_id}",
        )
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _daily_summary_action(self, config: UserAutomationConfig) -> TriggerResult:
        try:
            result = await self._engine.run_daily_summary(config)
        except Exception as exc:
            logger.error("Daily summary failed for user %s: %s", config.user_id, exc, exc_info=True)
            await self._notify_error(config, exc)
            return TriggerResult.failed(str(exc))
        if not result.success:
            return TriggerResult.failed("Failed to send daily summary", sent=result.ratio)
        return TriggerResult.ok("Daily summary sent successfully", sent=result.ratio)

    async def _change_check_action(self, config: UserAutomationConfig) -> TriggerResult:
        try:
            changes = await self._engine.run_change_check(config)
        except Exception as exc:
            logger.error("Change check failed for user %s: %s", config.user_id, exc, exc_info=True)
            return TriggerResult.failed(str(exc))
        return TriggerResult.ok("Change check completed", changes=len(changes))

    async def _sync_action(self, config: UserAutomationConfig) -> TriggerResult:
        try:
            outcome = await self._engine.sync(config)
        except Exception as exc:
            logger.error("Sync failed for user %s: %s", config.user_id, exc, exc_info=True)
            return TriggerResult.failed(str(exc))
        if isinstance(outcome, FetchFailure):
            return TriggerResult.failed(outcome.reason)
        return TriggerResult.ok(f"Synced {len(outcome)} events", synced=len(outcome))

    async def _notify_error(self, config: UserAutomationConfig, exc: Exception) -> None:
        if not config.recipients:
            return
        await self._engine.dispatcher.send_error_notification(config.recipients[0], str(exc))

    # ------------------------------------------------------------------
    # Task plumbing
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        user_id: str,
        action: str,
        work: Coroutine[Any, Any, TriggerResult],
        *,
        wait: bool,
    ) -> TriggerResult:
        set_user_context(user_id)
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        if not wait and lock.locked():
            work.close()
            logger.info("Skipping %s for user %s: another action is in flight", action, user_id)
            return TriggerResult.failed(f"{action} skipped: another action is in flight")
        try:
            await lock.acquire()
        except asyncio.CancelledError:
            work.close()
            raise
        try:
            return await work
        finally:
            lock.release()

    def _spawn(self, coro: Coroutine[Any, Any, TriggerResult], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    @staticmethod
    async def _await_cancelled(task: asyncio.Task) -> None:
        # asyncio.wait never raises the task's CancelledError, only our own.
        await asyncio.wait({task})
