"""Compose notification texts and fan them out to every recipient.

Each send runs concurrently under its own timeout; the outcome of every
recipient is collected before a result is reported, and one slow or failing
recipient never prevents delivery to the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from zoneinfo import ZoneInfo

from daybrief.channels import MessageChannel
from daybrief.core.metrics import DaybriefMetrics
from daybrief.models import ChangeRecord, ChangeType, DispatchResult, resolve_timezone
from daybrief.summary import format_clock

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT_S = 15.0

DAILY_SUMMARY_HEADING = "📅 *Daily Schedule Summary*"
CHANGES_HEADING = "🔄 *Calendar Changes Detected*"
ERROR_HEADING = "⚠️ *System Error*"

_CHANGE_LABELS = {
    ChangeType.added: "➕ *New Event:*",
    ChangeType.modified: "✏️ *Modified Event:*",
    ChangeType.deleted: "❌ *Cancelled Event:*",
}


def format_daily_summary_message(summary_text: str) -> str:
    return f"{DAILY_SUMMARY_HEADING}\n\n{summary_text}"


def format_change_message(changes: Iterable[ChangeRecord], tz: ZoneInfo) -> str:
    """One combined message for a batch of changes, in the given order.

    Timed additions carry their local start time; every entry is followed by
    a blank line.
    """
    lines = [f"{CHANGES_HEADING}\n\n"]
    for change in changes:
        lines.append(f"{_CHANGE_LABELS[change.type]} {change.event.summary}\n")
        if change.type == ChangeType.added and not change.event.all_day:
            lines.append(f"⏰ Time: {format_clock(change.event.start_time, tz, pad_hour=False)}\n")
        lines.append("\n")
    return "".join(lines)


def format_error_message(error_message: str) -> str:
    return (
        f"{ERROR_HEADING}\n\nAn error occurred: {error_message}\n\n"
        "Please check your settings or contact support."
    )


def _unique(recipients: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for recipient in recipients:
        recipient = recipient.strip()
        if recipient:
            seen.setdefault(recipient, None)
    return list(seen)


class NotificationDispatcher:
    """Sends summary, change and error notifications through one channel."""

    def __init__(
        self,
        channel: MessageChannel,
        *,
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
        metrics: DaybriefMetrics | None = None,
    ) -> None:
        self._channel = channel
        self._send_timeout_s = send_timeout_s
        self._metrics = metrics
        self.sent_count = 0
        self.failed_count = 0

    async def send_daily_summary(self, recipients: Sequence[str], text: str) -> DispatchResult:
        return await self._fan_out(recipients, format_daily_summary_message(text), kind="summary")

    async def send_change_notification(
        self,
        recipients: Sequence[str],
        changes: Sequence[ChangeRecord],
        *,
        timezone: ZoneInfo | str = "UTC",
    ) -> DispatchResult:
        if not changes:
            logger.debug("No changes to notify")
            return DispatchResult(sent=0, total=0)
        tz = resolve_timezone(timezone) if isinstance(timezone, str) else timezone
        return await self._fan_out(recipients, format_change_message(changes, tz), kind="changes")

    async def send_error_notification(self, recipient: str, message: str) -> bool:
        """Best-effort error report to a single recipient. Never raises."""
        try:
            return await self._send_one(recipient, format_error_message(message), kind="error")
        except Exception:
            logger.exception("Failed to send error notification to %s", recipient)
            return False

    async def _fan_out(self, recipients: Sequence[str], message: str, *, kind: str) -> DispatchResult:
        targets = _unique(recipients)
        if not targets:
            logger.warning("No recipients configured; %s notification not sent", kind)
            return DispatchResult(sent=0, total=0)

        outcomes = await asyncio.gather(
            *(self._send_one(recipient, message, kind=kind) for recipient in targets),
            return_exceptions=True,
        )
        sent = sum(1 for outcome in outcomes if outcome is True)
        result = DispatchResult(sent=sent, total=len(targets))
        log = logger.info if result.success else logger.warning
        log("Sent %s notification to %s recipients", kind, result.ratio)
        return result

    async def _send_one(self, recipient: str, message: str, *, kind: str) -> bool:
        try:
            delivered = await asyncio.wait_for(
                self._channel.send(recipient, message), timeout=self._send_timeout_s
            )
        except TimeoutError:
            logger.warning("Send to %s timed out after %.1fs", recipient, self._send_timeout_s)
            delivered = False
        except Exception:
            logger.exception("Channel %s raised while sending to %s", self._channel.name, recipient)
            delivered = False

        if delivered:
            self.sent_count += 1
            if self._metrics is not None:
                self._metrics.record_sent(kind)
        else:
            self.failed_count += 1
            if self._metrics is not None:
                self._metrics.record_failed(kind)
        return bool(delivered)
