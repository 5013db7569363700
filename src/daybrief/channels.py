"""Outbound message channels.

A channel delivers one text to one recipient and reports success as a bool;
ordinary delivery failures never raise. Only a channel that cannot possibly
work (missing credentials) fails loudly, at construction.
"""

from __future__ import annotations

import abc
import logging
import re
from datetime import UTC, datetime

import httpx

from daybrief.models import DaybriefError, TriggerResult

logger = logging.getLogger(__name__)

TWILIO_API_BASE_URL = "https://api.twilio.com/2010-04-01"
WHATSAPP_PREFIX = "whatsapp:"

_NON_DIGITS = re.compile(r"\D")


class ChannelConfigurationError(DaybriefError):
    """Raised when a channel is constructed without the credentials it needs."""


def format_phone_number(phone_number: str) -> str:
    """Normalize a phone number to ``+<digits>``; bare 10-digit numbers are US."""
    digits = _NON_DIGITS.sub("", phone_number)
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def validate_phone_number(phone_number: str) -> bool:
    """Basic sanity check: 10 to 15 digits once punctuation is stripped."""
    digits = _NON_DIGITS.sub("", phone_number)
    return 10 <= len(digits) <= 15


def _whatsapp_address(number: str) -> str:
    number = number.strip()
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"


class MessageChannel(abc.ABC):
    """One-way outbound text channel."""

    name: str = "channel"

    @abc.abstractmethod
    async def send(self, recipient: str, text: str) -> bool:
        """Deliver *text* to *recipient*; ``False`` on any delivery failure."""

    async def send_test_message(self, recipient: str) -> TriggerResult:
        """Send a connectivity check message to *recipient*."""
        now = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        text = (
            "🧪 *Test Message*\n\n"
            "This is a test message from your calendar automation system.\n\n"
            f"Time: {now}\nStatus: ✅ Connected"
        )
        if await self.send(recipient, text):
            return TriggerResult.ok("Test message sent successfully")
        return TriggerResult.failed("Failed to send test message")

    async def aclose(self) -> None:
        """Release any resources held by the channel."""


class TwilioWhatsAppChannel(MessageChannel):
    """WhatsApp delivery through the Twilio Messages REST API."""

    name = "twilio_whatsapp"

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = {
            "account_sid": (account_sid or "").strip(),
            "auth_token": (auth_token or "").strip(),
            "from_number": (from_number or "").strip(),
        }
        missing = [name for name, value in settings.items() if not value]
        if missing:
            raise ChannelConfigurationError(
                "Twilio WhatsApp channel is missing required setting(s): " + ", ".join(missing)
            )

        self._account_sid = settings["account_sid"]
        self._auth = httpx.BasicAuth(self._account_sid, settings["auth_token"])
        self._from = _whatsapp_address(settings["from_number"])
        self._url = f"{TWILIO_API_BASE_URL}/Accounts/{self._account_sid}/Messages.json"
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def send(self, recipient: str, text: str) -> bool:
        to = _whatsapp_address(recipient)
        try:
            response = await self._http_client.post(
                self._url,
                data={"Body": text, "From": self._from, "To": to},
                auth=self._auth,
            )
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp send to %s failed: %s", to, exc)
            return False

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "WhatsApp send to %s rejected (%d): %s",
                to,
                response.status_code,
                " ".join(response.text.split())[:200],
            )
            return False

        sid = None
        try:
            payload = response.json()
            sid = payload.get("sid") if isinstance(payload, dict) else None
        except ValueError:
            pass
        logger.info("WhatsApp message sent to %s (sid=%s)", to, sid)
        return True

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
