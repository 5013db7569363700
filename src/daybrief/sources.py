"""Remote calendar feeds.

``fetch_events`` returns raw Google Calendar v3 event payloads or a
:class:`FetchFailure`. Failures are never reported as an empty list: an empty
list means "the user really has no events in this window" and drives
deletion detection downstream.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from daybrief.models import DaybriefError, FetchFailure, ensure_aware

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

RATE_LIMIT_RETRY_STATUS_CODES = frozenset({429, 503})
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
MAX_PAGES = 20
PAGE_SIZE = 250


class CalendarRequestError(DaybriefError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class TokenRefreshError(DaybriefError):
    """Raised when a refresh-token exchange fails."""


class AccessTokenProvider(Protocol):
    async def get_access_token(self, user_id: str, *, force_refresh: bool = False) -> str: ...


RefreshTokenLookup = Callable[[str], Awaitable[str | None]]


def google_rfc3339(value: datetime) -> str:
    return ensure_aware(value).isoformat().replace("+00:00", "Z")


def safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


class GoogleTokenRefresher:
    """Per-user refresh-token exchange with access-token caching.

    Refresh tokens are looked up lazily through *refresh_token_lookup*; each
    user's access token is cached until shortly before it expires.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token_lookup: RefreshTokenLookup,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._lookup = refresh_token_lookup
        self._http_client = http_client
        self._tokens: dict[str, tuple[str, datetime]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _cached(self, user_id: str) -> str | None:
        cached = self._tokens.get(user_id)
        if cached is None:
            return None
        token, expires_at = cached
        return token if datetime.now(UTC) < expires_at else None

    async def get_access_token(self, user_id: str, *, force_refresh: bool = False) -> str:
        if not force_refresh and (token := self._cached(user_id)) is not None:
            return token

        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            if not force_refresh and (token := self._cached(user_id)) is not None:
                return token
            return await self._refresh(user_id)

    async def _refresh(self, user_id: str) -> str:
        refresh_token = await self._lookup(user_id)
        if not refresh_token:
            raise TokenRefreshError(f"No Google refresh token stored for user {user_id}")

        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError("Google OAuth token response is missing a non-empty access_token")

        expires_in = _coerce_expires_in_seconds(
            payload.get("expires_in") if isinstance(payload, dict) else None
        )
        # Refresh early to avoid edge-of-expiration failures.
        ttl = max(expires_in - 60, 30)
        token = access_token.strip()
        self._tokens[user_id] = (token, datetime.now(UTC) + timedelta(seconds=ttl))
        return token


class EventSource(abc.ABC):
    """Remote calendar feed for one or many users."""

    @abc.abstractmethod
    async def fetch_events(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]] | FetchFailure:
        """Raw events overlapping ``[start, end)``, or a failure signal."""

    async def aclose(self) -> None:
        """Release any resources held by the source."""


class GoogleCalendarSource(EventSource):
    """Google Calendar v3 ``events.list`` with pagination and bearer retries."""

    def __init__(
        self,
        tokens: AccessTokenProvider,
        *,
        calendar_id: str = "primary",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._tokens = tokens
        self._calendar_id = calendar_id
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def fetch_events(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]] | FetchFailure:
        try:
            return await self._list_events(user_id, start, end)
        except (CalendarRequestError, TokenRefreshError) as exc:
            logger.warning("Calendar fetch failed for user %s: %s", user_id, exc)
            return FetchFailure(reason=str(exc))
        except httpx.HTTPError as exc:
            logger.warning("Calendar fetch transport error for user %s: %s", user_id, exc)
            return FetchFailure(reason=f"Google Calendar request failed: {exc}")

    async def _list_events(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        path = f"/calendars/{quote(self._calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": google_rfc3339(start),
            "timeMax": google_rfc3339(end),
            "maxResults": PAGE_SIZE,
        }

        items: list[dict[str, Any]] = []
        for _ in range(MAX_PAGES):
            payload = await self._request_json(user_id, path, params=params)
            page_items = payload.get("items", [])
            if not isinstance(page_items, list):
                raise CalendarRequestError(
                    status_code=200, message="Response is missing a list of items"
                )
            items.extend(item for item in page_items if isinstance(item, dict))

            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return items
            params = {**params, "pageToken": page_token}

        raise CalendarRequestError(
            status_code=200, message=f"Event listing exceeded {MAX_PAGES} pages"
        )

    async def _request_json(
        self, user_id: str, path: str, *, params: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(user_id, path, params=params)

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_bearer(
        self, user_id: str, path: str, *, params: dict[str, Any]
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(user_id, url, params=params, force_refresh=False)
        if response.status_code == 401:
            response = await self._request_once(user_id, url, params=params, force_refresh=True)

        # Honour Retry-After on 429, exponential backoff on 503.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(user_id, url, params=params, force_refresh=False)
            retry += 1

        return response

    async def _request_once(
        self,
        user_id: str,
        url: str,
        *,
        params: dict[str, Any],
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._tokens.get_access_token(user_id, force_refresh=force_refresh)
        return await self._http_client.get(
            url, params=params, headers={"Authorization": f"Bearer {access_token}"}
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
