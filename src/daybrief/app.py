"""Process wiring: build every collaborator from config and tear them down in order."""

from __future__ import annotations

import logging

import httpx

from daybrief.channels import TwilioWhatsAppChannel
from daybrief.config import ConfigError, DaybriefConfig
from daybrief.core.metrics import DaybriefMetrics, init_metrics
from daybrief.core.telemetry import init_telemetry
from daybrief.db import Database
from daybrief.detector import ChangeDetector
from daybrief.dispatcher import NotificationDispatcher
from daybrief.engine import NotificationEngine
from daybrief.scheduler import AutomationScheduler
from daybrief.sources import GoogleCalendarSource, GoogleTokenRefresher
from daybrief.store import PostgresSnapshotStore
from daybrief.users import PostgresUserConfigSource

logger = logging.getLogger(__name__)


class DaybriefApp:
    """Owns the database pool, the shared HTTP client and the scheduler."""

    def __init__(self, config: DaybriefConfig) -> None:
        self.config = config
        self.db = Database.from_config(config.db)
        self.http_client: httpx.AsyncClient | None = None
        self.store: PostgresSnapshotStore | None = None
        self.users: PostgresUserConfigSource | None = None
        self.channel: TwilioWhatsAppChannel | None = None
        self.scheduler: AutomationScheduler | None = None

    async def init_db(self) -> PostgresSnapshotStore:
        """Connect and create the snapshot table if needed."""
        store = PostgresSnapshotStore(await self.db.connect())
        await store.ensure_schema()
        self.store = store
        return store

    async def start(self) -> AutomationScheduler:
        """Execute the startup sequence. Timers are not started here."""
        config = self.config
        google = config.google
        if not google.client_id or not google.client_secret:
            raise ConfigError("daybrief.google.client_id and client_secret are required")

        init_telemetry("daybrief")
        init_metrics("daybrief")
        metrics = DaybriefMetrics()

        store = await self.init_db()
        self.users = PostgresUserConfigSource(
            self.db.require_pool(),
            table=config.db.users_table,
            default_recipient=config.twilio.default_recipient,
        )

        self.http_client = httpx.AsyncClient(timeout=30.0)
        self.channel = TwilioWhatsAppChannel(
            config.twilio.account_sid,
            config.twilio.auth_token,
            config.twilio.from_number,
            http_client=self.http_client,
        )
        tokens = GoogleTokenRefresher(
            google.client_id,
            google.client_secret,
            self.users.get_refresh_token,
            self.http_client,
        )
        source = GoogleCalendarSource(
            tokens, calendar_id=google.calendar_id, http_client=self.http_client
        )

        engine = NotificationEngine(
            source=source,
            detector=ChangeDetector(
                store, debounce=config.detection.debounce, metrics=metrics
            ),
            dispatcher=NotificationDispatcher(
                self.channel, send_timeout_s=config.timeouts.send_timeout_s, metrics=metrics
            ),
            fetch_timeout_s=config.timeouts.fetch_timeout_s,
            change_window=config.change_window,
            min_free_block=config.summary.min_free_block,
            metrics=metrics,
        )
        self.scheduler = AutomationScheduler(
            users=self.users,
            engine=engine,
            change_check_interval=config.change_check_interval,
            shutdown_timeout_s=config.shutdown_timeout_s,
        )
        logger.info("Daybrief started")
        return self.scheduler

    async def shutdown(self) -> None:
        """Graceful shutdown: timers and in-flight actions, then HTTP, then the pool."""
        logger.info("Shutting down daybrief")
        if self.scheduler is not None:
            await self.scheduler.stop_all(self.config.shutdown_timeout_s)
            self.scheduler = None
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        await self.db.close()
