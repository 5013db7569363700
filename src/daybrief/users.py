"""Read-only access to per-user automation settings.

The ``users`` table belongs to the account/OAuth layer; this module only reads
the columns the automation engine needs.
"""

from __future__ import annotations

import abc
import json
import logging
import re
from typing import Any

import asyncpg
from pydantic import ValidationError

from daybrief.config import ConfigError
from daybrief.models import DEFAULT_DISPLAY_NAME, UserAutomationConfig

logger = logging.getLogger(__name__)

_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class UserConfigSource(abc.ABC):
    """Where the scheduler reads per-user automation settings from."""

    @abc.abstractmethod
    async def get_enabled_users(self) -> list[UserAutomationConfig]:
        """Every user with automation enabled and a valid configuration."""

    @abc.abstractmethod
    async def get_config(self, user_id: str) -> UserAutomationConfig | None:
        """Current settings for *user_id*, or ``None`` for an unknown user.

        Raises:
            ConfigError: when the stored settings are invalid.
        """


def _decode_recipients(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [value]
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return []


def config_from_row(row: Any, *, default_recipient: str | None = None) -> UserAutomationConfig:
    """Map one ``users`` row onto :class:`UserAutomationConfig`.

    A user without recipients falls back to *default_recipient* when one is set.
    """
    user_id = str(row["id"])
    recipients = _decode_recipients(row["whatsapp_recipients"])
    if not any(r.strip() for r in recipients) and default_recipient:
        recipients = [default_recipient]
    try:
        return UserAutomationConfig(
            user_id=user_id,
            enabled=bool(row["automation_enabled"]),
            daily_summary_time=row["daily_summary_time"] or "08:00",
            timezone=row["timezone"] or "",
            recipients=recipients,
            display_name=row["name"] or DEFAULT_DISPLAY_NAME,
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid automation settings for user {user_id}: {exc}") from exc


class PostgresUserConfigSource(UserConfigSource):
    """Reads settings (and Google refresh tokens) from the shared ``users`` table."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        table: str = "users",
        default_recipient: str | None = None,
    ) -> None:
        if _TABLE_NAME_PATTERN.fullmatch(table) is None:
            raise ConfigError(f"Invalid users table name: {table!r}")
        self._pool = pool
        self._table = table
        self._default_recipient = default_recipient

    def _select(self, where: str) -> str:
        return (
            "SELECT id, name, automation_enabled, daily_summary_time, timezone, "
            f"whatsapp_recipients FROM {self._table} WHERE {where}"
        )

    async def get_enabled_users(self) -> list[UserAutomationConfig]:
        rows = await self._pool.fetch(self._select("automation_enabled IS TRUE ORDER BY id"))
        configs: list[UserAutomationConfig] = []
        for row in rows:
            try:
                configs.append(config_from_row(row, default_recipient=self._default_recipient))
            except ConfigError as exc:
                logger.warning("Skipping user with invalid settings: %s", exc)
        return configs

    async def get_config(self, user_id: str) -> UserAutomationConfig | None:
        row = await self._pool.fetchrow(self._select("id::text = $1"), user_id)
        if row is None:
            return None
        return config_from_row(row, default_recipient=self._default_recipient)

    async def get_refresh_token(self, user_id: str) -> str | None:
        return await self._pool.fetchval(
            f"SELECT refresh_token FROM {self._table} WHERE id::text = $1", user_id
        )
