"""The asyncpg pool shared by the snapshot store and the ``users`` lookups.

Connection settings are resolved in layers, later layers winning:

1. built-in local defaults,
2. ``DATABASE_URL``, or the ``POSTGRES_*`` variables when it is unset,
3. ``[daybrief.db] url``,
4. the individual ``[daybrief.db]`` fields.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from daybrief.config import DatabaseConfig

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})

# asyncpg's error when the server drops the connection during the SSL upgrade.
_SSL_UPGRADE_LOST = "unexpected connection_lost() call"


@dataclass(frozen=True)
class ConnectionParams:
    host: str = "localhost"
    port: int = 5432
    user: str = "daybrief"
    password: str = "daybrief"
    database: str = "daybrief"
    ssl: str | None = None

    def pool_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


def parse_ssl_mode(value: str | None) -> str | None:
    """Lower-cased libpq sslmode, or None when unset or unknown."""
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", value)
        return None
    return mode


def _present(**values: Any) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _params_from_url(url: str) -> dict[str, Any]:
    parsed = urlparse(url)
    return _present(
        host=parsed.hostname,
        port=parsed.port,
        user=parsed.username,
        password=parsed.password,
        database=parsed.path.lstrip("/") or None,
        ssl=parse_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
    )


def db_params_from_env() -> dict[str, Any]:
    """Connection settings found in the environment; unset ones are omitted."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return _params_from_url(url)
    port = os.environ.get("POSTGRES_PORT")
    return _present(
        host=os.environ.get("POSTGRES_HOST"),
        port=int(port) if port else None,
        user=os.environ.get("POSTGRES_USER"),
        password=os.environ.get("POSTGRES_PASSWORD"),
        database=os.environ.get("POSTGRES_DB"),
        ssl=parse_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    )


def resolve_connection(config: DatabaseConfig) -> ConnectionParams:
    params = ConnectionParams(database=config.name)
    params = replace(params, **db_params_from_env())
    if config.url:
        params = replace(params, **_params_from_url(config.url))
    return replace(
        params,
        **_present(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            ssl=parse_ssl_mode(config.ssl),
        ),
    )


class Database:
    """Owns one asyncpg pool for the life of the process."""

    def __init__(self, params: ConnectionParams, *, min_size: int = 1, max_size: int = 10) -> None:
        self.params = params
        self.min_size = min_size
        self.max_size = max_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        return cls(resolve_connection(config))

    async def connect(self) -> asyncpg.Pool:
        kwargs = self.params.pool_kwargs() | {"min_size": self.min_size, "max_size": self.max_size}
        try:
            self.pool = await asyncpg.create_pool(**kwargs)
        except ConnectionError as exc:
            # Only an unconfigured sslmode may fall back to plain TCP.
            if self.params.ssl is not None or _SSL_UPGRADE_LOST not in str(exc):
                raise
            logger.info("PostgreSQL at %s refused SSL; connecting without it", self.params.host)
            self.pool = await asyncpg.create_pool(**(kwargs | {"ssl": "disable"}))
        logger.info(
            "Connected to PostgreSQL %s@%s:%s/%s",
            self.params.user,
            self.params.host,
            self.params.port,
            self.params.database,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("PostgreSQL pool closed")

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(
                f"Database {self.params.database!r} has no active connection pool; call connect()"
            )
        return self.pool
