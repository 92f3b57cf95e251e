"""Postgres connection settings and the service's asyncpg pool.

Where to connect comes from the environment (``DATABASE_URL``, or the
``POSTGRES_*`` variables when it is unset).  Which database to use and how
large the pool may grow come from ``[service.db]`` in calsync.toml, so a
database named in ``DATABASE_URL`` is ignored.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from calsync.config import DatabaseConfig

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"
SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


def _sslmode(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", value)
        return None
    return mode


@dataclass(frozen=True)
class PostgresSettings:
    """Server address and credentials, independent of the database name."""

    host: str = "localhost"
    port: int = 5432
    user: str = "calsync"
    password: str = "calsync"
    sslmode: str | None = None

    @classmethod
    def from_url(cls, url: str) -> PostgresSettings:
        parsed = urlparse(url)
        return cls(
            host=parsed.hostname or cls.host,
            port=parsed.port or cls.port,
            user=parsed.username or cls.user,
            password=parsed.password or cls.password,
            sslmode=_sslmode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PostgresSettings:
        env = os.environ if environ is None else environ
        if url := env.get("DATABASE_URL"):
            return cls.from_url(url)
        return cls(
            host=env.get("POSTGRES_HOST", cls.host),
            port=int(env.get("POSTGRES_PORT", cls.port)),
            user=env.get("POSTGRES_USER", cls.user),
            password=env.get("POSTGRES_PASSWORD", cls.password),
            sslmode=_sslmode(env.get("POSTGRES_SSLMODE")),
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        """Keyword arguments for ``asyncpg.connect`` / ``create_pool``."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.sslmode is not None:
            kwargs["ssl"] = self.sslmode
        return kwargs


class Database:
    """The calsync database: creation on first run, then one shared pool."""

    def __init__(self, config: DatabaseConfig, settings: PostgresSettings) -> None:
        self.config = config
        self.settings = settings
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        return cls(config, PostgresSettings.from_env())

    @property
    def name(self) -> str:
        return self.config.name

    async def provision(self) -> None:
        """Create the database from the maintenance database unless it exists."""
        conn = await asyncpg.connect(**self.settings.connect_kwargs(MAINTENANCE_DB))
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.name):
                logger.info("Database %s already exists", self.name)
                return
            # CREATE DATABASE cannot take the name as a parameter.
            quoted = self.name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database %s", self.name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                **self.settings.connect_kwargs(self.name),
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
            )
            logger.info(
                "Connected to %s on %s:%d (pool %d-%d)",
                self.name,
                self.settings.host,
                self.settings.port,
                self.config.min_pool_size,
                self.config.max_pool_size,
            )
        return self.pool

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is not None:
            await pool.close()
            logger.info("Closed connection pool for %s", self.name)
