"""Table DDL for the sync subsystem, applied idempotently at startup."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

EVENTS_TABLE = "calendar_events"
INTEGRATIONS_TABLE = "calendar_integrations"
SYNC_CONFIGS_TABLE = "calendar_sync_configs"
CONFLICTS_TABLE = "sync_conflicts"

_EVENTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
    id              UUID PRIMARY KEY,
    user_id         TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    description     TEXT NOT NULL DEFAULT '',
    location        TEXT NOT NULL DEFAULT '',
    starts_at       TIMESTAMPTZ NOT NULL,
    ends_at         TIMESTAMPTZ NOT NULL,
    external_id     TEXT,
    external_source TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_EVENTS_EXTERNAL_INDEX_DDL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_events_user_external
ON {EVENTS_TABLE} (user_id, external_id)
WHERE external_id IS NOT NULL
"""

_EVENTS_RANGE_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calendar_events_user_starts_at
ON {EVENTS_TABLE} (user_id, starts_at)
"""

_INTEGRATIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS {INTEGRATIONS_TABLE} (
    id            UUID PRIMARY KEY,
    user_id       TEXT NOT NULL,
    access_token  TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at    TIMESTAMPTZ NOT NULL,
    enabled       BOOLEAN NOT NULL DEFAULT true,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

# Webhook columns are all NULL or all set.
_SYNC_CONFIGS_DDL = f"""
CREATE TABLE IF NOT EXISTS {SYNC_CONFIGS_TABLE} (
    id                  UUID PRIMARY KEY,
    user_id             TEXT NOT NULL,
    integration_id      UUID NOT NULL REFERENCES {INTEGRATIONS_TABLE}(id) ON DELETE CASCADE,
    calendar_id         TEXT NOT NULL,
    calendar_name       TEXT NOT NULL DEFAULT '',
    direction           TEXT NOT NULL DEFAULT 'bidirectional',
    status              TEXT NOT NULL DEFAULT 'active',
    last_sync_at        TIMESTAMPTZ,
    last_sync_error     TEXT,
    sync_cursor         TEXT,
    settings            JSONB NOT NULL DEFAULT '{{}}',
    webhook_channel_id  TEXT,
    webhook_resource_id TEXT,
    webhook_url         TEXT,
    webhook_expires_at  TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, calendar_id),
    CHECK (
        (webhook_channel_id IS NULL) = (webhook_resource_id IS NULL)
        AND (webhook_channel_id IS NULL) = (webhook_url IS NULL)
        AND (webhook_channel_id IS NULL) = (webhook_expires_at IS NULL)
    )
)
"""

_SYNC_CONFIGS_CHANNEL_INDEX_DDL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_sync_configs_channel
ON {SYNC_CONFIGS_TABLE} (webhook_channel_id)
WHERE webhook_channel_id IS NOT NULL
"""

_CONFLICTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {CONFLICTS_TABLE} (
    id            UUID PRIMARY KEY,
    user_id       TEXT NOT NULL,
    config_id     UUID NOT NULL REFERENCES {SYNC_CONFIGS_TABLE}(id) ON DELETE CASCADE,
    conflict_type TEXT NOT NULL,
    local_event   JSONB,
    remote_event  JSONB,
    description   TEXT NOT NULL DEFAULT '',
    status        TEXT NOT NULL DEFAULT 'pending',
    resolution    TEXT,
    resolved_by   TEXT,
    resolved_at   TIMESTAMPTZ,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_CONFLICTS_USER_STATUS_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_sync_conflicts_user_status
ON {CONFLICTS_TABLE} (user_id, status, created_at DESC)
"""

SCHEMA_STATEMENTS: tuple[str, ...] = (
    _EVENTS_DDL,
    _EVENTS_EXTERNAL_INDEX_DDL,
    _EVENTS_RANGE_INDEX_DDL,
    _INTEGRATIONS_DDL,
    _SYNC_CONFIGS_DDL,
    _SYNC_CONFIGS_CHANNEL_INDEX_DDL,
    _CONFLICTS_DDL,
    _CONFLICTS_USER_STATUS_INDEX_DDL,
)


@asynccontextmanager
async def acquire_conn(pool: asyncpg.Pool) -> AsyncIterator[Any]:
    """Acquire a DB connection, including AsyncMock-friendly test doubles."""
    acquired = pool.acquire()
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    if hasattr(acquired, "__await__"):
        acquired = await acquired
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    yield acquired


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the sync tables and indexes if they do not exist."""
    async with acquire_conn(pool) as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("Calendar sync schema ensured (%d statements)", len(SCHEMA_STATEMENTS))
