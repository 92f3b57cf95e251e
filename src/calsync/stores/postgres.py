"""asyncpg-backed implementations of the sync stores.

Each store takes an ``asyncpg.Pool`` and issues single statements through
it.  Multi-field transitions (token persistence, webhook swaps, conflict
resolution) are one ``UPDATE`` each, so no explicit transactions are needed.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import asyncpg

from calsync.errors import DuplicateConfigurationError, NotFoundError
from calsync.models import (
    ConflictStatus,
    ConflictType,
    EventSnapshot,
    Integration,
    SyncConfiguration,
    SyncConflict,
    SyncSettings,
    SyncStatus,
    TokenSet,
    WebhookSubscription,
    utcnow,
)
from calsync.stores.base import ConflictStore, EventStore, IntegrationStore, SyncConfigStore
from calsync.stores.schema import (
    CONFLICTS_TABLE,
    EVENTS_TABLE,
    INTEGRATIONS_TABLE,
    SYNC_CONFIGS_TABLE,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _normalize_json_object(value: Any) -> dict[str, Any]:
    """Normalize a DB JSON/JSONB value into a dict for deterministic access."""
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        if isinstance(parsed, Mapping):
            return dict(parsed)
    return {}


def _encode_jsonb(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _encode_snapshot(event: EventSnapshot | None) -> str | None:
    if event is None:
        return None
    return _encode_jsonb(event.model_dump(mode="json"))


def _decode_snapshot(value: Any) -> EventSnapshot | None:
    payload = _normalize_json_object(value)
    if not payload:
        return None
    return EventSnapshot.model_validate(payload)


def _affected(status: str) -> bool:
    """True when an asyncpg command tag such as ``UPDATE 1`` touched any row."""
    return status.split()[-1] != "0"


def _row_to_event(row: Mapping[str, Any]) -> EventSnapshot:
    return EventSnapshot(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start=row["starts_at"],
        end=row["ends_at"],
        external_id=row["external_id"],
        external_source=row["external_source"],
        created_at=_ensure_utc(row["created_at"]),
        updated_at=_ensure_utc(row["updated_at"]),
    )


def _row_to_integration(row: Mapping[str, Any]) -> Integration:
    return Integration(
        id=row["id"],
        user_id=row["user_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        enabled=bool(row["enabled"]),
    )


def _row_to_webhook(row: Mapping[str, Any]) -> WebhookSubscription | None:
    channel_id = row["webhook_channel_id"]
    resource_id = row["webhook_resource_id"]
    url = row["webhook_url"]
    expires_at = row["webhook_expires_at"]
    if not channel_id or not resource_id or not url or expires_at is None:
        return None
    return WebhookSubscription(
        channel_id=channel_id,
        resource_id=resource_id,
        url=url,
        expires_at=expires_at,
    )


def _row_to_config(row: Mapping[str, Any]) -> SyncConfiguration:
    return SyncConfiguration(
        id=row["id"],
        user_id=row["user_id"],
        integration_id=row["integration_id"],
        calendar_id=row["calendar_id"],
        calendar_name=row["calendar_name"] or "",
        direction=row["direction"],
        status=SyncStatus(row["status"]),
        last_sync_at=_ensure_utc(row["last_sync_at"]),
        last_sync_error=row["last_sync_error"],
        sync_cursor=row["sync_cursor"],
        settings=SyncSettings.model_validate(_normalize_json_object(row["settings"])),
        webhook=_row_to_webhook(row),
        created_at=_ensure_utc(row["created_at"]),
        updated_at=_ensure_utc(row["updated_at"]),
    )


def _row_to_conflict(row: Mapping[str, Any]) -> SyncConflict:
    return SyncConflict(
        id=row["id"],
        user_id=row["user_id"],
        config_id=row["config_id"],
        conflict_type=ConflictType(row["conflict_type"]),
        local_event=_decode_snapshot(row["local_event"]),
        remote_event=_decode_snapshot(row["remote_event"]),
        description=row["description"] or "",
        status=ConflictStatus(row["status"]),
        resolution=row["resolution"],
        resolved_by=row["resolved_by"],
        resolved_at=_ensure_utc(row["resolved_at"]),
        created_at=_ensure_utc(row["created_at"]),
        updated_at=_ensure_utc(row["updated_at"]),
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

_EVENT_COLUMNS = """
    id, user_id, title, description, location, starts_at, ends_at,
    external_id, external_source, created_at, updated_at
"""


class PostgresEventStore(EventStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, event_id: uuid.UUID) -> EventSnapshot | None:
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM {EVENTS_TABLE} WHERE id = $1",
            event_id,
        )
        return _row_to_event(row) if row is not None else None

    async def find_by_external_id(self, user_id: str, external_id: str) -> EventSnapshot | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_EVENT_COLUMNS} FROM {EVENTS_TABLE}
            WHERE user_id = $1 AND external_id = $2
            ORDER BY starts_at
            LIMIT 1
            """,
            user_id,
            external_id,
        )
        return _row_to_event(row) if row is not None else None

    async def create(self, event: EventSnapshot) -> EventSnapshot:
        now = utcnow()
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO {EVENTS_TABLE} (
                id, user_id, title, description, location, starts_at, ends_at,
                external_id, external_source, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {_EVENT_COLUMNS}
            """,
            event.id or uuid.uuid4(),
            event.user_id,
            event.title,
            event.description,
            event.location,
            event.start,
            event.end,
            event.external_id,
            event.external_source,
            event.created_at or now,
            now,
        )
        return _row_to_event(row)

    async def update(self, event: EventSnapshot) -> EventSnapshot:
        if event.id is None:
            raise NotFoundError("Event", None)
        row = await self._pool.fetchrow(
            f"""
            UPDATE {EVENTS_TABLE}
            SET title = $2,
                description = $3,
                location = $4,
                starts_at = $5,
                ends_at = $6,
                external_id = $7,
                external_source = $8,
                updated_at = now()
            WHERE id = $1
            RETURNING {_EVENT_COLUMNS}
            """,
            event.id,
            event.title,
            event.description,
            event.location,
            event.start,
            event.end,
            event.external_id,
            event.external_source,
        )
        if row is None:
            raise NotFoundError("Event", event.id)
        return _row_to_event(row)

    async def delete(self, event_id: uuid.UUID) -> bool:
        result = await self._pool.execute(f"DELETE FROM {EVENTS_TABLE} WHERE id = $1", event_id)
        return _affected(result)

    async def list_by_time_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[EventSnapshot]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM {EVENTS_TABLE}
            WHERE user_id = $1 AND starts_at >= $2 AND starts_at <= $3
            ORDER BY starts_at
            """,
            user_id,
            start,
            end,
        )
        return [_row_to_event(row) for row in rows]


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


class PostgresIntegrationStore(IntegrationStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, integration_id: uuid.UUID) -> Integration | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT id, user_id, access_token, refresh_token, expires_at, enabled
            FROM {INTEGRATIONS_TABLE}
            WHERE id = $1
            """,
            integration_id,
        )
        return _row_to_integration(row) if row is not None else None

    async def save_tokens(self, integration_id: uuid.UUID, tokens: TokenSet) -> None:
        result = await self._pool.execute(
            f"""
            UPDATE {INTEGRATIONS_TABLE}
            SET access_token = $2,
                refresh_token = $3,
                expires_at = $4,
                updated_at = now()
            WHERE id = $1
            """,
            integration_id,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
        )
        if not _affected(result):
            raise NotFoundError("Calendar integration", integration_id)


# ---------------------------------------------------------------------------
# Sync configurations
# ---------------------------------------------------------------------------

_CONFIG_COLUMNS = """
    id, user_id, integration_id, calendar_id, calendar_name, direction, status,
    last_sync_at, last_sync_error, sync_cursor, settings,
    webhook_channel_id, webhook_resource_id, webhook_url, webhook_expires_at,
    created_at, updated_at
"""


class PostgresSyncConfigStore(SyncConfigStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, config_id: uuid.UUID) -> SyncConfiguration | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CONFIG_COLUMNS} FROM {SYNC_CONFIGS_TABLE} WHERE id = $1",
            config_id,
        )
        return _row_to_config(row) if row is not None else None

    async def get_by_channel_id(self, channel_id: str) -> SyncConfiguration | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CONFIG_COLUMNS} FROM {SYNC_CONFIGS_TABLE} WHERE webhook_channel_id = $1",
            channel_id,
        )
        return _row_to_config(row) if row is not None else None

    async def get_by_user_and_calendar(
        self, user_id: str, calendar_id: str
    ) -> SyncConfiguration | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_CONFIG_COLUMNS} FROM {SYNC_CONFIGS_TABLE}
            WHERE user_id = $1 AND calendar_id = $2
            """,
            user_id,
            calendar_id,
        )
        return _row_to_config(row) if row is not None else None

    async def list_by_user(self, user_id: str) -> list[SyncConfiguration]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_CONFIG_COLUMNS} FROM {SYNC_CONFIGS_TABLE}
            WHERE user_id = $1
            ORDER BY created_at
            """,
            user_id,
        )
        return [_row_to_config(row) for row in rows]

    async def list_active(self) -> list[SyncConfiguration]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_CONFIG_COLUMNS} FROM {SYNC_CONFIGS_TABLE}
            WHERE status = $1
            ORDER BY last_sync_at NULLS FIRST
            """,
            SyncStatus.ACTIVE.value,
        )
        return [_row_to_config(row) for row in rows]

    async def list_with_webhooks(self) -> list[SyncConfiguration]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_CONFIG_COLUMNS} FROM {SYNC_CONFIGS_TABLE}
            WHERE webhook_channel_id IS NOT NULL
            ORDER BY webhook_expires_at
            """
        )
        return [_row_to_config(row) for row in rows]

    async def create(self, config: SyncConfiguration) -> SyncConfiguration:
        webhook = config.webhook
        try:
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO {SYNC_CONFIGS_TABLE} (
                    id, user_id, integration_id, calendar_id, calendar_name, direction,
                    status, last_sync_at, last_sync_error, sync_cursor, settings,
                    webhook_channel_id, webhook_resource_id, webhook_url, webhook_expires_at,
                    created_at, updated_at
                )
                VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb,
                    $12, $13, $14, $15, $16, $17
                )
                RETURNING {_CONFIG_COLUMNS}
                """,
                config.id,
                config.user_id,
                config.integration_id,
                config.calendar_id,
                config.calendar_name,
                config.direction.value,
                config.status.value,
                config.last_sync_at,
                config.last_sync_error,
                config.sync_cursor,
                _encode_jsonb(config.settings.model_dump(mode="json")),
                webhook.channel_id if webhook else None,
                webhook.resource_id if webhook else None,
                webhook.url if webhook else None,
                webhook.expires_at if webhook else None,
                config.created_at,
                config.updated_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateConfigurationError(config.user_id, config.calendar_id) from exc
        return _row_to_config(row)

    async def update(self, config: SyncConfiguration) -> SyncConfiguration:
        row = await self._pool.fetchrow(
            f"""
            UPDATE {SYNC_CONFIGS_TABLE}
            SET calendar_name = $2,
                direction = $3,
                status = $4,
                settings = $5::jsonb,
                updated_at = now()
            WHERE id = $1
            RETURNING {_CONFIG_COLUMNS}
            """,
            config.id,
            config.calendar_name,
            config.direction.value,
            config.status.value,
            _encode_jsonb(config.settings.model_dump(mode="json")),
        )
        if row is None:
            raise NotFoundError("Sync configuration", config.id)
        return _row_to_config(row)

    async def delete(self, config_id: uuid.UUID) -> bool:
        result = await self._pool.execute(
            f"DELETE FROM {SYNC_CONFIGS_TABLE} WHERE id = $1", config_id
        )
        return _affected(result)

    async def record_sync_result(
        self,
        config_id: uuid.UUID,
        *,
        status: SyncStatus,
        error: str | None,
        last_sync_at: datetime | None = None,
    ) -> None:
        await self._pool.execute(
            f"""
            UPDATE {SYNC_CONFIGS_TABLE}
            SET status = $2,
                last_sync_error = $3,
                last_sync_at = COALESCE($4, last_sync_at),
                updated_at = now()
            WHERE id = $1
            """,
            config_id,
            status.value,
            error,
            last_sync_at,
        )

    async def record_error(self, config_id: uuid.UUID, message: str) -> None:
        await self._pool.execute(
            f"""
            UPDATE {SYNC_CONFIGS_TABLE}
            SET last_sync_error = $2, updated_at = now()
            WHERE id = $1
            """,
            config_id,
            message,
        )

    async def touch_last_sync(self, config_id: uuid.UUID, at: datetime) -> None:
        await self._pool.execute(
            f"""
            UPDATE {SYNC_CONFIGS_TABLE}
            SET last_sync_at = $2, updated_at = now()
            WHERE id = $1
            """,
            config_id,
            at,
        )

    async def replace_webhook(
        self,
        config_id: uuid.UUID,
        *,
        expected_channel_id: str | None,
        webhook: WebhookSubscription | None,
        clear_error: bool = False,
    ) -> bool:
        result = await self._pool.execute(
            f"""
            UPDATE {SYNC_CONFIGS_TABLE}
            SET webhook_channel_id = $3,
                webhook_resource_id = $4,
                webhook_url = $5,
                webhook_expires_at = $6,
                last_sync_error = CASE WHEN $7 THEN NULL ELSE last_sync_error END,
                updated_at = now()
            WHERE id = $1 AND webhook_channel_id IS NOT DISTINCT FROM $2
            """,
            config_id,
            expected_channel_id,
            webhook.channel_id if webhook else None,
            webhook.resource_id if webhook else None,
            webhook.url if webhook else None,
            webhook.expires_at if webhook else None,
            clear_error,
        )
        swapped = _affected(result)
        if not swapped:
            logger.debug(
                "Webhook swap for configuration %s lost (expected channel %s)",
                config_id,
                expected_channel_id,
            )
        return swapped


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

_CONFLICT_COLUMNS = """
    id, user_id, config_id, conflict_type, local_event, remote_event, description,
    status, resolution, resolved_by, resolved_at, created_at, updated_at
"""


class PostgresConflictStore(ConflictStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create_many(self, conflicts: Sequence[SyncConflict]) -> list[SyncConflict]:
        if not conflicts:
            return []
        await self._pool.executemany(
            f"""
            INSERT INTO {CONFLICTS_TABLE} (
                id, user_id, config_id, conflict_type, local_event, remote_event,
                description, status, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9, $10)
            """,
            [
                (
                    conflict.id,
                    conflict.user_id,
                    conflict.config_id,
                    conflict.conflict_type.value,
                    _encode_snapshot(conflict.local_event),
                    _encode_snapshot(conflict.remote_event),
                    conflict.description,
                    conflict.status.value,
                    conflict.created_at,
                    conflict.updated_at,
                )
                for conflict in conflicts
            ],
        )
        return list(conflicts)

    async def get(self, conflict_id: uuid.UUID) -> SyncConflict | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CONFLICT_COLUMNS} FROM {CONFLICTS_TABLE} WHERE id = $1",
            conflict_id,
        )
        return _row_to_conflict(row) if row is not None else None

    async def list_pending(self, user_id: str) -> list[SyncConflict]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_CONFLICT_COLUMNS} FROM {CONFLICTS_TABLE}
            WHERE user_id = $1 AND status = $2
            ORDER BY created_at DESC
            """,
            user_id,
            ConflictStatus.PENDING.value,
        )
        return [_row_to_conflict(row) for row in rows]

    async def _transition(
        self, conflict_id: uuid.UUID, current: ConflictStatus, target: ConflictStatus
    ) -> bool:
        result = await self._pool.execute(
            f"""
            UPDATE {CONFLICTS_TABLE}
            SET status = $2, updated_at = now()
            WHERE id = $1 AND status = $3
            """,
            conflict_id,
            target.value,
            current.value,
        )
        return _affected(result)

    async def claim(self, conflict_id: uuid.UUID) -> bool:
        return await self._transition(
            conflict_id, ConflictStatus.PENDING, ConflictStatus.RESOLVING
        )

    async def release(self, conflict_id: uuid.UUID) -> None:
        await self._transition(conflict_id, ConflictStatus.RESOLVING, ConflictStatus.PENDING)

    async def mark_resolved(
        self,
        conflict_id: uuid.UUID,
        *,
        resolution: str,
        resolved_by: str,
        resolved_at: datetime,
    ) -> bool:
        result = await self._pool.execute(
            f"""
            UPDATE {CONFLICTS_TABLE}
            SET status = $2,
                resolution = $3,
                resolved_by = $4,
                resolved_at = $5,
                updated_at = now()
            WHERE id = $1 AND status = $6
            """,
            conflict_id,
            ConflictStatus.RESOLVED.value,
            resolution,
            resolved_by,
            resolved_at,
            ConflictStatus.RESOLVING.value,
        )
        return _affected(result)

    async def stats(self, user_id: str, since: datetime) -> dict[str, int]:
        rows = await self._pool.fetch(
            f"""
            SELECT conflict_type, COUNT(*) AS count
            FROM {CONFLICTS_TABLE}
            WHERE user_id = $1 AND created_at >= $2
            GROUP BY conflict_type
            """,
            user_id,
            since,
        )
        return {str(row["conflict_type"]): int(row["count"]) for row in rows}
