"""Shared fixtures and in-memory doubles for the calsync test suite.

Covers:
- In-memory implementations of the four store contracts
- A scriptable remote calendar client and token refresher
- Factories for events, integrations, and sync configurations
- A fully wired ``Services`` graph over the doubles
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import pytest

from calsync.config import CalsyncConfig
from calsync.credentials import CredentialManager, TokenRefresher
from calsync.errors import DuplicateConfigurationError, NotFoundError
from calsync.models import (
    ConflictStatus,
    EventSnapshot,
    Integration,
    SyncConfiguration,
    SyncConflict,
    SyncStatus,
    TokenSet,
    WebhookSubscription,
)
from calsync.providers.base import RemoteCalendarClient, Subscription
from calsync.services import Services, wire_services
from calsync.stores.base import ConflictStore, EventStore, IntegrationStore, SyncConfigStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
USER_ID = "user-1"


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_event(
    *,
    title: str = "Standup",
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    external_id: str | None = None,
    local: bool = True,
    user_id: str = USER_ID,
    **extra,
) -> EventSnapshot:
    """Build a local (with id) or remote (without id) event snapshot."""
    start = start or NOW + timedelta(hours=1)
    return EventSnapshot(
        id=uuid.uuid4() if local else None,
        user_id=user_id if local else None,
        title=title,
        start=start,
        end=start + duration,
        external_id=external_id,
        external_source=None if local else "google",
        **extra,
    )


def make_integration(
    *,
    user_id: str = USER_ID,
    expires_at: datetime | None = None,
    enabled: bool = True,
) -> Integration:
    return Integration(
        user_id=user_id,
        access_token="stored-token",
        refresh_token="refresh-token",
        expires_at=expires_at or NOW + timedelta(days=365 * 10),
        enabled=enabled,
    )


def make_webhook(
    *,
    channel_id: str = "channel-old",
    resource_id: str = "resource-old",
    expires_at: datetime | None = None,
) -> WebhookSubscription:
    return WebhookSubscription(
        channel_id=channel_id,
        resource_id=resource_id,
        url="https://calsync.test/api/webhooks/google",
        expires_at=expires_at or NOW + timedelta(days=6),
    )


def make_config(integration: Integration, **overrides) -> SyncConfiguration:
    values = {
        "user_id": integration.user_id,
        "integration_id": integration.id,
        "calendar_id": "primary",
        "calendar_name": "Work",
    }
    values.update(overrides)
    return SyncConfiguration(**values)


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryEventStore(EventStore):
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, EventSnapshot] = {}

    def add(self, *events: EventSnapshot) -> None:
        for event in events:
            assert event.id is not None
            self.rows[event.id] = event

    async def get(self, event_id: uuid.UUID) -> EventSnapshot | None:
        return self.rows.get(event_id)

    async def find_by_external_id(self, user_id: str, external_id: str) -> EventSnapshot | None:
        for event in sorted(self.rows.values(), key=lambda e: e.start):
            if event.user_id == user_id and event.external_id == external_id:
                return event
        return None

    async def create(self, event: EventSnapshot) -> EventSnapshot:
        stored = event.model_copy(
            update={
                "id": event.id or uuid.uuid4(),
                "created_at": event.created_at or NOW,
                "updated_at": NOW,
            }
        )
        self.rows[stored.id] = stored
        return stored

    async def update(self, event: EventSnapshot) -> EventSnapshot:
        if event.id is None or event.id not in self.rows:
            raise NotFoundError("Event", event.id)
        stored = event.model_copy(update={"updated_at": NOW})
        self.rows[event.id] = stored
        return stored

    async def delete(self, event_id: uuid.UUID) -> bool:
        return self.rows.pop(event_id, None) is not None

    async def list_by_time_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[EventSnapshot]:
        return sorted(
            (e for e in self.rows.values() if e.user_id == user_id and start <= e.start <= end),
            key=lambda e: e.start,
        )


class InMemoryIntegrationStore(IntegrationStore):
    def __init__(self, *integrations: Integration) -> None:
        self.rows = {integration.id: integration for integration in integrations}
        self.saved: list[tuple[uuid.UUID, TokenSet]] = []

    async def get(self, integration_id: uuid.UUID) -> Integration | None:
        return self.rows.get(integration_id)

    async def save_tokens(self, integration_id: uuid.UUID, tokens: TokenSet) -> None:
        if integration_id not in self.rows:
            raise NotFoundError("Calendar integration", integration_id)
        self.saved.append((integration_id, tokens))
        self.rows[integration_id] = self.rows[integration_id].model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": tokens.expires_at,
            }
        )


class InMemorySyncConfigStore(SyncConfigStore):
    def __init__(self, *configs: SyncConfiguration) -> None:
        self.rows = {config.id: config for config in configs}

    def _patch(self, config_id: uuid.UUID, **changes) -> None:
        if config_id in self.rows:
            self.rows[config_id] = self.rows[config_id].model_copy(update=changes)

    async def get(self, config_id: uuid.UUID) -> SyncConfiguration | None:
        return self.rows.get(config_id)

    async def get_by_channel_id(self, channel_id: str) -> SyncConfiguration | None:
        for config in self.rows.values():
            if config.webhook is not None and config.webhook.channel_id == channel_id:
                return config
        return None

    async def get_by_user_and_calendar(
        self, user_id: str, calendar_id: str
    ) -> SyncConfiguration | None:
        for config in self.rows.values():
            if config.user_id == user_id and config.calendar_id == calendar_id:
                return config
        return None

    async def list_by_user(self, user_id: str) -> list[SyncConfiguration]:
        return [c for c in self.rows.values() if c.user_id == user_id]

    async def list_active(self) -> list[SyncConfiguration]:
        return [c for c in self.rows.values() if c.status == SyncStatus.ACTIVE]

    async def list_with_webhooks(self) -> list[SyncConfiguration]:
        return [c for c in self.rows.values() if c.webhook is not None]

    async def create(self, config: SyncConfiguration) -> SyncConfiguration:
        if await self.get_by_user_and_calendar(config.user_id, config.calendar_id):
            raise DuplicateConfigurationError(config.user_id, config.calendar_id)
        self.rows[config.id] = config
        return config

    async def update(self, config: SyncConfiguration) -> SyncConfiguration:
        stored = self.rows.get(config.id)
        if stored is None:
            raise NotFoundError("Sync configuration", config.id)
        updated = stored.model_copy(
            update={
                "calendar_name": config.calendar_name,
                "direction": config.direction,
                "status": config.status,
                "settings": config.settings,
                "updated_at": config.updated_at,
            }
        )
        self.rows[config.id] = updated
        return updated

    async def delete(self, config_id: uuid.UUID) -> bool:
        return self.rows.pop(config_id, None) is not None

    async def record_sync_result(
        self,
        config_id: uuid.UUID,
        *,
        status: SyncStatus,
        error: str | None,
        last_sync_at: datetime | None = None,
    ) -> None:
        changes = {"status": status, "last_sync_error": error}
        if last_sync_at is not None:
            changes["last_sync_at"] = last_sync_at
        self._patch(config_id, **changes)

    async def record_error(self, config_id: uuid.UUID, message: str) -> None:
        self._patch(config_id, last_sync_error=message)

    async def touch_last_sync(self, config_id: uuid.UUID, at: datetime) -> None:
        self._patch(config_id, last_sync_at=at)

    async def replace_webhook(
        self,
        config_id: uuid.UUID,
        *,
        expected_channel_id: str | None,
        webhook: WebhookSubscription | None,
        clear_error: bool = False,
    ) -> bool:
        stored = self.rows.get(config_id)
        if stored is None:
            return False
        current = stored.webhook.channel_id if stored.webhook is not None else None
        if current != expected_channel_id:
            return False
        changes: dict[str, object] = {"webhook": webhook}
        if clear_error:
            changes["last_sync_error"] = None
        self._patch(config_id, **changes)
        return True


class InMemoryConflictStore(ConflictStore):
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, SyncConflict] = {}

    async def create_many(self, conflicts: Sequence[SyncConflict]) -> list[SyncConflict]:
        for conflict in conflicts:
            self.rows[conflict.id] = conflict
        return list(conflicts)

    async def get(self, conflict_id: uuid.UUID) -> SyncConflict | None:
        return self.rows.get(conflict_id)

    async def list_pending(self, user_id: str) -> list[SyncConflict]:
        return sorted(
            (c for c in self.rows.values() if c.user_id == user_id and c.is_pending),
            key=lambda c: c.created_at,
            reverse=True,
        )

    def _transition(
        self, conflict_id: uuid.UUID, current: ConflictStatus, target: ConflictStatus
    ) -> bool:
        stored = self.rows.get(conflict_id)
        if stored is None or stored.status != current:
            return False
        self.rows[conflict_id] = stored.model_copy(update={"status": target})
        return True

    async def claim(self, conflict_id: uuid.UUID) -> bool:
        return self._transition(conflict_id, ConflictStatus.PENDING, ConflictStatus.RESOLVING)

    async def release(self, conflict_id: uuid.UUID) -> None:
        self._transition(conflict_id, ConflictStatus.RESOLVING, ConflictStatus.PENDING)

    async def mark_resolved(
        self,
        conflict_id: uuid.UUID,
        *,
        resolution: str,
        resolved_by: str,
        resolved_at: datetime,
    ) -> bool:
        stored = self.rows.get(conflict_id)
        if stored is None or stored.status != ConflictStatus.RESOLVING:
            return False
        self.rows[conflict_id] = stored.model_copy(
            update={
                "status": ConflictStatus.RESOLVED,
                "resolution": resolution,
                "resolved_by": resolved_by,
                "resolved_at": resolved_at,
                "updated_at": resolved_at,
            }
        )
        return True

    async def stats(self, user_id: str, since: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        for conflict in self.rows.values():
            if conflict.user_id != user_id or conflict.created_at < since:
                continue
            key = conflict.conflict_type.value
            counts[key] = counts.get(key, 0) + 1
        return counts


# ---------------------------------------------------------------------------
# Provider doubles
# ---------------------------------------------------------------------------


class FakeTokenRefresher(TokenRefresher):
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.error = error

    async def refresh(self, refresh_token: str) -> TokenSet:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return TokenSet(
            access_token="refreshed-token",
            refresh_token=refresh_token,
            expires_at=NOW + timedelta(hours=1),
        )


class FakeRemoteClient(RemoteCalendarClient):
    """Scriptable provider: seed ``events`` and set ``*_error`` to inject failures."""

    def __init__(self) -> None:
        self.events: dict[str, list[EventSnapshot]] = {}
        self.list_calls: list[dict[str, object]] = []
        self.created: list[tuple[str, EventSnapshot]] = []
        self.subscriptions: list[Subscription] = []
        self.stopped: list[tuple[str, str]] = []
        self.tokens_seen: list[str] = []
        self.list_error: Exception | None = None
        self.create_error: Exception | None = None
        self.subscribe_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.subscription_ttl = timedelta(days=7)
        self.shutdown_called = False
        self._counter = 0

    @property
    def name(self) -> str:
        return "fake"

    def seed(self, calendar_id: str, *events: EventSnapshot) -> None:
        self.events.setdefault(calendar_id, []).extend(events)

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        *,
        show_deleted: bool = False,
    ) -> list[EventSnapshot]:
        self.tokens_seen.append(access_token)
        self.list_calls.append(
            {"calendar_id": calendar_id, "start": start, "end": end, "show_deleted": show_deleted}
        )
        if self.list_error is not None:
            raise self.list_error
        return [
            event
            for event in self.events.get(calendar_id, [])
            if show_deleted or not event.is_cancelled
        ]

    async def create_event(
        self, access_token: str, calendar_id: str, event: EventSnapshot
    ) -> EventSnapshot:
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        created = event.model_copy(
            update={"id": None, "external_id": f"remote-{self._counter}"}
        )
        self.created.append((calendar_id, created))
        return created

    async def update_event(
        self, access_token: str, calendar_id: str, external_id: str, event: EventSnapshot
    ) -> EventSnapshot:
        return event.model_copy(update={"external_id": external_id})

    async def delete_event(self, access_token: str, calendar_id: str, external_id: str) -> None:
        return None

    async def create_subscription(
        self, access_token: str, calendar_id: str, callback_url: str
    ) -> Subscription:
        self.tokens_seen.append(access_token)
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self._counter += 1
        subscription = Subscription(
            channel_id=f"channel-{self._counter}",
            resource_id=f"resource-{self._counter}",
            expires_at=NOW + self.subscription_ttl,
        )
        self.subscriptions.append(subscription)
        return subscription

    async def stop_subscription(
        self, access_token: str, channel_id: str, resource_id: str
    ) -> None:
        self.stopped.append((channel_id, resource_id))
        if self.stop_error is not None:
            raise self.stop_error

    async def shutdown(self) -> None:
        self.shutdown_called = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def integration() -> Integration:
    return make_integration()


@pytest.fixture
def events() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def conflicts() -> InMemoryConflictStore:
    return InMemoryConflictStore()


@pytest.fixture
def integrations(integration: Integration) -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore(integration)


@pytest.fixture
def configs() -> InMemorySyncConfigStore:
    return InMemorySyncConfigStore()


@pytest.fixture
def refresher() -> FakeTokenRefresher:
    return FakeTokenRefresher()


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def credentials(
    integrations: InMemoryIntegrationStore, refresher: FakeTokenRefresher
) -> CredentialManager:
    return CredentialManager(integrations, refresher)


@pytest.fixture
def calsync_config() -> CalsyncConfig:
    config = CalsyncConfig()
    config.google.webhook_url = "https://calsync.test/api/webhooks/google"
    config.renewal.enabled = False
    config.webhooks.drain_timeout_s = 1.0
    return config


@pytest.fixture
def services(
    calsync_config: CalsyncConfig,
    configs: InMemorySyncConfigStore,
    events: InMemoryEventStore,
    conflicts: InMemoryConflictStore,
    integrations: InMemoryIntegrationStore,
    refresher: FakeTokenRefresher,
    remote: FakeRemoteClient,
) -> Services:
    return wire_services(
        calsync_config,
        configs=configs,
        events=events,
        conflicts=conflicts,
        integrations=integrations,
        refresher=refresher,
        remote=remote,
    )
