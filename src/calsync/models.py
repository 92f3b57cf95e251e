"""Domain records shared by the sync subsystem.

This module defines:
- ``EventSnapshot``: a local or remote event as seen by the detector/resolver
- ``Integration`` / ``TokenSet``: the OAuth grant behind a configuration
- ``SyncSettings`` / ``WebhookSubscription`` / ``SyncConfiguration``: the
  per (user, calendar) link, including push-subscription metadata
- ``SyncConflict``: a detected inconsistency awaiting resolution
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EXTERNAL_SOURCE_GOOGLE = "google"
REMOTE_STATUS_CONFIRMED = "confirmed"
REMOTE_STATUS_CANCELLED = "cancelled"

DEFAULT_SYNC_INTERVAL_MINUTES = 15

LEGACY_DIRECTION_ALIASES = {
    "from_google": "from_remote",
    "to_google": "to_remote",
}
LEGACY_STRATEGY_ALIASES = {
    "google_wins": "remote_wins",
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_direction(value: Any) -> Any:
    """Map legacy direction names (``from_google``/``to_google``) onto current ones."""
    if isinstance(value, str):
        normalized = value.strip().lower()
        return LEGACY_DIRECTION_ALIASES.get(normalized, normalized)
    return value


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class SyncDirection(StrEnum):
    BIDIRECTIONAL = "bidirectional"
    FROM_REMOTE = "from_remote"
    TO_REMOTE = "to_remote"


class SyncStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    DISABLED = "disabled"


class ConflictResolutionStrategy(StrEnum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MANUAL = "manual"


class ConflictType(StrEnum):
    TIME_OVERLAP = "time_overlap"
    CONTENT_DIFF = "content_diff"
    DUPLICATE_EVENT = "duplicate_event"
    DELETED_EVENT = "deleted_event"


class ConflictStatus(StrEnum):
    PENDING = "pending"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    IGNORED = "ignored"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventSnapshot(BaseModel):
    """A calendar event as persisted locally or fetched from the provider.

    Local snapshots carry ``id`` (and usually ``created_at``); remote
    snapshots leave ``id`` empty and identify themselves by ``external_id``.
    """

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID | None = None
    user_id: str | None = None
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime
    end: datetime
    external_id: str | None = None
    external_source: str | None = None
    status: str = REMOTE_STATUS_CONFIRMED
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("title", "description", "location", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("external_id", "external_source", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("start", "end", "created_at", "updated_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _ensure_aware(value)

    @property
    def is_cancelled(self) -> bool:
        return self.status == REMOTE_STATUS_CANCELLED


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)


class TokenSet(BaseModel):
    """Tokens returned by an OAuth refresh-token exchange."""

    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str = Field(min_length=1, repr=False)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class Integration(BaseModel):
    """A user's OAuth grant for the remote calendar provider."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    access_token: str = Field(repr=False)
    refresh_token: str = Field(repr=False)
    expires_at: datetime
    enabled: bool = True

    @field_validator("expires_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def is_expiring_soon(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return now + TOKEN_EXPIRY_MARGIN > self.expires_at


# ---------------------------------------------------------------------------
# Sync configuration
# ---------------------------------------------------------------------------


class SyncSettings(BaseModel):
    """JSON-encodable per-configuration settings blob."""

    model_config = ConfigDict(extra="ignore")

    interval_minutes: int = Field(default=DEFAULT_SYNC_INTERVAL_MINUTES, ge=1)
    auto_sync: bool = True
    include_past: bool = False
    include_future: bool = True
    conflict_resolution: ConflictResolutionStrategy = ConflictResolutionStrategy.REMOTE_WINS

    @field_validator("conflict_resolution", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return LEGACY_STRATEGY_ALIASES.get(normalized, normalized)
        return value

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)


class WebhookSubscription(BaseModel):
    """A provider push-notification channel.

    Held as a single optional value on :class:`SyncConfiguration` so the
    webhook fields are present together or not at all.
    """

    channel_id: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class SyncConfiguration(BaseModel):
    """Link between one user and one remote calendar."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str = Field(min_length=1)
    integration_id: uuid.UUID
    calendar_id: str = Field(min_length=1)
    calendar_name: str = ""
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    status: SyncStatus = SyncStatus.ACTIVE
    last_sync_at: datetime | None = None
    last_sync_error: str | None = None
    sync_cursor: str | None = None
    settings: SyncSettings = Field(default_factory=SyncSettings)
    webhook: WebhookSubscription | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, value: Any) -> Any:
        return normalize_direction(value)

    @field_validator("last_sync_at", "created_at", "updated_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _ensure_aware(value)

    @property
    def is_active(self) -> bool:
        return self.status == SyncStatus.ACTIVE

    def needs_sync(self, now: datetime | None = None) -> bool:
        """True when active and never synced or the interval has elapsed."""
        if not self.is_active:
            return False
        if self.last_sync_at is None:
            return True
        now = now or utcnow()
        return now - self.last_sync_at >= self.settings.interval


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class SyncConflict(BaseModel):
    """Inconsistency between a local and a remote event."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    config_id: uuid.UUID
    conflict_type: ConflictType
    local_event: EventSnapshot | None = None
    remote_event: EventSnapshot | None = None
    description: str = ""
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _require_a_snapshot(self) -> SyncConflict:
        if self.local_event is None and self.remote_event is None:
            raise ValueError("a conflict needs at least one event snapshot")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == ConflictStatus.PENDING
