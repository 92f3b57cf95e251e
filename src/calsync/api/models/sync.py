"""Sync configuration and conflict API models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calsync.models import (
    EventSnapshot,
    SyncConfiguration,
    SyncConflict,
    SyncDirection,
    SyncSettings,
    SyncStatus,
    normalize_direction,
)

# ---------------------------------------------------------------------------
# Sync configurations
# ---------------------------------------------------------------------------


class SyncConfigCreateRequest(BaseModel):
    """Link a remote calendar to the requesting user."""

    model_config = ConfigDict(extra="forbid")

    integration_id: UUID
    calendar_id: str = Field(min_length=1)
    calendar_name: str = ""
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    settings: SyncSettings = Field(default_factory=SyncSettings)

    @field_validator("calendar_id")
    @classmethod
    def _normalize_calendar_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return normalized

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, value: Any) -> Any:
        return normalize_direction(value)


class SyncConfigUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    calendar_name: str | None = None
    direction: SyncDirection | None = None
    status: SyncStatus | None = None
    settings: SyncSettings | None = None

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, value: Any) -> Any:
        if value is None:
            return None
        return normalize_direction(value)


class WebhookSetupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    callback_url: str | None = None


class DetectConflictsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    auto_resolve: bool = True


class WebhookSummary(BaseModel):
    channel_id: str
    resource_id: str
    url: str
    expires_at: datetime


class SyncConfigSummary(BaseModel):
    """API view of a sync configuration."""

    id: UUID
    user_id: str
    integration_id: UUID
    calendar_id: str
    calendar_name: str
    direction: SyncDirection
    status: SyncStatus
    last_sync_at: datetime | None = None
    last_sync_error: str | None = None
    settings: SyncSettings
    webhook: WebhookSummary | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_config(cls, config: SyncConfiguration) -> SyncConfigSummary:
        webhook = config.webhook
        return cls(
            id=config.id,
            user_id=config.user_id,
            integration_id=config.integration_id,
            calendar_id=config.calendar_id,
            calendar_name=config.calendar_name,
            direction=config.direction,
            status=config.status,
            last_sync_at=config.last_sync_at,
            last_sync_error=config.last_sync_error,
            settings=config.settings,
            webhook=(
                WebhookSummary(
                    channel_id=webhook.channel_id,
                    resource_id=webhook.resource_id,
                    url=webhook.url,
                    expires_at=webhook.expires_at,
                )
                if webhook is not None
                else None
            ),
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


class SyncOutcomeResponse(BaseModel):
    config_id: UUID
    direction: SyncDirection
    success: bool
    events_synced: int
    error: str | None = None
    partial: bool = False


class BatchSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class DetectionResponse(BaseModel):
    config_id: UUID
    detected: int
    conflict_ids: list[UUID] = Field(default_factory=list)
    auto_resolution: BatchSummary | None = None


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictSummary(BaseModel):
    """API view of a sync conflict with both event snapshots."""

    id: UUID
    config_id: UUID
    conflict_type: str
    local_event: EventSnapshot | None = None
    remote_event: EventSnapshot | None = None
    description: str
    status: str
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_conflict(cls, conflict: SyncConflict) -> ConflictSummary:
        return cls(
            id=conflict.id,
            config_id=conflict.config_id,
            conflict_type=conflict.conflict_type.value,
            local_event=conflict.local_event,
            remote_event=conflict.remote_event,
            description=conflict.description,
            status=conflict.status.value,
            resolution=conflict.resolution,
            resolved_by=conflict.resolved_by,
            resolved_at=conflict.resolved_at,
            created_at=conflict.created_at,
        )


class MergeOverrides(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None


class ResolveConflictRequest(BaseModel):
    """Resolve one conflict; ``merge`` carries overrides for the merge action."""

    model_config = ConfigDict(extra="forbid")

    action: str = Field(min_length=1)
    resolution: str | None = None
    merge: MergeOverrides | None = None


class BulkResolveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conflict_ids: list[UUID] = Field(min_length=1)
    action: str = Field(min_length=1)
    resolution: str | None = None


class ResolutionResponse(BaseModel):
    conflict_id: UUID
    action: str
    resolution: str
    event_id: UUID | None = None


class BulkResolveItem(BaseModel):
    conflict_id: UUID
    success: bool
    error: str | None = None


class BulkResolveResponse(BaseModel):
    summary: BatchSummary
    results: list[BulkResolveItem]


class ConflictStats(BaseModel):
    days: int
    total: int
    by_type: dict[str, int] = Field(default_factory=dict)
