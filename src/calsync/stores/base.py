"""Persistence contracts used by the sync subsystem.

The Postgres implementations live beside this module; tests provide
in-memory doubles of the same interfaces.
"""

from __future__ import annotations

import abc
import uuid
from collections.abc import Sequence
from datetime import datetime

from calsync.models import (
    EventSnapshot,
    Integration,
    SyncConfiguration,
    SyncConflict,
    SyncStatus,
    TokenSet,
    WebhookSubscription,
)


class EventStore(abc.ABC):
    """Local calendar events."""

    @abc.abstractmethod
    async def get(self, event_id: uuid.UUID) -> EventSnapshot | None: ...

    @abc.abstractmethod
    async def find_by_external_id(self, user_id: str, external_id: str) -> EventSnapshot | None:
        """Return the user's event mirrored from ``external_id``, if any."""
        ...

    @abc.abstractmethod
    async def create(self, event: EventSnapshot) -> EventSnapshot:
        """Insert *event*, assigning ``id`` and timestamps when unset."""
        ...

    @abc.abstractmethod
    async def update(self, event: EventSnapshot) -> EventSnapshot:
        """Overwrite the stored event with the same id.

        Raises :class:`~calsync.errors.NotFoundError` when no such event exists.
        """
        ...

    @abc.abstractmethod
    async def delete(self, event_id: uuid.UUID) -> bool: ...

    @abc.abstractmethod
    async def list_by_time_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[EventSnapshot]:
        """Return events starting in ``[start, end]`` ordered by start."""
        ...


class IntegrationStore(abc.ABC):
    """OAuth grants, written only through token refresh."""

    @abc.abstractmethod
    async def get(self, integration_id: uuid.UUID) -> Integration | None: ...

    @abc.abstractmethod
    async def save_tokens(self, integration_id: uuid.UUID, tokens: TokenSet) -> None:
        """Persist all three token fields in one statement."""
        ...


class SyncConfigStore(abc.ABC):
    """Per (user, calendar) sync configurations."""

    @abc.abstractmethod
    async def get(self, config_id: uuid.UUID) -> SyncConfiguration | None: ...

    @abc.abstractmethod
    async def get_by_channel_id(self, channel_id: str) -> SyncConfiguration | None: ...

    @abc.abstractmethod
    async def get_by_user_and_calendar(
        self, user_id: str, calendar_id: str
    ) -> SyncConfiguration | None: ...

    @abc.abstractmethod
    async def list_by_user(self, user_id: str) -> list[SyncConfiguration]: ...

    @abc.abstractmethod
    async def list_active(self) -> list[SyncConfiguration]: ...

    @abc.abstractmethod
    async def list_with_webhooks(self) -> list[SyncConfiguration]:
        """Return configurations holding a webhook subscription."""
        ...

    @abc.abstractmethod
    async def create(self, config: SyncConfiguration) -> SyncConfiguration: ...

    @abc.abstractmethod
    async def update(self, config: SyncConfiguration) -> SyncConfiguration:
        """Persist name, direction, status and settings of *config*.

        Webhook fields are never written here; see :meth:`replace_webhook`.
        """
        ...

    @abc.abstractmethod
    async def delete(self, config_id: uuid.UUID) -> bool: ...

    @abc.abstractmethod
    async def record_sync_result(
        self,
        config_id: uuid.UUID,
        *,
        status: SyncStatus,
        error: str | None,
        last_sync_at: datetime | None = None,
    ) -> None:
        """Set status and error; ``last_sync_at`` is left alone when None."""
        ...

    @abc.abstractmethod
    async def record_error(self, config_id: uuid.UUID, message: str) -> None:
        """Annotate ``last_sync_error`` without touching status."""
        ...

    @abc.abstractmethod
    async def touch_last_sync(self, config_id: uuid.UUID, at: datetime) -> None: ...

    @abc.abstractmethod
    async def replace_webhook(
        self,
        config_id: uuid.UUID,
        *,
        expected_channel_id: str | None,
        webhook: WebhookSubscription | None,
        clear_error: bool = False,
    ) -> bool:
        """Swap webhook fields if the stored channel id still equals *expected_channel_id*.

        Returns False when another writer changed the subscription first.
        """
        ...


class ConflictStore(abc.ABC):
    """Persisted sync conflicts."""

    @abc.abstractmethod
    async def create_many(self, conflicts: Sequence[SyncConflict]) -> list[SyncConflict]: ...

    @abc.abstractmethod
    async def get(self, conflict_id: uuid.UUID) -> SyncConflict | None: ...

    @abc.abstractmethod
    async def list_pending(self, user_id: str) -> list[SyncConflict]: ...

    @abc.abstractmethod
    async def claim(self, conflict_id: uuid.UUID) -> bool:
        """Move a pending conflict to ``resolving``; False when it was not pending."""
        ...

    @abc.abstractmethod
    async def release(self, conflict_id: uuid.UUID) -> None:
        """Return a claimed conflict to ``pending`` after a failed resolution."""
        ...

    @abc.abstractmethod
    async def mark_resolved(
        self,
        conflict_id: uuid.UUID,
        *,
        resolution: str,
        resolved_by: str,
        resolved_at: datetime,
    ) -> bool:
        """Close a claimed conflict; False when it was no longer ``resolving``."""
        ...

    @abc.abstractmethod
    async def stats(self, user_id: str, since: datetime) -> dict[str, int]:
        """Count the user's conflicts created since *since*, keyed by type."""
        ...
