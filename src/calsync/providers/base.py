"""Remote calendar client contract."""

from __future__ import annotations

import abc
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from calsync.models import EventSnapshot


class Subscription(BaseModel):
    """A push-notification channel as issued by the provider."""

    channel_id: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")
        return value


class RemoteCalendarClient(abc.ABC):
    """Provider abstraction used by sync, webhook and renewal flows.

    Every method takes the caller's access token; token refresh is the
    credential manager's job.  Failures surface as
    :class:`~calsync.errors.TransientRemoteError`.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        *,
        show_deleted: bool = False,
    ) -> list[EventSnapshot]:
        """Return events in ``[start, end]``; cancelled ones only with *show_deleted*."""
        ...

    @abc.abstractmethod
    async def create_event(
        self, access_token: str, calendar_id: str, event: EventSnapshot
    ) -> EventSnapshot:
        """Create *event* remotely and return it with ``external_id`` set."""
        ...

    @abc.abstractmethod
    async def update_event(
        self, access_token: str, calendar_id: str, external_id: str, event: EventSnapshot
    ) -> EventSnapshot: ...

    @abc.abstractmethod
    async def delete_event(self, access_token: str, calendar_id: str, external_id: str) -> None:
        """Delete a remote event; an already-missing event counts as deleted."""
        ...

    @abc.abstractmethod
    async def create_subscription(
        self, access_token: str, calendar_id: str, callback_url: str
    ) -> Subscription:
        """Open a push-notification channel on *calendar_id* delivering to *callback_url*."""
        ...

    @abc.abstractmethod
    async def stop_subscription(
        self, access_token: str, channel_id: str, resource_id: str
    ) -> None: ...

    async def shutdown(self) -> None:
        """Release any resources held by the client."""
        return None
