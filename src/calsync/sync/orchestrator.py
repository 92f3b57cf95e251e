"""Sync orchestration: "sync now", explicit conflict detection, and webhook setup.

Sync-now never runs the conflict detector.  Detection is its own step
(:meth:`SyncOrchestrator.detect_conflicts`) that fetches both batches over
the same window, persists what it finds, and optionally auto-resolves.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable
from datetime import datetime

from dateutil.relativedelta import relativedelta

from calsync import metrics
from calsync.credentials import CredentialManager
from calsync.errors import (
    DuplicateConfigurationError,
    NotFoundError,
    StaleConfigurationError,
    SyncPermissionError,
    SyncValidationError,
)
from calsync.models import (
    EXTERNAL_SOURCE_GOOGLE,
    ConflictResolutionStrategy,
    EventSnapshot,
    SyncConfiguration,
    SyncDirection,
    SyncSettings,
    SyncStatus,
    WebhookSubscription,
    utcnow,
)
from calsync.providers.base import RemoteCalendarClient
from calsync.stores.base import ConflictStore, EventStore, SyncConfigStore
from calsync.sync.detector import ConflictDetector
from calsync.sync.resolver import ConflictResolver
from calsync.sync.results import BatchResult, DetectionReport, SyncOutcome

logger = logging.getLogger(__name__)

PAST_WINDOW = relativedelta(months=1)
FUTURE_WINDOW = relativedelta(months=3)

_UNSYNCABLE_STATUSES = frozenset({SyncStatus.PAUSED, SyncStatus.DISABLED})


def sync_window(settings: SyncSettings, now: datetime) -> tuple[datetime, datetime]:
    """Return the ``[start, end]`` window one sync run covers."""
    start = now - PAST_WINDOW if settings.include_past else now
    end = now + FUTURE_WINDOW if settings.include_future else now
    return start, end


def _adopt_remote_content(local: EventSnapshot, remote: EventSnapshot) -> EventSnapshot:
    return local.model_copy(
        update={
            "title": remote.title,
            "description": remote.description,
            "location": remote.location,
            "start": remote.start,
            "end": remote.end,
            "external_source": remote.external_source or EXTERNAL_SOURCE_GOOGLE,
        }
    )


async def upsert_remote_event(
    events: EventStore, user_id: str, remote: EventSnapshot
) -> EventSnapshot:
    """Create or update the local mirror of *remote*, keeping local id/created_at."""
    assert remote.external_id is not None
    existing = await events.find_by_external_id(user_id, remote.external_id)
    if existing is not None:
        return await events.update(_adopt_remote_content(existing, remote))
    return await events.create(
        remote.model_copy(
            update={
                "id": None,
                "user_id": user_id,
                "external_source": remote.external_source or EXTERNAL_SOURCE_GOOGLE,
                "status": "confirmed",
                "created_at": None,
                "updated_at": None,
            }
        )
    )


class _SyncPhaseError(Exception):
    """Carries the count of an earlier completed phase (None when none completed)."""

    def __init__(self, cause: Exception, completed: int | None) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.completed = completed


def _check_status_change(current: SyncStatus, target: SyncStatus) -> None:
    """Reject status changes a user may not make.

    Only sync outcomes move a configuration into or out of ``error``, and
    ``disabled`` is terminal.
    """
    if current == SyncStatus.DISABLED:
        raise SyncValidationError("A disabled sync configuration cannot be re-enabled")
    if target == SyncStatus.ERROR:
        raise SyncValidationError("Status 'error' is set by sync runs only")
    if current == SyncStatus.ERROR and target == SyncStatus.ACTIVE:
        raise SyncValidationError(
            "A configuration in error becomes active only after a successful sync"
        )


class SyncOrchestrator:
    """Runs sync operations for one process; stateless apart from its collaborators."""

    def __init__(
        self,
        configs: SyncConfigStore,
        events: EventStore,
        conflicts: ConflictStore,
        credentials: CredentialManager,
        remote: RemoteCalendarClient,
        *,
        detector: ConflictDetector | None = None,
        resolver: ConflictResolver | None = None,
        webhook_url: str | None = None,
    ) -> None:
        self._configs = configs
        self._events = events
        self._conflicts = conflicts
        self._credentials = credentials
        self._remote = remote
        self._detector = detector or ConflictDetector()
        self._resolver = resolver or ConflictResolver(conflicts, events)
        self._webhook_url = webhook_url

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    # ------------------------------------------------------------------
    # Configuration CRUD
    # ------------------------------------------------------------------

    async def get_config(
        self, config_id: uuid.UUID, *, user_id: str | None = None
    ) -> SyncConfiguration:
        config = await self._configs.get(config_id)
        if config is None:
            raise NotFoundError("Sync configuration", config_id)
        if user_id is not None and config.user_id != user_id:
            raise SyncPermissionError(f"Sync configuration {config_id} belongs to another user")
        return config

    async def list_configs(self, user_id: str) -> list[SyncConfiguration]:
        return await self._configs.list_by_user(user_id)

    async def create_config(self, config: SyncConfiguration) -> SyncConfiguration:
        existing = await self._configs.get_by_user_and_calendar(config.user_id, config.calendar_id)
        if existing is not None:
            raise DuplicateConfigurationError(config.user_id, config.calendar_id)
        integration = await self._credentials.get_integration(config.integration_id)
        if integration.user_id != config.user_id:
            raise SyncPermissionError(
                f"Calendar integration {config.integration_id} belongs to another user"
            )
        created = await self._configs.create(config)
        logger.info(
            "Created sync configuration %s for calendar %s", created.id, created.calendar_id
        )
        return created

    async def update_config(
        self,
        config_id: uuid.UUID,
        *,
        user_id: str | None = None,
        calendar_name: str | None = None,
        direction: SyncDirection | None = None,
        status: SyncStatus | None = None,
        settings: SyncSettings | None = None,
    ) -> SyncConfiguration:
        config = await self.get_config(config_id, user_id=user_id)
        changes: dict[str, object] = {"updated_at": utcnow()}
        if calendar_name is not None:
            changes["calendar_name"] = calendar_name
        if direction is not None:
            changes["direction"] = direction
        if status is not None and status != config.status:
            _check_status_change(config.status, status)
            changes["status"] = status
        if settings is not None:
            changes["settings"] = settings
        return await self._configs.update(config.model_copy(update=changes))

    async def delete_config(self, config_id: uuid.UUID, *, user_id: str | None = None) -> None:
        config = await self.get_config(config_id, user_id=user_id)
        if config.webhook is not None:
            await self._stop_subscription_quietly(config, config.webhook)
        await self._configs.delete(config.id)
        logger.info("Deleted sync configuration %s", config.id)

    # ------------------------------------------------------------------
    # Sync now
    # ------------------------------------------------------------------

    async def sync_now(
        self,
        config_id: uuid.UUID,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> SyncOutcome:
        """Run one sync for the configuration in its configured direction.

        Failures before any phase completed are recorded on the configuration
        and re-raised.  A bidirectional run whose push phase fails returns a
        ``partial`` outcome carrying the pull count.
        """
        config = await self.get_config(config_id, user_id=user_id)
        if config.status in _UNSYNCABLE_STATUSES:
            raise SyncValidationError(
                f"Sync configuration {config.id} is {config.status.value}; sync is not allowed"
            )

        now = now or utcnow()
        direction = config.direction
        outcome = SyncOutcome(config_id=config.id, direction=direction)
        with metrics.track_sync_duration(direction.value):
            try:
                access_token = await self._credentials.ensure_access_token(
                    config.integration_id, now=now
                )
                start, end = sync_window(config.settings, now)
                outcome.events_synced = await self._run_direction(
                    config, access_token, start, end
                )
            except _SyncPhaseError as exc:
                if exc.completed is None:
                    await self._record_failure(config, exc.cause)
                    raise exc.cause from None
                outcome.events_synced = exc.completed
                outcome.error = str(exc.cause)
                outcome.partial = True
                await self._record_failure(config, exc.cause)
                return outcome
            except Exception as exc:
                await self._record_failure(config, exc)
                raise

        await self._configs.record_sync_result(
            config.id, status=SyncStatus.ACTIVE, error=None, last_sync_at=now
        )
        metrics.sync_runs_total.labels(direction=direction.value, status="success").inc()
        logger.info(
            "Synced configuration %s (%s): %d events", config.id, direction, outcome.events_synced
        )
        return outcome

    async def _run_direction(
        self,
        config: SyncConfiguration,
        access_token: str,
        start: datetime,
        end: datetime,
    ) -> int:
        match config.direction:
            case SyncDirection.FROM_REMOTE:
                return await self._phase(self._pull(config, access_token, start, end), None)
            case SyncDirection.TO_REMOTE:
                return await self._phase(self._push(config, access_token, start, end), None)
            case SyncDirection.BIDIRECTIONAL:
                pulled = await self._phase(self._pull(config, access_token, start, end), None)
                pushed = await self._phase(self._push(config, access_token, start, end), pulled)
                return pulled + pushed

    @staticmethod
    async def _phase(coro: Awaitable[int], completed: int | None) -> int:
        try:
            return await coro
        except Exception as exc:
            raise _SyncPhaseError(exc, completed) from exc

    async def _pull(
        self,
        config: SyncConfiguration,
        access_token: str,
        start: datetime,
        end: datetime,
    ) -> int:
        remote_events = await self._remote.list_events(
            access_token, config.calendar_id, start, end
        )
        count = 0
        for remote in remote_events:
            if remote.external_id is None or remote.is_cancelled:
                continue
            await upsert_remote_event(self._events, config.user_id, remote)
            count += 1
        logger.debug("Pulled %d remote events for configuration %s", count, config.id)
        return count

    async def _push(
        self,
        config: SyncConfiguration,
        access_token: str,
        start: datetime,
        end: datetime,
    ) -> int:
        local_events = await self._events.list_by_time_range(config.user_id, start, end)
        count = 0
        for event in local_events:
            if event.external_id is not None or event.external_source == EXTERNAL_SOURCE_GOOGLE:
                continue
            created = await self._remote.create_event(access_token, config.calendar_id, event)
            await self._events.update(
                event.model_copy(
                    update={
                        "external_id": created.external_id,
                        "external_source": EXTERNAL_SOURCE_GOOGLE,
                    }
                )
            )
            count += 1
        logger.debug("Pushed %d local events for configuration %s", count, config.id)
        return count

    async def _record_failure(self, config: SyncConfiguration, exc: Exception) -> None:
        metrics.sync_runs_total.labels(direction=config.direction.value, status="error").inc()
        logger.warning("Sync failed for configuration %s: %s", config.id, exc)
        await self._configs.record_sync_result(
            config.id, status=SyncStatus.ERROR, error=str(exc)
        )

    # ------------------------------------------------------------------
    # Conflict detection
    # ------------------------------------------------------------------

    async def detect_conflicts(
        self,
        config_id: uuid.UUID,
        *,
        user_id: str | None = None,
        auto_resolve: bool = True,
        now: datetime | None = None,
    ) -> DetectionReport:
        """Compare both sides over the sync window and persist any conflicts found."""
        config = await self.get_config(config_id, user_id=user_id)
        if config.status == SyncStatus.DISABLED:
            raise SyncValidationError(f"Sync configuration {config.id} is disabled")

        now = now or utcnow()
        access_token = await self._credentials.ensure_access_token(
            config.integration_id, now=now
        )
        start, end = sync_window(config.settings, now)
        local_events = await self._events.list_by_time_range(config.user_id, start, end)
        remote_events = await self._remote.list_events(
            access_token, config.calendar_id, start, end
        )

        detected = self._detector.detect(config.user_id, config.id, local_events, remote_events)
        report = DetectionReport(config_id=config.id)
        if not detected:
            return report

        report.conflicts = await self._conflicts.create_many(detected)
        for conflict in report.conflicts:
            metrics.conflicts_detected_total.labels(
                conflict_type=conflict.conflict_type.value
            ).inc()
        logger.info(
            "Detected %d conflicts for configuration %s", len(report.conflicts), config.id
        )

        strategy = config.settings.conflict_resolution
        if auto_resolve and strategy != ConflictResolutionStrategy.MANUAL:
            report.auto_resolution = await self._resolver.auto_resolve(report.conflicts, strategy)
        return report

    # ------------------------------------------------------------------
    # Due-sync sweep
    # ------------------------------------------------------------------

    async def sync_due(self, now: datetime | None = None) -> BatchResult:
        """Sync every auto-sync configuration whose interval has elapsed."""
        now = now or utcnow()
        result = BatchResult()
        for config in await self._configs.list_active():
            if not config.settings.auto_sync or not config.needs_sync(now):
                continue
            try:
                outcome = await self.sync_now(config.id, now=now)
            except Exception as exc:
                result.record_failure(f"{config.id}: {exc}")
                continue
            if outcome.success:
                result.record_success()
            else:
                result.record_failure(f"{config.id}: {outcome.error}")
        if result.processed:
            logger.info(
                "Due-sync sweep complete. Synced: %d, Errors: %d", result.succeeded, result.failed
            )
        return result

    # ------------------------------------------------------------------
    # Webhook setup
    # ------------------------------------------------------------------

    async def setup_webhook(
        self,
        config_id: uuid.UUID,
        *,
        user_id: str | None = None,
        callback_url: str | None = None,
    ) -> SyncConfiguration:
        """Create a push subscription for the configuration, replacing any existing one."""
        config = await self.get_config(config_id, user_id=user_id)
        url = callback_url or (config.webhook.url if config.webhook else None) or self._webhook_url
        if not url:
            raise SyncValidationError("No webhook callback URL is configured")

        access_token = await self._credentials.ensure_access_token(config.integration_id)
        subscription = await self._remote.create_subscription(
            access_token, config.calendar_id, url
        )
        webhook = WebhookSubscription(
            channel_id=subscription.channel_id,
            resource_id=subscription.resource_id,
            url=url,
            expires_at=subscription.expires_at,
        )
        previous = config.webhook
        swapped = await self._configs.replace_webhook(
            config.id,
            expected_channel_id=previous.channel_id if previous else None,
            webhook=webhook,
            clear_error=True,
        )
        if not swapped:
            await self._stop_subscription_quietly(config, webhook, access_token=access_token)
            raise StaleConfigurationError(config.id)
        if previous is not None:
            await self._stop_subscription_quietly(config, previous, access_token=access_token)

        logger.info(
            "Webhook %s set up for configuration %s (expires %s)",
            webhook.channel_id,
            config.id,
            webhook.expires_at.isoformat(),
        )
        return config.model_copy(update={"webhook": webhook, "last_sync_error": None})

    async def _stop_subscription_quietly(
        self,
        config: SyncConfiguration,
        webhook: WebhookSubscription,
        *,
        access_token: str | None = None,
    ) -> None:
        try:
            if access_token is None:
                access_token = await self._credentials.ensure_access_token(config.integration_id)
            await self._remote.stop_subscription(
                access_token, webhook.channel_id, webhook.resource_id
            )
        except Exception as exc:
            logger.warning(
                "Failed to stop webhook %s for configuration %s: %s",
                webhook.channel_id,
                config.id,
                exc,
            )
