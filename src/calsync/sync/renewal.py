"""Background renewal of push-notification subscriptions nearing expiry.

``WebhookRenewalScheduler`` owns one asyncio task.  The loop runs a pass
immediately, then waits for either the stop event or the next tick.  A stop
request never interrupts a renewal in flight; the loop exits after the
configuration currently being renewed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta

from calsync import metrics
from calsync.credentials import CredentialManager
from calsync.errors import NotFoundError, StaleConfigurationError, SyncValidationError
from calsync.models import SyncConfiguration, WebhookSubscription, utcnow
from calsync.providers.base import RemoteCalendarClient
from calsync.stores.base import SyncConfigStore
from calsync.sync.results import BatchResult

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_INTERVAL_S = 3600.0
DEFAULT_RENEWAL_THRESHOLD = timedelta(hours=24)


def needs_renewal(
    config: SyncConfiguration,
    now: datetime,
    threshold: timedelta = DEFAULT_RENEWAL_THRESHOLD,
) -> bool:
    """True when the configuration's subscription expires within *threshold* (inclusive)."""
    webhook = config.webhook
    if webhook is None or not webhook.channel_id:
        return False
    return webhook.expires_at - now <= threshold


class WebhookRenewalScheduler:
    """Explicit handle for the renewal loop: ``start()``, ``await stop()``, ``is_running``."""

    def __init__(
        self,
        configs: SyncConfigStore,
        credentials: CredentialManager,
        remote: RemoteCalendarClient,
        *,
        interval_s: float = DEFAULT_RENEWAL_INTERVAL_S,
        threshold: timedelta = DEFAULT_RENEWAL_THRESHOLD,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._configs = configs
        self._credentials = credentials
        self._remote = remote
        self._interval_s = interval_s
        self._threshold = threshold
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def threshold(self) -> timedelta:
        return self._threshold

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the renewal loop; a second call while running is a no-op."""
        if self.is_running:
            logger.warning("Webhook renewal scheduler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._renewal_loop(), name="webhook-renewal")
        logger.info(
            "Webhook renewal scheduler started (interval=%.0fs, threshold=%s)",
            self._interval_s,
            self._threshold,
        )

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it, letting an in-flight renewal finish."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Webhook renewal scheduler stopped")

    async def _renewal_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Webhook renewal pass failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_s)
            except TimeoutError:
                pass
        logger.debug("Webhook renewal loop exiting")

    # ------------------------------------------------------------------
    # Renewal passes
    # ------------------------------------------------------------------

    async def run_once(self, now: datetime | None = None) -> BatchResult:
        """Renew every subscription within the threshold of expiry."""
        now = now or utcnow()
        result = BatchResult()
        configs = await self._configs.list_with_webhooks()
        logger.debug("Found %d webhook subscriptions", len(configs))

        for config in configs:
            if self._stop_event.is_set():
                logger.info("Stop requested; ending renewal pass early")
                break
            if not needs_renewal(config, now, self._threshold):
                continue

            assert config.webhook is not None
            logger.info(
                "Renewing webhook for calendar %s (expires %s)",
                config.calendar_id,
                config.webhook.expires_at.isoformat(),
            )
            try:
                await self._renew(config, now)
            except StaleConfigurationError:
                logger.info(
                    "Webhook for configuration %s was replaced concurrently; skipping", config.id
                )
                metrics.webhook_renewals_total.labels(status="stale").inc()
                result.record_skip()
            except Exception as exc:
                message = f"Webhook renewal failed: {exc}"
                logger.warning(
                    "Failed to renew webhook for calendar %s: %s", config.calendar_id, exc
                )
                metrics.webhook_renewals_total.labels(status="error").inc()
                result.record_failure(f"{config.id}: {message}")
                await self._record_error(config, message)
            else:
                metrics.webhook_renewals_total.labels(status="success").inc()
                result.record_success()

        if result.processed:
            logger.info(
                "Webhook renewal complete. Renewed: %d, Skipped: %d, Errors: %d",
                result.succeeded,
                result.skipped,
                result.failed,
            )
        return result

    async def force_renew(
        self, config_id: uuid.UUID, *, now: datetime | None = None
    ) -> WebhookSubscription:
        """Renew one configuration's subscription regardless of its expiry."""
        config = await self._configs.get(config_id)
        if config is None:
            raise NotFoundError("Sync configuration", config_id)
        if config.webhook is None:
            raise SyncValidationError(f"Sync configuration {config_id} has no webhook")
        return await self._renew(config, now or utcnow())

    async def expiring_webhooks(
        self, within: timedelta, *, now: datetime | None = None
    ) -> list[SyncConfiguration]:
        """Return configurations whose subscription expires in ``(now, now + within]``."""
        now = now or utcnow()
        expiring: list[SyncConfiguration] = []
        for config in await self._configs.list_with_webhooks():
            if config.webhook is None:
                continue
            remaining = config.webhook.expires_at - now
            if timedelta(0) < remaining <= within:
                expiring.append(config)
        return expiring

    async def _renew(self, config: SyncConfiguration, now: datetime) -> WebhookSubscription:
        previous = config.webhook
        assert previous is not None

        access_token = await self._credentials.ensure_access_token(config.integration_id, now=now)

        try:
            await self._remote.stop_subscription(
                access_token, previous.channel_id, previous.resource_id
            )
        except Exception as exc:
            # The old channel may already have expired on the provider side.
            logger.warning("Failed to stop old webhook %s: %s", previous.channel_id, exc)

        subscription = await self._remote.create_subscription(
            access_token, config.calendar_id, previous.url
        )
        renewed = WebhookSubscription(
            channel_id=subscription.channel_id,
            resource_id=subscription.resource_id,
            url=previous.url,
            expires_at=subscription.expires_at,
        )
        swapped = await self._configs.replace_webhook(
            config.id,
            expected_channel_id=previous.channel_id,
            webhook=renewed,
            clear_error=True,
        )
        if not swapped:
            try:
                await self._remote.stop_subscription(
                    access_token, renewed.channel_id, renewed.resource_id
                )
            except Exception as exc:
                logger.warning("Failed to stop orphaned webhook %s: %s", renewed.channel_id, exc)
            raise StaleConfigurationError(config.id)

        logger.info(
            "Renewed webhook for calendar %s: channel %s expires %s",
            config.calendar_id,
            renewed.channel_id,
            renewed.expires_at.isoformat(),
        )
        return renewed

    async def _record_error(self, config: SyncConfiguration, message: str) -> None:
        try:
            await self._configs.record_error(config.id, message)
        except Exception:
            logger.exception("Failed to record renewal error for configuration %s", config.id)
