"""Inbound push notifications: parsing, processing, and bounded dispatch.

The HTTP endpoint acknowledges every delivery immediately and hands the
parsed notification to :class:`WebhookDispatcher`, a bounded queue served by
a fixed worker pool.  When the queue is full the delivery is dropped; the
provider redelivers, and the next notification covers the same window anyway.

Processing never raises to the provider.  Problems are logged and, when the
configuration is known, recorded on its ``last_sync_error``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field

from calsync import metrics
from calsync.credentials import CredentialManager
from calsync.models import SyncStatus, utcnow
from calsync.providers.base import RemoteCalendarClient
from calsync.stores.base import EventStore, SyncConfigStore
from calsync.sync.orchestrator import upsert_remote_event
from calsync.sync.results import BatchResult

logger = logging.getLogger(__name__)

RESOURCE_STATE_SYNC = "sync"
LOOKBACK_WINDOW = timedelta(days=30)
LOOKAHEAD_WINDOW = relativedelta(months=3)


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------


class WebhookNotification(BaseModel):
    """A Google push notification, as carried in ``X-Goog-*`` headers."""

    channel_id: str = Field(min_length=1)
    resource_id: str = ""
    resource_uri: str = ""
    resource_state: str = Field(min_length=1)
    message_number: str = ""
    channel_expiration: str | None = None
    channel_token: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> WebhookNotification:
        """Build a notification from request headers (lookup is case-insensitive).

        Raises pydantic ``ValidationError`` when channel id or state is missing.
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        return cls(
            channel_id=lowered.get("x-goog-channel-id", "").strip(),
            resource_id=lowered.get("x-goog-resource-id", "").strip(),
            resource_uri=lowered.get("x-goog-resource-uri", "").strip(),
            resource_state=lowered.get("x-goog-resource-state", "").strip().lower(),
            message_number=lowered.get("x-goog-message-number", "").strip(),
            channel_expiration=lowered.get("x-goog-channel-expiration") or None,
            channel_token=lowered.get("x-goog-channel-token") or None,
        )

    @property
    def is_handshake(self) -> bool:
        return self.resource_state == RESOURCE_STATE_SYNC


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class WebhookProcessor:
    """Applies remote changes announced by a push notification to the event store."""

    def __init__(
        self,
        configs: SyncConfigStore,
        events: EventStore,
        credentials: CredentialManager,
        remote: RemoteCalendarClient,
    ) -> None:
        self._configs = configs
        self._events = events
        self._credentials = credentials
        self._remote = remote

    async def process(
        self, notification: WebhookNotification, *, now: datetime | None = None
    ) -> BatchResult:
        result = BatchResult()
        if notification.is_handshake:
            logger.info("Webhook handshake received for channel %s", notification.channel_id)
            metrics.webhook_notifications_total.labels(status="handshake").inc()
            return result

        config = await self._configs.get_by_channel_id(notification.channel_id)
        if config is None:
            logger.warning("Webhook for unknown channel %s ignored", notification.channel_id)
            result.errors.append(f"Unknown webhook channel: {notification.channel_id}")
            metrics.webhook_notifications_total.labels(status="unknown_channel").inc()
            return result

        if config.status in (SyncStatus.PAUSED, SyncStatus.DISABLED):
            logger.info(
                "Webhook for %s configuration %s skipped", config.status.value, config.id
            )
            await self._configs.record_error(
                config.id,
                f"Webhook notification skipped: configuration is {config.status.value}",
            )
            metrics.webhook_notifications_total.labels(status="skipped").inc()
            return result

        if (
            notification.resource_id
            and config.webhook is not None
            and notification.resource_id != config.webhook.resource_id
        ):
            logger.warning(
                "Webhook resource %s does not match configuration %s; ignoring",
                notification.resource_id,
                config.id,
            )
            message = f"Resource id mismatch for channel {notification.channel_id}"
            result.errors.append(message)
            await self._configs.record_error(config.id, message)
            metrics.webhook_notifications_total.labels(status="skipped").inc()
            return result

        now = now or utcnow()
        start = now - LOOKBACK_WINDOW
        if config.last_sync_at is not None and config.last_sync_at > start:
            start = config.last_sync_at
        end = now + LOOKAHEAD_WINDOW

        try:
            access_token = await self._credentials.ensure_access_token(
                config.integration_id, now=now
            )
            remote_events = await self._remote.list_events(
                access_token, config.calendar_id, start, end, show_deleted=True
            )
        except Exception as exc:
            message = f"Webhook processing failed: {exc}"
            logger.warning("%s (configuration %s)", message, config.id)
            result.errors.append(message)
            await self._configs.record_error(config.id, message)
            metrics.webhook_notifications_total.labels(status="error").inc()
            return result

        for remote in remote_events:
            if remote.external_id is None:
                result.record_skip()
                continue
            try:
                if remote.is_cancelled:
                    existing = await self._events.find_by_external_id(
                        config.user_id, remote.external_id
                    )
                    if existing is None or existing.id is None:
                        result.record_skip()
                        continue
                    await self._events.delete(existing.id)
                else:
                    await upsert_remote_event(self._events, config.user_id, remote)
            except Exception as exc:
                logger.warning(
                    "Failed to apply remote event %s for configuration %s: %s",
                    remote.external_id,
                    config.id,
                    exc,
                )
                result.record_failure(f"{remote.external_id}: {exc}")
            else:
                result.record_success()

        await self._configs.touch_last_sync(config.id, now)
        if result.failed:
            await self._configs.record_error(
                config.id,
                f"Webhook processing failed for {result.failed} events: {result.errors[0]}",
            )

        status = "success" if result.ok else "partial"
        metrics.webhook_notifications_total.labels(status=status).inc()
        logger.info(
            "Webhook processed for configuration %s: processed=%d succeeded=%d failed=%d",
            config.id,
            result.processed,
            result.succeeded,
            result.failed,
        )
        return result


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class WebhookJob:
    """Completion handle for a submitted notification."""

    def __init__(self, notification: WebhookNotification) -> None:
        self.notification = notification
        self._future: asyncio.Future[BatchResult] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> BatchResult:
        """Wait for processing to finish and return its result."""
        return await asyncio.shield(self._future)

    def _set_result(self, result: BatchResult) -> None:
        if not self._future.done():
            self._future.set_result(result)

    def _cancel(self) -> None:
        if not self._future.done():
            self._future.cancel()


class WebhookDispatcher:
    """Bounded queue of notifications served by a fixed pool of workers.

    Parameters
    ----------
    processor:
        The :class:`WebhookProcessor` that handles each notification.
    queue_capacity:
        Maximum number of queued notifications; ``submit`` returns None
        beyond it.
    worker_count:
        Number of concurrent worker tasks.
    """

    def __init__(
        self,
        processor: WebhookProcessor,
        *,
        queue_capacity: int = 100,
        worker_count: int = 2,
    ) -> None:
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be at least 1")
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._processor = processor
        self._queue_capacity = queue_capacity
        self._worker_count = worker_count
        self._queue: asyncio.Queue[WebhookJob] = asyncio.Queue(maxsize=queue_capacity)
        self._worker_tasks: list[asyncio.Task] = []
        self._running = False
        self._backpressure_total = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self._running:
            return
        self._running = True
        for i in range(self._worker_count):
            task = asyncio.create_task(self._worker_loop(worker_id=i), name=f"webhook-worker-{i}")
            self._worker_tasks.append(task)
        logger.info(
            "WebhookDispatcher started: workers=%d, queue_capacity=%d",
            self._worker_count,
            self._queue_capacity,
        )

    async def stop(self, drain_timeout_s: float = 10.0) -> None:
        """Drain queued notifications up to *drain_timeout_s*, then cancel workers."""
        if not self._running:
            return
        self._running = False

        # join() also waits for jobs a worker has taken but not finished.
        if drain_timeout_s > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout_s)
            except TimeoutError:
                logger.warning(
                    "WebhookDispatcher drain timed out after %.1fs; %d notifications dropped",
                    drain_timeout_s,
                    self._queue.qsize(),
                )

        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_tasks.clear()

        while not self._queue.empty():
            job = self._queue.get_nowait()
            job._cancel()
            self._queue.task_done()

        logger.info("WebhookDispatcher stopped: backpressure=%d", self._backpressure_total)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, notification: WebhookNotification) -> WebhookJob | None:
        """Queue *notification* without blocking.

        Returns the job handle, or None when the dispatcher is stopped or the
        queue is full.
        """
        if not self._running:
            logger.warning(
                "WebhookDispatcher not running; dropping notification for channel %s",
                notification.channel_id,
            )
            return None

        job = WebhookJob(notification)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self._backpressure_total += 1
            metrics.webhook_notifications_total.labels(status="backpressure").inc()
            logger.warning(
                "WebhookDispatcher queue full (backpressure): channel %s dropped",
                notification.channel_id,
            )
            return None
        logger.debug(
            "Webhook queued: channel=%s queue_depth=%d",
            notification.channel_id,
            self._queue.qsize(),
        )
        return job

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def backpressure_total(self) -> int:
        return self._backpressure_total

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                result = await self._processor.process(job.notification)
            except asyncio.CancelledError:
                job._cancel()
                raise
            except Exception as exc:
                logger.exception(
                    "Webhook worker %d: processing failed for channel %s",
                    worker_id,
                    job.notification.channel_id,
                )
                metrics.webhook_notifications_total.labels(status="error").inc()
                failed = BatchResult()
                failed.errors.append(f"Webhook processing failed: {exc}")
                job._set_result(failed)
            else:
                job._set_result(result)
            finally:
                self._queue.task_done()
