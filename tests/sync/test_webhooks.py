"""Tests for calsync.sync.webhooks.

Covers:
- Header parsing into WebhookNotification
- WebhookProcessor: handshake, unknown channel, skipped configurations,
  upsert/delete of remote changes, and failure annotation
- WebhookDispatcher: lifecycle, backpressure, drain on stop, worker errors
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from calsync.errors import TransientRemoteError
from calsync.models import SyncStatus
from calsync.sync.results import BatchResult
from calsync.sync.webhooks import (
    LOOKBACK_WINDOW,
    WebhookDispatcher,
    WebhookNotification,
    WebhookProcessor,
)
from tests.conftest import NOW, USER_ID, make_config, make_event, make_webhook

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _notification(state: str = "exists", **overrides) -> WebhookNotification:
    values = {
        "channel_id": "channel-old",
        "resource_id": "resource-old",
        "resource_state": state,
    }
    values.update(overrides)
    return WebhookNotification(**values)


@pytest.fixture
def processor(configs, events, credentials, remote) -> WebhookProcessor:
    return WebhookProcessor(configs, events, credentials, remote)


async def _subscribed_config(configs, integration, **overrides):
    return await configs.create(make_config(integration, webhook=make_webhook(), **overrides))


def _stub_processor(result: BatchResult | None = None, side_effect=None) -> MagicMock:
    stub = MagicMock(spec=WebhookProcessor)
    stub.process = AsyncMock(return_value=result or BatchResult(), side_effect=side_effect)
    return stub


# ---------------------------------------------------------------------------
# Notification parsing
# ---------------------------------------------------------------------------


class TestNotificationFromHeaders:
    def test_parses_google_headers_case_insensitively(self):
        notification = WebhookNotification.from_headers(
            {
                "X-Goog-Channel-ID": "channel-1",
                "x-goog-resource-id": "resource-1",
                "X-Goog-Resource-State": "EXISTS",
                "X-Goog-Message-Number": "7",
                "X-Goog-Channel-Token": "",
            }
        )

        assert notification.channel_id == "channel-1"
        assert notification.resource_id == "resource-1"
        assert notification.resource_state == "exists"
        assert notification.message_number == "7"
        assert notification.channel_token is None
        assert not notification.is_handshake

    def test_sync_state_is_handshake(self):
        notification = WebhookNotification.from_headers(
            {"X-Goog-Channel-ID": "c", "X-Goog-Resource-State": "sync"}
        )
        assert notification.is_handshake

    def test_missing_channel_id_is_invalid(self):
        with pytest.raises(ValidationError):
            WebhookNotification.from_headers({"X-Goog-Resource-State": "exists"})


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class TestWebhookProcessor:
    async def test_handshake_is_acknowledged_without_lookup(self, processor, remote):
        result = await processor.process(_notification("sync"), now=NOW)

        assert result.processed == 0
        assert result.errors == []
        assert remote.list_calls == []

    async def test_unknown_channel_is_reported(self, processor, remote):
        result = await processor.process(_notification(channel_id="nobody"), now=NOW)

        assert result.errors == ["Unknown webhook channel: nobody"]
        assert remote.list_calls == []

    async def test_upserts_changed_events_and_touches_last_sync(
        self, processor, configs, events, remote, integration
    ):
        config = await _subscribed_config(configs, integration)
        existing = make_event(title="Before", external_id="g-1")
        events.add(existing)
        remote.seed(
            "primary",
            make_event(title="After", external_id="g-1", local=False),
            make_event(title="Brand new", external_id="g-2", local=False),
        )

        result = await processor.process(_notification(), now=NOW)

        assert (result.processed, result.succeeded, result.failed) == (2, 2, 0)
        assert events.rows[existing.id].title == "After"
        assert sorted(e.title for e in events.rows.values()) == ["After", "Brand new"]
        assert configs.rows[config.id].last_sync_at == NOW
        assert remote.list_calls[0]["show_deleted"] is True

    async def test_cancelled_remote_event_deletes_local_mirror(
        self, processor, configs, events, remote, integration
    ):
        await _subscribed_config(configs, integration)
        mirrored = make_event(title="Gone", external_id="g-1")
        events.add(mirrored)
        remote.seed(
            "primary",
            make_event(title="Gone", external_id="g-1", local=False, status="cancelled"),
            make_event(title="Never mirrored", external_id="g-3", local=False, status="cancelled"),
        )

        result = await processor.process(_notification(), now=NOW)

        assert mirrored.id not in events.rows
        assert (result.succeeded, result.skipped) == (1, 1)

    async def test_window_starts_at_last_sync_when_recent(
        self, processor, configs, remote, integration
    ):
        last = NOW - timedelta(hours=3)
        await _subscribed_config(configs, integration, last_sync_at=last)

        await processor.process(_notification(), now=NOW)

        assert remote.list_calls[0]["start"] == last

    async def test_window_is_bounded_by_lookback(self, processor, configs, remote, integration):
        await _subscribed_config(configs, integration, last_sync_at=NOW - timedelta(days=90))

        await processor.process(_notification(), now=NOW)

        assert remote.list_calls[0]["start"] == NOW - LOOKBACK_WINDOW

    @pytest.mark.parametrize("status", [SyncStatus.PAUSED, SyncStatus.DISABLED])
    async def test_paused_and_disabled_configurations_are_skipped(
        self, processor, configs, remote, integration, status
    ):
        config = await _subscribed_config(configs, integration, status=status)

        result = await processor.process(_notification(), now=NOW)

        assert result.processed == 0
        assert remote.list_calls == []
        stored = configs.rows[config.id]
        assert stored.last_sync_error == (
            f"Webhook notification skipped: configuration is {status.value}"
        )
        assert stored.status == status

    async def test_resource_mismatch_is_ignored(self, processor, configs, remote, integration):
        config = await _subscribed_config(configs, integration)

        result = await processor.process(_notification(resource_id="resource-x"), now=NOW)

        assert result.errors == ["Resource id mismatch for channel channel-old"]
        assert remote.list_calls == []
        assert configs.rows[config.id].last_sync_error == result.errors[0]

    async def test_fetch_failure_is_recorded_on_configuration(
        self, processor, configs, remote, integration
    ):
        config = await _subscribed_config(configs, integration)
        remote.list_error = TransientRemoteError("timeout")

        result = await processor.process(_notification(), now=NOW)

        assert result.errors == ["Webhook processing failed: timeout"]
        stored = configs.rows[config.id]
        assert stored.last_sync_error == "Webhook processing failed: timeout"
        assert stored.status == SyncStatus.ACTIVE

    async def test_per_event_failure_does_not_stop_others(
        self, processor, configs, events, remote, integration, monkeypatch
    ):
        config = await _subscribed_config(configs, integration)
        remote.seed(
            "primary",
            make_event(title="Bad", external_id="g-bad", local=False),
            make_event(title="Good", external_id="g-good", local=False),
        )
        original_create = events.create

        async def _flaky_create(event):
            if event.external_id == "g-bad":
                raise RuntimeError("constraint violated")
            return await original_create(event)

        monkeypatch.setattr(events, "create", _flaky_create)

        result = await processor.process(_notification(), now=NOW)

        assert (result.succeeded, result.failed) == (1, 1)
        assert [e.title for e in events.rows.values()] == ["Good"]
        stored = configs.rows[config.id]
        assert stored.last_sync_at == NOW
        assert stored.last_sync_error.startswith("Webhook processing failed for 1 events")

    async def test_mirrors_belong_to_configuration_owner(
        self, processor, configs, events, remote, integration
    ):
        await _subscribed_config(configs, integration)
        remote.seed("primary", make_event(title="Owned", external_id="g-1", local=False))

        await processor.process(_notification(), now=NOW)

        assert [e.user_id for e in events.rows.values()] == [USER_ID]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestWebhookDispatcher:
    async def test_rejects_invalid_sizes(self):
        with pytest.raises(ValueError):
            WebhookDispatcher(_stub_processor(), queue_capacity=0)
        with pytest.raises(ValueError):
            WebhookDispatcher(_stub_processor(), worker_count=0)

    async def test_submit_before_start_is_dropped(self):
        dispatcher = WebhookDispatcher(_stub_processor())
        assert dispatcher.submit(_notification()) is None

    async def test_processes_submitted_notifications(self):
        expected = BatchResult(processed=1, succeeded=1)
        stub = _stub_processor(expected)
        dispatcher = WebhookDispatcher(stub, worker_count=1)
        await dispatcher.start()
        try:
            job = dispatcher.submit(_notification())
            assert job is not None
            assert await asyncio.wait_for(job.wait(), timeout=1) == expected
        finally:
            await dispatcher.stop()
        stub.process.assert_awaited_once()

    async def test_full_queue_applies_backpressure(self):
        gate = asyncio.Event()

        async def _blocked(notification):
            await gate.wait()
            return BatchResult()

        dispatcher = WebhookDispatcher(
            _stub_processor(side_effect=_blocked), queue_capacity=1, worker_count=1
        )
        await dispatcher.start()
        try:
            first = dispatcher.submit(_notification())
            await asyncio.sleep(0.01)  # let the worker take the first job
            second = dispatcher.submit(_notification())
            third = dispatcher.submit(_notification())

            assert first is not None
            assert second is not None
            assert third is None
            assert dispatcher.backpressure_total == 1
            assert dispatcher.queue_depth == 1
        finally:
            gate.set()
            await dispatcher.stop()

    async def test_stop_drains_queue(self):
        stub = _stub_processor()
        dispatcher = WebhookDispatcher(stub, worker_count=1)
        await dispatcher.start()
        jobs = [dispatcher.submit(_notification()) for _ in range(3)]

        await dispatcher.stop(drain_timeout_s=1.0)

        assert all(job is not None and job.done for job in jobs)
        assert stub.process.await_count == 3
        assert not dispatcher.is_running

    async def test_stop_waits_for_job_in_progress(self):
        finished = []

        async def _slow(notification):
            await asyncio.sleep(0.2)
            finished.append(notification.channel_id)
            return BatchResult()

        dispatcher = WebhookDispatcher(_stub_processor(side_effect=_slow), worker_count=1)
        await dispatcher.start()
        job = dispatcher.submit(_notification())
        await asyncio.sleep(0.01)  # the worker has taken the job; the queue is empty
        assert dispatcher.queue_depth == 0

        await dispatcher.stop(drain_timeout_s=5.0)

        assert finished == ["channel-old"]
        assert job.done
        assert (await job.wait()).errors == []

    async def test_worker_error_resolves_job_with_failure(self):
        dispatcher = WebhookDispatcher(_stub_processor(side_effect=RuntimeError("db down")))
        await dispatcher.start()
        try:
            job = dispatcher.submit(_notification())
            result = await asyncio.wait_for(job.wait(), timeout=1)
        finally:
            await dispatcher.stop()

        assert result.errors == ["Webhook processing failed: db down"]
