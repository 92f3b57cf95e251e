"""Tests for calsync.providers.google.

Covers:
- Mapping Google event payloads (timed, all-day, cancelled) onto snapshots
- list_events paging, query parameters, and cancelled-entry filtering
- create_event request body, delete_event tolerance of missing events
- Watch-channel creation and stop
- Error mapping to TransientRemoteError
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from calsync.errors import TransientRemoteError
from calsync.providers.google import (
    GoogleCalendarClient,
    build_google_event_body,
    google_event_to_snapshot,
)
from tests.conftest import make_event

pytestmark = pytest.mark.unit

BASE_URL = "https://calendar.test/v3"
START = datetime(2026, 3, 1, tzinfo=UTC)
END = datetime(2026, 6, 1, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client(handler) -> GoogleCalendarClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarClient(http_client, base_url=BASE_URL)


def _google_event(event_id: str = "g-1", **overrides) -> dict:
    payload = {
        "id": event_id,
        "status": "confirmed",
        "summary": "Planning",
        "description": "Quarterly",
        "location": "Room 2",
        "start": {"dateTime": "2026-03-02T10:00:00Z"},
        "end": {"dateTime": "2026-03-02T11:00:00+00:00"},
        "updated": "2026-03-01T08:00:00Z",
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


class TestGoogleEventToSnapshot:
    def test_timed_event(self):
        snapshot = google_event_to_snapshot(_google_event())

        assert snapshot.external_id == "g-1"
        assert snapshot.external_source == "google"
        assert snapshot.title == "Planning"
        assert snapshot.start == datetime(2026, 3, 2, 10, tzinfo=UTC)
        assert snapshot.end == datetime(2026, 3, 2, 11, tzinfo=UTC)
        assert snapshot.id is None

    def test_all_day_event(self):
        snapshot = google_event_to_snapshot(
            _google_event(start={"date": "2026-03-02"}, end={"date": "2026-03-03"})
        )
        assert snapshot.start == datetime(2026, 3, 2, tzinfo=UTC)
        assert snapshot.end == datetime(2026, 3, 3, tzinfo=UTC)

    def test_cancelled_event_without_times_uses_updated(self):
        snapshot = google_event_to_snapshot(
            {"id": "g-9", "status": "cancelled", "updated": "2026-03-01T08:00:00Z"}
        )
        assert snapshot.is_cancelled
        assert snapshot.start == datetime(2026, 3, 1, 8, tzinfo=UTC)

    def test_missing_times_on_live_event_is_invalid(self):
        with pytest.raises(ValueError, match="missing start/end"):
            google_event_to_snapshot({"id": "g-2", "status": "confirmed"})

    def test_missing_id_is_invalid(self):
        with pytest.raises(ValueError, match="non-empty id"):
            google_event_to_snapshot(_google_event(id=""))

    def test_event_body_uses_rfc3339_utc(self):
        event = make_event(title="Demo", start=datetime(2026, 3, 2, 10, tzinfo=UTC))
        body = build_google_event_body(event)
        assert body["summary"] == "Demo"
        assert body["start"] == {"dateTime": "2026-03-02T10:00:00Z"}
        assert body["end"] == {"dateTime": "2026-03-02T11:00:00Z"}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_follows_pages_and_sends_window(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(
                    200, json={"items": [_google_event("g-1")], "nextPageToken": "p2"}
                )
            return httpx.Response(200, json={"items": [_google_event("g-2")]})

        client = _client(handler)
        events = await client.list_events("token", "team@example.com", START, END)

        assert [event.external_id for event in events] == ["g-1", "g-2"]
        first = requests[0]
        assert first.url.path == "/v3/calendars/team@example.com/events"
        assert first.headers["Authorization"] == "Bearer token"
        assert first.url.params["timeMin"] == "2026-03-01T00:00:00Z"
        assert first.url.params["timeMax"] == "2026-06-01T00:00:00Z"
        assert first.url.params["singleEvents"] == "true"
        assert first.url.params["showDeleted"] == "false"
        assert requests[1].url.params["pageToken"] == "p2"

    async def test_cancelled_and_malformed_entries_are_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        _google_event("g-1"),
                        _google_event("g-2", status="cancelled"),
                        {"id": "g-3"},
                        "garbage",
                    ]
                },
            )

        events = await _client(handler).list_events("token", "primary", START, END)

        assert [event.external_id for event in events] == ["g-1"]

    async def test_show_deleted_keeps_cancelled_entries(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["showDeleted"] == "true"
            return httpx.Response(
                200, json={"items": [_google_event("g-2", status="cancelled")]}
            )

        events = await _client(handler).list_events(
            "token", "primary", START, END, show_deleted=True
        )

        assert [event.is_cancelled for event in events] == [True]

    async def test_http_error_status_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"message": "Rate Limit Exceeded"}})

        with pytest.raises(TransientRemoteError) as exc_info:
            await _client(handler).list_events("token", "primary", START, END)

        assert exc_info.value.status_code == 403
        assert "Rate Limit Exceeded" in str(exc_info.value)

    async def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientRemoteError, match="connection refused"):
            await _client(handler).list_events("token", "primary", START, END)

    async def test_missing_items_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"kind": "calendar#events"})

        with pytest.raises(TransientRemoteError, match="missing items"):
            await _client(handler).list_events("token", "primary", START, END)


class TestEventWrites:
    async def test_create_event_posts_body_and_returns_remote_id(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_google_event("g-new", summary="Demo"))

        created = await _client(handler).create_event(
            "token", "primary", make_event(title="Demo")
        )

        assert captured["method"] == "POST"
        assert captured["body"]["summary"] == "Demo"
        assert created.external_id == "g-new"

    @pytest.mark.parametrize("status_code", [204, 404, 410])
    async def test_delete_event_tolerates_missing(self, status_code):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(status_code)

        await _client(handler).delete_event("token", "primary", "g-1")

    async def test_delete_event_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="backend error")

        with pytest.raises(TransientRemoteError, match="backend error"):
            await _client(handler).delete_event("token", "primary", "g-1")


class TestSubscriptions:
    async def test_create_subscription(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": captured["body"]["id"],
                    "resourceId": "resource-9",
                    "expiration": "1772791200000",
                },
            )

        subscription = await _client(handler).create_subscription(
            "token", "primary", "https://calsync.test/api/webhooks/google"
        )

        assert captured["path"] == "/v3/calendars/primary/events/watch"
        assert captured["body"]["type"] == "web_hook"
        assert captured["body"]["address"] == "https://calsync.test/api/webhooks/google"
        assert subscription.channel_id == captured["body"]["id"]
        assert subscription.resource_id == "resource-9"
        assert subscription.expires_at == datetime.fromtimestamp(1772791200, tz=UTC)

    async def test_create_subscription_requires_resource_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "c"})

        with pytest.raises(TransientRemoteError, match="resourceId"):
            await _client(handler).create_subscription("token", "primary", "https://x.test")

    async def test_stop_subscription(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(204)

        await _client(handler).stop_subscription("token", "channel-1", "resource-1")

        assert captured["path"] == "/v3/channels/stop"
        assert captured["body"] == {"id": "channel-1", "resourceId": "resource-1"}

    async def test_stop_subscription_tolerates_missing_channel(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        await _client(handler).stop_subscription("token", "channel-1", "resource-1")
