"""Google Calendar v3 client over httpx."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import TransientRemoteError
from calsync.models import (
    EXTERNAL_SOURCE_GOOGLE,
    REMOTE_STATUS_CANCELLED,
    REMOTE_STATUS_CONFIRMED,
    EventSnapshot,
    utcnow,
)
from calsync.providers.base import RemoteCalendarClient, Subscription

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
LIST_PAGE_SIZE = 250
# Google's default lifetime for event watch channels.
DEFAULT_CHANNEL_TTL = timedelta(days=7)


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_optional_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value)
    except ValueError:
        return None


def _parse_event_boundary(payload: Any) -> datetime | None:
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time)
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)
    return None


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def google_event_to_snapshot(payload: dict[str, Any]) -> EventSnapshot:
    """Map a Google event resource onto an :class:`EventSnapshot`.

    Cancelled entries returned with ``showDeleted`` may omit start/end; their
    boundaries fall back to the ``updated`` timestamp since only the id matters.
    """
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    status_raw = payload.get("status")
    status = (
        status_raw.strip().lower()
        if isinstance(status_raw, str) and status_raw.strip()
        else REMOTE_STATUS_CONFIRMED
    )
    updated_at = _parse_optional_datetime(payload.get("updated"))

    start = _parse_event_boundary(payload.get("start"))
    end = _parse_event_boundary(payload.get("end"))
    if start is None or end is None:
        if status != REMOTE_STATUS_CANCELLED:
            raise ValueError(f"Google Calendar event '{event_id}' is missing start/end values")
        fallback = updated_at or utcnow()
        start = start or fallback
        end = end or start

    return EventSnapshot(
        title=_text(payload.get("summary")),
        description=_text(payload.get("description")),
        location=_text(payload.get("location")),
        start=start,
        end=end,
        external_id=event_id.strip(),
        external_source=EXTERNAL_SOURCE_GOOGLE,
        status=status,
        created_at=_parse_optional_datetime(payload.get("created")),
        updated_at=updated_at,
    )


def _events_path(calendar_id: str) -> str:
    return f"/calendars/{quote(calendar_id, safe='')}/events"


def _event_path(calendar_id: str, event_id: str) -> str:
    return f"{_events_path(calendar_id)}/{quote(event_id, safe='')}"


def build_google_event_body(event: EventSnapshot) -> dict[str, Any]:
    return {
        "summary": event.title,
        "description": event.description,
        "location": event.location,
        "start": {"dateTime": _google_rfc3339(event.start)},
        "end": {"dateTime": _google_rfc3339(event.end)},
    }


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _parse_channel_expiration(value: Any) -> datetime:
    """Google reports channel expiry as epoch milliseconds (string or int)."""
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    return utcnow() + DEFAULT_CHANNEL_TTL


class GoogleCalendarClient(RemoteCalendarClient):
    """Google Calendar v3 REST client authenticated with a caller-supplied token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "google"

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        try:
            return await self._http_client.request(
                method,
                f"{self._base_url}{normalized_path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise TransientRemoteError(f"Google Calendar request failed: {exc}") from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            method, path, access_token, params=params, json_body=json_body
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise TransientRemoteError(
                _safe_google_error_message(response), status_code=response.status_code
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientRemoteError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise TransientRemoteError(
                "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        *,
        show_deleted: bool = False,
    ) -> list[EventSnapshot]:
        params: dict[str, Any] = {
            "singleEvents": True,
            "orderBy": "startTime",
            "showDeleted": show_deleted,
            "maxResults": LIST_PAGE_SIZE,
            "timeMin": _google_rfc3339(start),
            "timeMax": _google_rfc3339(end),
        }
        path = _events_path(calendar_id)

        events: list[EventSnapshot] = []
        while True:
            payload = await self._request_json("GET", path, access_token, params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise TransientRemoteError(
                    "Google Calendar list_events response missing items array"
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    event = google_event_to_snapshot(item)
                except ValueError as exc:
                    logger.warning("Skipping malformed Google Calendar event: %s", exc)
                    continue
                if event.is_cancelled and not show_deleted:
                    continue
                events.append(event)

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            params["pageToken"] = next_page_token
        return events

    async def create_event(
        self, access_token: str, calendar_id: str, event: EventSnapshot
    ) -> EventSnapshot:
        payload = await self._request_json(
            "POST",
            _events_path(calendar_id),
            access_token,
            json_body=build_google_event_body(event),
        )
        try:
            return google_event_to_snapshot(payload)
        except ValueError as exc:
            raise TransientRemoteError(f"Google Calendar returned an invalid event: {exc}") from exc

    async def update_event(
        self, access_token: str, calendar_id: str, external_id: str, event: EventSnapshot
    ) -> EventSnapshot:
        normalized_event_id = external_id.strip()
        if not normalized_event_id:
            raise ValueError("external_id must be a non-empty string")
        payload = await self._request_json(
            "PATCH",
            _event_path(calendar_id, normalized_event_id),
            access_token,
            json_body=build_google_event_body(event),
        )
        try:
            return google_event_to_snapshot(payload)
        except ValueError as exc:
            raise TransientRemoteError(f"Google Calendar returned an invalid event: {exc}") from exc

    async def delete_event(self, access_token: str, calendar_id: str, external_id: str) -> None:
        normalized_event_id = external_id.strip()
        if not normalized_event_id:
            raise ValueError("external_id must be a non-empty string")
        response = await self._request(
            "DELETE",
            _event_path(calendar_id, normalized_event_id),
            access_token,
        )
        # 404/410 mean the event is already gone.
        if response.status_code in (404, 410):
            logger.debug("delete_event: event '%s' already deleted", normalized_event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise TransientRemoteError(
                _safe_google_error_message(response), status_code=response.status_code
            )

    async def create_subscription(
        self, access_token: str, calendar_id: str, callback_url: str
    ) -> Subscription:
        channel_id = str(uuid.uuid4())
        payload = await self._request_json(
            "POST",
            f"{_events_path(calendar_id)}/watch",
            access_token,
            json_body={"id": channel_id, "type": "web_hook", "address": callback_url},
        )
        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id.strip():
            raise TransientRemoteError("Google Calendar watch response is missing resourceId")
        returned_id = payload.get("id")
        if isinstance(returned_id, str) and returned_id.strip():
            channel_id = returned_id.strip()
        return Subscription(
            channel_id=channel_id,
            resource_id=resource_id.strip(),
            expires_at=_parse_channel_expiration(payload.get("expiration")),
        )

    async def stop_subscription(
        self, access_token: str, channel_id: str, resource_id: str
    ) -> None:
        response = await self._request(
            "POST",
            "/channels/stop",
            access_token,
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code == 404:
            logger.debug("stop_subscription: channel '%s' already gone", channel_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise TransientRemoteError(
                _safe_google_error_message(response), status_code=response.status_code
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
