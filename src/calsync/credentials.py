"""OAuth credential refresh for calendar integrations.

``CredentialManager`` is the only writer of integration tokens.  Callers ask
it for a usable access token before any provider call; it refreshes via the
Google OAuth token endpoint when the stored token expires within five
minutes and persists the new token set in one statement.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta
from typing import Any

import httpx

from calsync.errors import CredentialRefreshError, NotFoundError, SyncValidationError
from calsync.models import Integration, TokenSet, utcnow
from calsync.stores.base import IntegrationStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN_SECONDS = 3600


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
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


class TokenRefresher(abc.ABC):
    """Exchanges a refresh token for a fresh token set."""

    @abc.abstractmethod
    async def refresh(self, refresh_token: str) -> TokenSet: ...


class GoogleTokenRefresher(TokenRefresher):
    """Refresh-token exchange against Google's OAuth endpoint."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def refresh(self, refresh_token: str) -> TokenSet:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CredentialRefreshError(f"OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CredentialRefreshError(
                _safe_error_message(response), status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialRefreshError("OAuth token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise CredentialRefreshError("OAuth token endpoint returned an unexpected payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialRefreshError(
                "OAuth token response is missing a non-empty access_token"
            )

        # Google only rotates the refresh token occasionally.
        new_refresh_token = payload.get("refresh_token")
        if not isinstance(new_refresh_token, str) or not new_refresh_token.strip():
            new_refresh_token = refresh_token

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenSet(
            access_token=access_token.strip(),
            refresh_token=new_refresh_token.strip(),
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class CredentialManager:
    """Reads integrations and keeps their access tokens fresh."""

    def __init__(self, integrations: IntegrationStore, refresher: TokenRefresher) -> None:
        self._integrations = integrations
        self._refresher = refresher
        # Entries vanish once no caller holds the lock.
        self._refresh_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def get_integration(self, integration_id: uuid.UUID) -> Integration:
        integration = await self._integrations.get(integration_id)
        if integration is None:
            raise NotFoundError("Calendar integration", integration_id)
        return integration

    @staticmethod
    def is_expiring_soon(integration: Integration, now: datetime | None = None) -> bool:
        return integration.is_expiring_soon(now)

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self._refresher.refresh(refresh_token)

    async def persist_tokens(self, integration_id: uuid.UUID, tokens: TokenSet) -> None:
        await self._integrations.save_tokens(integration_id, tokens)

    async def ensure_access_token(
        self,
        integration_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> str:
        """Return a usable access token, refreshing and persisting it first if needed.

        Raises:
            NotFoundError: the integration does not exist.
            SyncValidationError: the integration is disabled.
            CredentialRefreshError: the refresh-token exchange failed.
        """
        integration = await self.get_integration(integration_id)
        if not integration.enabled:
            raise SyncValidationError(f"Calendar integration {integration_id} is disabled")
        if not integration.is_expiring_soon(now):
            return integration.access_token

        lock = self._refresh_locks.setdefault(integration_id, asyncio.Lock())
        async with lock:
            # Another task may have refreshed while we waited.
            integration = await self.get_integration(integration_id)
            if not integration.is_expiring_soon(now):
                return integration.access_token

            tokens = await self.refresh(integration.refresh_token)
            await self.persist_tokens(integration.id, tokens)
            logger.info(
                "Refreshed access token for integration %s (expires %s)",
                integration.id,
                tokens.expires_at.isoformat(),
            )
            return tokens.access_token
