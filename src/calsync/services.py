"""Process-wide wiring of stores, provider clients, and sync components.

:class:`Services` is built once per process (API server or CLI command) and
owns the lifecycle of the background components: the webhook dispatcher
and the renewal scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

import asyncpg

from calsync.config import CalsyncConfig
from calsync.credentials import CredentialManager, GoogleTokenRefresher, TokenRefresher
from calsync.db import Database
from calsync.providers.base import RemoteCalendarClient
from calsync.providers.google import GoogleCalendarClient
from calsync.stores.base import ConflictStore, EventStore, IntegrationStore, SyncConfigStore
from calsync.stores.postgres import (
    PostgresConflictStore,
    PostgresEventStore,
    PostgresIntegrationStore,
    PostgresSyncConfigStore,
)
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.renewal import WebhookRenewalScheduler
from calsync.sync.resolver import ConflictResolver
from calsync.sync.webhooks import WebhookDispatcher, WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: CalsyncConfig
    configs: SyncConfigStore
    events: EventStore
    conflicts: ConflictStore
    integrations: IntegrationStore
    credentials: CredentialManager
    remote: RemoteCalendarClient
    orchestrator: SyncOrchestrator
    processor: WebhookProcessor
    dispatcher: WebhookDispatcher
    renewal: WebhookRenewalScheduler
    refresher: TokenRefresher
    database: Database | None = None
    _started: bool = field(default=False, repr=False)

    @property
    def resolver(self) -> ConflictResolver:
        return self.orchestrator.resolver

    async def start(self) -> None:
        """Start the webhook workers and, when enabled, the renewal loop."""
        if self._started:
            return
        await self.dispatcher.start()
        if self.config.renewal.enabled:
            self.renewal.start()
        self._started = True

    async def stop(self) -> None:
        """Stop background components and release network and DB resources."""
        if self._started:
            await self.renewal.stop()
            await self.dispatcher.stop(drain_timeout_s=self.config.webhooks.drain_timeout_s)
            self._started = False
        await self.remote.shutdown()
        if isinstance(self.refresher, GoogleTokenRefresher):
            await self.refresher.aclose()
        if self.database is not None:
            await self.database.close()
        logger.info("Services stopped")


def wire_services(
    config: CalsyncConfig,
    *,
    configs: SyncConfigStore,
    events: EventStore,
    conflicts: ConflictStore,
    integrations: IntegrationStore,
    refresher: TokenRefresher,
    remote: RemoteCalendarClient,
    database: Database | None = None,
) -> Services:
    """Assemble the component graph over the given stores and provider clients."""
    credentials = CredentialManager(integrations, refresher)
    orchestrator = SyncOrchestrator(
        configs,
        events,
        conflicts,
        credentials,
        remote,
        webhook_url=config.google.webhook_url,
    )
    processor = WebhookProcessor(configs, events, credentials, remote)
    dispatcher = WebhookDispatcher(
        processor,
        queue_capacity=config.webhooks.queue_capacity,
        worker_count=config.webhooks.worker_count,
    )
    renewal = WebhookRenewalScheduler(
        configs,
        credentials,
        remote,
        interval_s=config.renewal.interval_s,
        threshold=timedelta(seconds=config.renewal.threshold_s),
    )
    return Services(
        config=config,
        configs=configs,
        events=events,
        conflicts=conflicts,
        integrations=integrations,
        credentials=credentials,
        remote=remote,
        orchestrator=orchestrator,
        processor=processor,
        dispatcher=dispatcher,
        renewal=renewal,
        refresher=refresher,
        database=database,
    )


def build_postgres_services(
    config: CalsyncConfig,
    pool: asyncpg.Pool,
    *,
    database: Database | None = None,
) -> Services:
    """Wire the production graph: Postgres stores plus the Google clients."""
    return wire_services(
        config,
        configs=PostgresSyncConfigStore(pool),
        events=PostgresEventStore(pool),
        conflicts=PostgresConflictStore(pool),
        integrations=PostgresIntegrationStore(pool),
        refresher=GoogleTokenRefresher(config.google.client_id, config.google.client_secret),
        remote=GoogleCalendarClient(),
        database=database,
    )


async def connect_services(config: CalsyncConfig) -> Services:
    """Open the database pool and build the production graph."""
    database = Database.from_config(config.db)
    pool = await database.connect()
    return build_postgres_services(config, pool, database=database)
