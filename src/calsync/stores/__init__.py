"""Persistence interfaces and their asyncpg implementations."""

from calsync.stores.base import ConflictStore, EventStore, IntegrationStore, SyncConfigStore

__all__ = ["ConflictStore", "EventStore", "IntegrationStore", "SyncConfigStore"]
