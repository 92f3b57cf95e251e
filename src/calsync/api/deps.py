"""FastAPI dependency providers for the sync API.

Route handlers depend on the functions below.  The app lifespan installs a
:class:`~calsync.services.Services` instance with :func:`init_services`;
tests either do the same with in-memory stores or use
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException

from calsync.services import Services
from calsync.stores.base import ConflictStore
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.renewal import WebhookRenewalScheduler
from calsync.sync.resolver import ConflictResolver
from calsync.sync.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

_services: Services | None = None


def init_services(services: Services) -> None:
    global _services  # noqa: PLW0603
    _services = services


def shutdown_services() -> None:
    global _services  # noqa: PLW0603
    _services = None


def get_services() -> Services:
    """FastAPI dependency: provides the process-wide Services container."""
    if _services is None:
        raise RuntimeError("Services not initialized; call init_services() first")
    return _services


def get_orchestrator() -> SyncOrchestrator:
    return get_services().orchestrator


def get_resolver() -> ConflictResolver:
    return get_services().resolver


def get_conflict_store() -> ConflictStore:
    return get_services().conflicts


def get_dispatcher() -> WebhookDispatcher:
    return get_services().dispatcher


def get_renewal_scheduler() -> WebhookRenewalScheduler:
    return get_services().renewal


def get_user_id(x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER)) -> str:
    """Resolve the requesting user from the ``X-User-Id`` header."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header")
    return user_id
