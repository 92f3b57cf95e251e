"""Liveness endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from calsync.api.deps import get_services
from calsync.services import Services

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> dict[str, object]:
    return {
        "status": "ok",
        "webhook_dispatcher": {
            "running": services.dispatcher.is_running,
            "queue_depth": services.dispatcher.queue_depth,
            "backpressure_total": services.dispatcher.backpressure_total,
        },
        "webhook_renewal": {"running": services.renewal.is_running},
    }
