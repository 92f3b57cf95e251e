"""Sync configuration endpoints.

CRUD over the user's calendar links plus the explicit actions on one
configuration: sync now, webhook setup, and conflict detection.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Response

from calsync.api.deps import get_orchestrator, get_user_id
from calsync.api.models import ApiResponse
from calsync.api.models.sync import (
    BatchSummary,
    DetectConflictsRequest,
    DetectionResponse,
    SyncConfigCreateRequest,
    SyncConfigSummary,
    SyncConfigUpdateRequest,
    SyncOutcomeResponse,
    WebhookSetupRequest,
)
from calsync.models import SyncConfiguration
from calsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync-configs", tags=["sync-configs"])


@router.post("", response_model=ApiResponse[SyncConfigSummary], status_code=201)
async def create_sync_config(
    request: SyncConfigCreateRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[SyncConfigSummary]:
    config = await orchestrator.create_config(
        SyncConfiguration(
            user_id=user_id,
            integration_id=request.integration_id,
            calendar_id=request.calendar_id,
            calendar_name=request.calendar_name,
            direction=request.direction,
            settings=request.settings,
        )
    )
    return ApiResponse[SyncConfigSummary](data=SyncConfigSummary.from_config(config))


@router.get("", response_model=ApiResponse[list[SyncConfigSummary]])
async def list_sync_configs(
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[list[SyncConfigSummary]]:
    configs = await orchestrator.list_configs(user_id)
    return ApiResponse[list[SyncConfigSummary]](
        data=[SyncConfigSummary.from_config(config) for config in configs],
        meta={"total": len(configs)},
    )


@router.get("/{config_id}", response_model=ApiResponse[SyncConfigSummary])
async def get_sync_config(
    config_id: UUID,
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[SyncConfigSummary]:
    config = await orchestrator.get_config(config_id, user_id=user_id)
    return ApiResponse[SyncConfigSummary](data=SyncConfigSummary.from_config(config))


@router.put("/{config_id}", response_model=ApiResponse[SyncConfigSummary])
async def update_sync_config(
    config_id: UUID,
    request: SyncConfigUpdateRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[SyncConfigSummary]:
    config = await orchestrator.update_config(
        config_id,
        user_id=user_id,
        calendar_name=request.calendar_name,
        direction=request.direction,
        status=request.status,
        settings=request.settings,
    )
    return ApiResponse[SyncConfigSummary](data=SyncConfigSummary.from_config(config))


@router.delete("/{config_id}", status_code=204)
async def delete_sync_config(
    config_id: UUID,
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Response:
    await orchestrator.delete_config(config_id, user_id=user_id)
    return Response(status_code=204)


@router.post("/{config_id}/sync", response_model=ApiResponse[SyncOutcomeResponse])
async def sync_now(
    config_id: UUID,
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[SyncOutcomeResponse]:
    outcome = await orchestrator.sync_now(config_id, user_id=user_id)
    return ApiResponse[SyncOutcomeResponse](
        data=SyncOutcomeResponse(
            config_id=outcome.config_id,
            direction=outcome.direction,
            success=outcome.success,
            events_synced=outcome.events_synced,
            error=outcome.error,
            partial=outcome.partial,
        )
    )


@router.post("/{config_id}/webhook", response_model=ApiResponse[SyncConfigSummary])
async def setup_webhook(
    config_id: UUID,
    request: WebhookSetupRequest | None = Body(default=None),
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[SyncConfigSummary]:
    config = await orchestrator.setup_webhook(
        config_id, user_id=user_id, callback_url=request.callback_url if request else None
    )
    return ApiResponse[SyncConfigSummary](data=SyncConfigSummary.from_config(config))


@router.post("/{config_id}/conflicts/detect", response_model=ApiResponse[DetectionResponse])
async def detect_conflicts(
    config_id: UUID,
    request: DetectConflictsRequest | None = Body(default=None),
    user_id: str = Depends(get_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[DetectionResponse]:
    report = await orchestrator.detect_conflicts(
        config_id, user_id=user_id, auto_resolve=request.auto_resolve if request else True
    )
    auto = report.auto_resolution
    return ApiResponse[DetectionResponse](
        data=DetectionResponse(
            config_id=report.config_id,
            detected=len(report.conflicts),
            conflict_ids=[conflict.id for conflict in report.conflicts],
            auto_resolution=BatchSummary(**auto.to_dict()) if auto is not None else None,
        )
    )
