"""Sync conflict endpoints: listing, stats, detail, and resolution."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from calsync.api.deps import get_conflict_store, get_resolver, get_user_id
from calsync.api.models import ApiResponse
from calsync.api.models.sync import (
    BatchSummary,
    BulkResolveItem,
    BulkResolveRequest,
    BulkResolveResponse,
    ConflictStats,
    ConflictSummary,
    ResolutionResponse,
    ResolveConflictRequest,
)
from calsync.models import utcnow
from calsync.stores.base import ConflictStore
from calsync.sync.actions import parse_action, parse_bulk_action
from calsync.sync.resolver import ConflictResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync-conflicts", tags=["sync-conflicts"])


@router.get("", response_model=ApiResponse[list[ConflictSummary]])
async def list_pending_conflicts(
    user_id: str = Depends(get_user_id),
    conflicts: ConflictStore = Depends(get_conflict_store),
) -> ApiResponse[list[ConflictSummary]]:
    pending = await conflicts.list_pending(user_id)
    return ApiResponse[list[ConflictSummary]](
        data=[ConflictSummary.from_conflict(conflict) for conflict in pending],
        meta={"total": len(pending)},
    )


# Declared before "/{conflict_id}" so "stats" is not parsed as an id.
@router.get("/stats", response_model=ApiResponse[ConflictStats])
async def conflict_stats(
    days: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_user_id),
    conflicts: ConflictStore = Depends(get_conflict_store),
) -> ApiResponse[ConflictStats]:
    since = utcnow() - timedelta(days=days)
    by_type = await conflicts.stats(user_id, since)
    return ApiResponse[ConflictStats](
        data=ConflictStats(days=days, total=sum(by_type.values()), by_type=by_type)
    )


@router.post("/bulk-resolve", response_model=ApiResponse[BulkResolveResponse])
async def bulk_resolve_conflicts(
    request: BulkResolveRequest,
    user_id: str = Depends(get_user_id),
    resolver: ConflictResolver = Depends(get_resolver),
) -> ApiResponse[BulkResolveResponse]:
    action = parse_bulk_action(request.action)
    summary, attempts = await resolver.bulk_resolve(
        request.conflict_ids,
        action,
        resolved_by=user_id,
        resolution=request.resolution,
        user_id=user_id,
    )
    return ApiResponse[BulkResolveResponse](
        data=BulkResolveResponse(
            summary=BatchSummary(**summary.to_dict()),
            results=[
                BulkResolveItem(
                    conflict_id=attempt.conflict_id,
                    success=attempt.success,
                    error=attempt.error,
                )
                for attempt in attempts
            ],
        )
    )


@router.get("/{conflict_id}", response_model=ApiResponse[ConflictSummary])
async def get_conflict(
    conflict_id: UUID,
    user_id: str = Depends(get_user_id),
    resolver: ConflictResolver = Depends(get_resolver),
) -> ApiResponse[ConflictSummary]:
    conflict = await resolver.get_conflict(conflict_id, user_id=user_id)
    return ApiResponse[ConflictSummary](data=ConflictSummary.from_conflict(conflict))


@router.post("/{conflict_id}/resolve", response_model=ApiResponse[ResolutionResponse])
async def resolve_conflict(
    conflict_id: UUID,
    request: ResolveConflictRequest,
    user_id: str = Depends(get_user_id),
    resolver: ConflictResolver = Depends(get_resolver),
) -> ApiResponse[ResolutionResponse]:
    overrides = request.merge.model_dump(exclude_none=True) if request.merge else None
    action = parse_action(request.action, overrides)
    result = await resolver.resolve(
        conflict_id,
        action,
        resolved_by=user_id,
        resolution=request.resolution,
        user_id=user_id,
    )
    return ApiResponse[ResolutionResponse](
        data=ResolutionResponse(
            conflict_id=result.conflict_id,
            action=result.action,
            resolution=result.resolution,
            event_id=result.event_id,
        )
    )
