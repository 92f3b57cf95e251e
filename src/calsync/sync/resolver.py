"""Conflict resolution: apply an action to the event store and close the conflict."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import assert_never

from calsync import metrics
from calsync.errors import NotFoundError, SyncPermissionError, SyncValidationError
from calsync.models import (
    EXTERNAL_SOURCE_GOOGLE,
    ConflictResolutionStrategy,
    EventSnapshot,
    SyncConflict,
    utcnow,
)
from calsync.stores.base import ConflictStore, EventStore
from calsync.sync.actions import (
    RESOLUTION_ACTION_TYPES,
    Ignore,
    Merge,
    ResolutionAction,
    UseLocal,
    UseRemote,
    action_name,
)
from calsync.sync.results import BatchResult, ResolutionResult

logger = logging.getLogger(__name__)

AUTO_RESOLVER = "auto"
DEFAULT_MANUAL_RESOLUTION = "Manually resolved by user"
DEFAULT_BULK_RESOLUTION = "Bulk resolved by user"
AUTO_RESOLUTION_TEXT = {
    ConflictResolutionStrategy.REMOTE_WINS: (
        "Automatically resolved: Google Calendar version preferred"
    ),
    ConflictResolutionStrategy.LOCAL_WINS: "Automatically resolved: Local version preferred",
}


@dataclass
class ResolutionAttempt:
    """Per-conflict outcome of a bulk resolution."""

    conflict_id: uuid.UUID
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "conflict_id": str(self.conflict_id),
            "success": self.success,
            "error": self.error,
        }


def _strategy_action(strategy: ConflictResolutionStrategy) -> ResolutionAction | None:
    match strategy:
        case ConflictResolutionStrategy.REMOTE_WINS:
            return UseRemote()
        case ConflictResolutionStrategy.LOCAL_WINS:
            return UseLocal()
        case ConflictResolutionStrategy.MANUAL:
            return None
        case _:
            assert_never(strategy)


class ConflictResolver:
    """Applies resolution actions to pending conflicts."""

    def __init__(self, conflicts: ConflictStore, events: EventStore) -> None:
        self._conflicts = conflicts
        self._events = events

    async def get_conflict(
        self, conflict_id: uuid.UUID, *, user_id: str | None = None
    ) -> SyncConflict:
        conflict = await self._conflicts.get(conflict_id)
        if conflict is None:
            raise NotFoundError("Sync conflict", conflict_id)
        if user_id is not None and conflict.user_id != user_id:
            raise SyncPermissionError(f"Sync conflict {conflict_id} belongs to another user")
        return conflict

    async def resolve(
        self,
        conflict_id: uuid.UUID,
        action: ResolutionAction,
        resolved_by: str,
        resolution: str | None = None,
        *,
        user_id: str | None = None,
    ) -> ResolutionResult:
        """Apply *action* to the conflict and mark it resolved.

        Raises:
            SyncValidationError: unknown action, missing snapshot, or the
                conflict is no longer pending.
            NotFoundError: the conflict does not exist.
            SyncPermissionError: *user_id* is given and does not own it.
        """
        if not isinstance(action, RESOLUTION_ACTION_TYPES):
            raise SyncValidationError(f"Unknown resolution action: {action!r}")
        name = action_name(action)

        conflict = await self.get_conflict(conflict_id, user_id=user_id)
        if not conflict.is_pending:
            raise SyncValidationError(
                f"Sync conflict {conflict_id} is already {conflict.status.value}"
            )

        # The claim makes this caller the only one allowed to touch the events.
        if not await self._conflicts.claim(conflict.id):
            metrics.conflict_resolutions_total.labels(action=name, status="stale").inc()
            raise SyncValidationError(f"Sync conflict {conflict_id} was resolved concurrently")

        try:
            event_id = await self._apply(conflict, action)
        except Exception:
            await self._conflicts.release(conflict.id)
            metrics.conflict_resolutions_total.labels(action=name, status="error").inc()
            raise

        text = resolution or DEFAULT_MANUAL_RESOLUTION
        closed = await self._conflicts.mark_resolved(
            conflict.id,
            resolution=text,
            resolved_by=resolved_by,
            resolved_at=utcnow(),
        )
        if not closed:
            metrics.conflict_resolutions_total.labels(action=name, status="stale").inc()
            raise SyncValidationError(f"Sync conflict {conflict_id} was resolved concurrently")

        metrics.conflict_resolutions_total.labels(action=name, status="success").inc()
        logger.info(
            "Resolved sync conflict %s with %s (by %s)", conflict.id, name, resolved_by
        )
        return ResolutionResult(
            conflict_id=conflict.id,
            action=name,
            resolution=text,
            event_id=event_id,
        )

    async def auto_resolve(
        self,
        conflicts: Iterable[SyncConflict],
        strategy: ConflictResolutionStrategy,
    ) -> BatchResult:
        """Resolve each conflict according to *strategy*; failures never stop the batch."""
        result = BatchResult()
        action = _strategy_action(strategy)
        for conflict in conflicts:
            if action is None:
                result.record_skip()
                continue
            try:
                await self.resolve(
                    conflict.id,
                    action,
                    AUTO_RESOLVER,
                    AUTO_RESOLUTION_TEXT[strategy],
                )
            except Exception as exc:
                logger.warning("Failed to auto-resolve conflict %s: %s", conflict.id, exc)
                result.record_failure(f"{conflict.id}: {exc}")
            else:
                result.record_success()
        return result

    async def bulk_resolve(
        self,
        conflict_ids: Sequence[uuid.UUID],
        action: ResolutionAction,
        resolved_by: str,
        resolution: str | None = None,
        *,
        user_id: str | None = None,
    ) -> tuple[BatchResult, list[ResolutionAttempt]]:
        """Resolve several conflicts with the same action, reporting per-item results."""
        text = resolution or DEFAULT_BULK_RESOLUTION
        summary = BatchResult()
        attempts: list[ResolutionAttempt] = []
        for conflict_id in conflict_ids:
            try:
                await self.resolve(conflict_id, action, resolved_by, text, user_id=user_id)
            except Exception as exc:
                summary.record_failure(f"{conflict_id}: {exc}")
                attempts.append(ResolutionAttempt(conflict_id, success=False, error=str(exc)))
            else:
                summary.record_success()
                attempts.append(ResolutionAttempt(conflict_id, success=True))
        return summary, attempts

    # ------------------------------------------------------------------
    # Action application
    # ------------------------------------------------------------------

    async def _apply(self, conflict: SyncConflict, action: ResolutionAction) -> uuid.UUID | None:
        match action:
            case UseLocal():
                if conflict.local_event is None:
                    raise SyncValidationError("No local event to apply")
                saved = await self._persist(conflict.local_event)
                return saved.id
            case UseRemote():
                if conflict.remote_event is None:
                    raise SyncValidationError("No remote event to apply")
                saved = await self._persist(await self._adopt_remote(conflict))
                return saved.id
            case Merge():
                if conflict.local_event is None:
                    raise SyncValidationError("No local event to merge")
                merged = conflict.local_event.model_copy(update=action.overrides())
                saved = await self._persist(merged)
                return saved.id
            case Ignore():
                return None
            case _:
                assert_never(action)

    async def _adopt_remote(self, conflict: SyncConflict) -> EventSnapshot:
        """Return the remote content applied to its local mirror, or a new event.

        Only the event sharing the remote external id is rewritten.  The local
        side of an overlap or duplicate conflict is a different event and is
        left alone.
        """
        remote = conflict.remote_event
        assert remote is not None
        mirror: EventSnapshot | None = None
        if remote.external_id is not None:
            mirror = await self._events.find_by_external_id(
                conflict.user_id, remote.external_id
            )
            local = conflict.local_event
            if mirror is None and local is not None and local.external_id == remote.external_id:
                # Deleted since detection; _persist re-creates it under its old id.
                mirror = local
        if mirror is None:
            return remote.model_copy(
                update={
                    "id": None,
                    "user_id": conflict.user_id,
                    "external_source": remote.external_source or EXTERNAL_SOURCE_GOOGLE,
                    "created_at": None,
                    "updated_at": None,
                }
            )
        return mirror.model_copy(
            update={
                "title": remote.title,
                "description": remote.description,
                "location": remote.location,
                "start": remote.start,
                "end": remote.end,
                "external_source": (
                    remote.external_source
                    or mirror.external_source
                    or EXTERNAL_SOURCE_GOOGLE
                ),
            }
        )

    async def _persist(self, event: EventSnapshot) -> EventSnapshot:
        """Update an existing event, or create it when it has no id or was removed."""
        if event.id is None:
            return await self._events.create(event)
        try:
            return await self._events.update(event)
        except NotFoundError:
            logger.info("Local event %s no longer exists; re-creating it", event.id)
            return await self._events.create(event)
