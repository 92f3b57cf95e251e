"""Result records returned by batch and sync operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from calsync.models import SyncConflict, SyncDirection


@dataclass
class BatchResult:
    """Outcome of a loop over many items where one failure never stops the rest."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, message: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(message)

    def record_skip(self) -> None:
        self.processed += 1
        self.skipped += 1

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class SyncOutcome:
    """Outcome of one "sync now" run.

    ``partial`` is set when a bidirectional run pulled events successfully
    but the push phase failed; ``events_synced`` then holds the pull count.
    """

    config_id: Any
    direction: SyncDirection
    events_synced: int = 0
    error: str | None = None
    partial: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": str(self.config_id),
            "direction": self.direction.value,
            "success": self.success,
            "events_synced": self.events_synced,
            "error": self.error,
            "partial": self.partial,
        }


@dataclass
class DetectionReport:
    """Conflicts persisted by one detection run, plus any auto-resolution outcome."""

    config_id: Any
    conflicts: list[SyncConflict] = field(default_factory=list)
    auto_resolution: BatchResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": str(self.config_id),
            "detected": len(self.conflicts),
            "conflict_ids": [str(conflict.id) for conflict in self.conflicts],
            "auto_resolution": (
                self.auto_resolution.to_dict() if self.auto_resolution is not None else None
            ),
        }


@dataclass
class ResolutionResult:
    """Outcome of resolving a single conflict."""

    conflict_id: Any
    action: str
    resolution: str
    event_id: Any | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": str(self.conflict_id),
            "action": self.action,
            "resolution": self.resolution,
            "event_id": str(self.event_id) if self.event_id is not None else None,
        }
