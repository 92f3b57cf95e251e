"""Conflict detection between local and remote event batches.

Detection is pure: it never touches a store or the provider.  Three passes
run over the two batches and their results are concatenated in this order:

1. content-diff for pairs that share an external id
2. time-overlap for pairs that do not share one
3. duplicate-event for pairs that do not share one

A single pair can yield both an overlap and a duplicate conflict.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import timedelta

from calsync.models import ConflictType, EventSnapshot, SyncConflict

DUPLICATE_START_TOLERANCE = timedelta(minutes=5)

# (field label, snapshot attribute) in reporting order.
_CONTENT_FIELDS = (
    ("title", "title"),
    ("description", "description"),
    ("location", "location"),
    ("start_time", "start"),
    ("end_time", "end"),
)


def _share_external_id(local: EventSnapshot, remote: EventSnapshot) -> bool:
    return (
        local.external_id is not None
        and remote.external_id is not None
        and local.external_id == remote.external_id
    )


def events_overlap(first: EventSnapshot, second: EventSnapshot) -> bool:
    """Half-open interval overlap; touching endpoints do not overlap."""
    return first.start < second.end and second.start < first.end


def events_look_duplicated(first: EventSnapshot, second: EventSnapshot) -> bool:
    """Same title (case/whitespace-insensitive) starting within five minutes."""
    if first.title.strip().casefold() != second.title.strip().casefold():
        return False
    return abs(first.start - second.start) <= DUPLICATE_START_TOLERANCE


def content_differences(local: EventSnapshot, remote: EventSnapshot) -> list[str]:
    """Return the labels of every content field that differs between snapshots."""
    return [
        label
        for label, attribute in _CONTENT_FIELDS
        if getattr(local, attribute) != getattr(remote, attribute)
    ]


class ConflictDetector:
    """Compares local and remote batches and emits pending conflicts."""

    def detect(
        self,
        user_id: str,
        config_id: uuid.UUID,
        local_events: Sequence[EventSnapshot],
        remote_events: Sequence[EventSnapshot],
    ) -> list[SyncConflict]:
        conflicts: list[SyncConflict] = []
        conflicts.extend(self._content_conflicts(user_id, config_id, local_events, remote_events))
        conflicts.extend(self._overlap_conflicts(user_id, config_id, local_events, remote_events))
        conflicts.extend(self._duplicate_conflicts(user_id, config_id, local_events, remote_events))
        return conflicts

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _content_conflicts(
        self,
        user_id: str,
        config_id: uuid.UUID,
        local_events: Iterable[EventSnapshot],
        remote_events: Iterable[EventSnapshot],
    ) -> list[SyncConflict]:
        remote_by_id: dict[str, EventSnapshot] = {}
        for remote in remote_events:
            if remote.external_id is not None:
                # First occurrence wins.
                remote_by_id.setdefault(remote.external_id, remote)

        conflicts: list[SyncConflict] = []
        for local in local_events:
            if local.external_id is None:
                continue
            remote = remote_by_id.get(local.external_id)
            if remote is None:
                continue
            differences = content_differences(local, remote)
            if not differences:
                continue
            conflicts.append(
                SyncConflict(
                    user_id=user_id,
                    config_id=config_id,
                    conflict_type=ConflictType.CONTENT_DIFF,
                    local_event=local,
                    remote_event=remote,
                    description=(
                        f"Content differences detected in fields: {', '.join(differences)}"
                    ),
                )
            )
        return conflicts

    def _overlap_conflicts(
        self,
        user_id: str,
        config_id: uuid.UUID,
        local_events: Sequence[EventSnapshot],
        remote_events: Sequence[EventSnapshot],
    ) -> list[SyncConflict]:
        conflicts: list[SyncConflict] = []
        for local in local_events:
            for remote in remote_events:
                if _share_external_id(local, remote) or not events_overlap(local, remote):
                    continue
                conflicts.append(
                    SyncConflict(
                        user_id=user_id,
                        config_id=config_id,
                        conflict_type=ConflictType.TIME_OVERLAP,
                        local_event=local,
                        remote_event=remote,
                        description=(
                            "Events overlap in time: "
                            f"{local.start:%H:%M} - {local.end:%H:%M}"
                        ),
                    )
                )
        return conflicts

    def _duplicate_conflicts(
        self,
        user_id: str,
        config_id: uuid.UUID,
        local_events: Sequence[EventSnapshot],
        remote_events: Sequence[EventSnapshot],
    ) -> list[SyncConflict]:
        conflicts: list[SyncConflict] = []
        for local in local_events:
            for remote in remote_events:
                if _share_external_id(local, remote) or not events_look_duplicated(local, remote):
                    continue
                conflicts.append(
                    SyncConflict(
                        user_id=user_id,
                        config_id=config_id,
                        conflict_type=ConflictType.DUPLICATE_EVENT,
                        local_event=local,
                        remote_event=remote,
                        description=(
                            f"Duplicate events detected: '{local.title}' at "
                            f"{local.start:%Y-%m-%d %H:%M}"
                        ),
                    )
                )
        return conflicts
