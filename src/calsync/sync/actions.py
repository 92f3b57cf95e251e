"""Conflict resolution actions.

The set of actions is closed; consumers dispatch with an exhaustive
``match`` ending in :func:`typing.assert_never`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, assert_never

from calsync.errors import SyncValidationError


@dataclass(frozen=True)
class UseLocal:
    """Keep the local version."""


@dataclass(frozen=True)
class UseRemote:
    """Adopt the remote version."""


@dataclass(frozen=True)
class Merge:
    """Apply caller-supplied overrides onto the local version."""

    title: str | None = None
    description: str | None = None
    location: str | None = None

    def overrides(self) -> dict[str, str]:
        return {
            name: value
            for name, value in (
                ("title", self.title),
                ("description", self.description),
                ("location", self.location),
            )
            if value is not None
        }


@dataclass(frozen=True)
class Ignore:
    """Close the conflict without touching either event."""


type ResolutionAction = UseLocal | UseRemote | Merge | Ignore

RESOLUTION_ACTION_TYPES = (UseLocal, UseRemote, Merge, Ignore)

LEGACY_ACTION_ALIASES = {
    "use_google": "use_remote",
}
BULK_ACTION_NAMES = frozenset({"use_local", "use_remote", "ignore"})


def action_name(action: ResolutionAction) -> str:
    """Return the wire name of *action*."""
    match action:
        case UseLocal():
            return "use_local"
        case UseRemote():
            return "use_remote"
        case Merge():
            return "merge"
        case Ignore():
            return "ignore"
        case _:
            assert_never(action)


def _normalize_action_name(name: str) -> str:
    normalized = name.strip().lower()
    return LEGACY_ACTION_ALIASES.get(normalized, normalized)


def parse_action(name: str, overrides: Mapping[str, Any] | None = None) -> ResolutionAction:
    """Convert a wire action name (plus merge overrides) into an action object.

    Raises :class:`SyncValidationError` for any name outside the closed set.
    """
    normalized = _normalize_action_name(name)
    if normalized == "use_local":
        return UseLocal()
    if normalized == "use_remote":
        return UseRemote()
    if normalized == "ignore":
        return Ignore()
    if normalized == "merge":
        data = dict(overrides or {})
        for key in ("title", "description", "location"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise SyncValidationError(f"Merge override '{key}' must be a string")
        return Merge(
            title=data.get("title"),
            description=data.get("description"),
            location=data.get("location"),
        )
    raise SyncValidationError(f"Unknown resolution action: {name}")


def parse_bulk_action(name: str) -> ResolutionAction:
    """Like :func:`parse_action` but limited to actions needing no per-conflict data."""
    normalized = _normalize_action_name(name)
    if normalized not in BULK_ACTION_NAMES:
        raise SyncValidationError(f"Invalid bulk resolution action: {name}")
    return parse_action(normalized)
