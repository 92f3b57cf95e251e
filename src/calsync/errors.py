"""Error taxonomy for calendar synchronization.

Status code mapping applied by :mod:`calsync.api.middleware`:

- ``SyncValidationError`` → 400 (bad action, missing target, illegal state)
- ``SyncPermissionError`` → 403
- ``NotFoundError`` → 404 (unknown conflict/configuration/integration)
- ``DuplicateConfigurationError`` → 409
- ``TransientRemoteError`` → 502 (network or provider API failure)

Partial failure of a bidirectional sync is not an exception; it is reported
on :class:`~calsync.sync.results.SyncOutcome`.
"""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base error for the calendar sync subsystem."""


class SyncValidationError(CalendarSyncError, ValueError):
    """Raised when a request is rejected synchronously as invalid."""


class SyncPermissionError(CalendarSyncError):
    """Raised when a user acts on a record they do not own."""


class NotFoundError(CalendarSyncError, LookupError):
    """Raised when a conflict, configuration, event or integration is unknown."""

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class DuplicateConfigurationError(CalendarSyncError):
    """Raised when a user links the same remote calendar twice."""

    def __init__(self, user_id: str, calendar_id: str) -> None:
        self.user_id = user_id
        self.calendar_id = calendar_id
        super().__init__(f"Calendar {calendar_id} is already linked for this user")


class TransientRemoteError(CalendarSyncError):
    """Raised when the remote calendar provider cannot be reached or fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is not None:
            message = f"Remote calendar request failed ({status_code}): {message}"
        super().__init__(message)


class CredentialRefreshError(TransientRemoteError):
    """Raised when an OAuth refresh-token exchange fails."""


class StaleConfigurationError(CalendarSyncError):
    """Raised when a compare-and-swap on webhook fields loses a race."""

    def __init__(self, config_id: object) -> None:
        self.config_id = config_id
        super().__init__(f"Sync configuration {config_id} was modified concurrently")
