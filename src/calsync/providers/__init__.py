"""Remote calendar provider clients."""

from calsync.providers.base import RemoteCalendarClient, Subscription
from calsync.providers.google import GoogleCalendarClient

__all__ = ["GoogleCalendarClient", "RemoteCalendarClient", "Subscription"]
