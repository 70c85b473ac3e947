from __future__ import annotations

from typing import Optional


class FleetApiError(Exception):
    """Base for every failure talking to the fleet backend."""

    def __init__(self, message: str, *, status: Optional[int] = None, path: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.path = path


class TransportError(FleetApiError):
    """Network failure, timeout or 5xx. Polling keeps going on these."""


class RequestRejected(FleetApiError):
    """4xx from the backend. Only the caller of the action sees it."""


class TabLimitReached(Exception):
    """Raised before any request when a viewer already has maxTabs tabs."""
