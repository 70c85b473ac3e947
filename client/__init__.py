# fleetsync/client/__init__.py
# Purpose: REST client factory and error taxonomy.
from __future__ import annotations
from typing import Optional

from .api import FleetApiClient
from .errors import FleetApiError, RequestRejected, TabLimitReached, TransportError

__all__ = [
    "FleetApiClient",
    "FleetApiError",
    "RequestRejected",
    "TabLimitReached",
    "TransportError",
    "get_client",
]


def get_client(base_url: Optional[str] = None, *, timeout: Optional[float] = None) -> FleetApiClient:
    return FleetApiClient(base_url, timeout=timeout)
