# fleetsync/client/api.py
# Purpose: Async REST client for the box/viewer backend.

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import aiohttp

from client.errors import RequestRejected, TransportError
from models.updates import (
    BoxCreate,
    BoxUpdate,
    ResourceLimitsUpdate,
    ResourceManagerConfigUpdate,
    ViewerUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:5000/api"
DEFAULT_TIMEOUT = 30
UA = "fleetsync/0.1"


class FleetApiClient:
    """Thin wrapper over the backend endpoints; returns decoded JSON.

    Env:
      FLEET_API_URL (default: http://localhost:5000/api)
      FLEET_API_TIMEOUT (default: 30 seconds)
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = (base_url or os.getenv("FLEET_API_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = float(timeout or os.getenv("FLEET_API_TIMEOUT", DEFAULT_TIMEOUT))
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "FleetApiClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": UA},
                trust_env=True,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        session = self._get_session()
        logger.debug("%s %s", method, url)
        try:
            async with session.request(method, url, json=json, params=params) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if resp.status >= 500:
                    raise TransportError(
                        _message(body, f"{method} {path} failed with {resp.status}"),
                        status=resp.status,
                        path=path,
                    )
                if resp.status >= 400:
                    raise RequestRejected(
                        _message(body, f"{method} {path} rejected with {resp.status}"),
                        status=resp.status,
                        path=path,
                    )
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{method} {path}: {str(e) or type(e).__name__}", path=path) from e

    # ------------------------------------------------------------------
    # Boxes
    async def list_boxes(self) -> List[dict]:
        return await self._request("GET", "/boxes")

    async def get_box(self, box_id: str) -> dict:
        return await self._request("GET", f"/boxes/{box_id}")

    async def get_box_status(self, box_id: str) -> dict:
        return await self._request("GET", f"/boxes/{box_id}/status")

    async def create_box(self, data: BoxCreate) -> dict:
        return await self._request("POST", "/boxes", json=data.to_payload())

    async def update_box(self, box_id: str, data: BoxUpdate) -> dict:
        return await self._request("PUT", f"/boxes/{box_id}", json=data.to_payload())

    async def delete_box(self, box_id: str) -> None:
        await self._request("DELETE", f"/boxes/{box_id}")

    async def start_box(self, box_id: str) -> dict:
        return await self._request("POST", f"/boxes/{box_id}/start")

    async def stop_box(self, box_id: str) -> dict:
        return await self._request("POST", f"/boxes/{box_id}/stop")

    async def refresh_box_ip(self, box_id: str) -> dict:
        return await self._request("POST", f"/boxes/{box_id}/refresh-ip")

    async def get_box_resources(self, box_id: str) -> dict:
        return await self._request("GET", f"/boxes/{box_id}/resources")

    async def update_box_resource_limits(
        self, box_id: str, limits: ResourceLimitsUpdate
    ) -> dict:
        return await self._request(
            "PUT", f"/boxes/{box_id}/resources/limits", json=limits.to_payload()
        )

    # ------------------------------------------------------------------
    # Viewers
    async def list_viewers(self) -> List[dict]:
        return await self._request("GET", "/viewers")

    async def get_viewer(self, viewer_id: str) -> dict:
        return await self._request("GET", f"/viewers/{viewer_id}")

    async def get_viewer_status(self, viewer_id: str) -> dict:
        return await self._request("GET", f"/viewers/{viewer_id}/status")

    async def get_viewer_logs(self, viewer_id: str) -> List[dict]:
        return await self._request("GET", f"/viewers/{viewer_id}/logs")

    async def update_viewer(self, viewer_id: str, data: ViewerUpdate) -> dict:
        return await self._request("PUT", f"/viewers/{viewer_id}", json=data.to_payload())

    async def stop_viewer(self, viewer_id: str) -> dict:
        return await self._request("POST", f"/viewers/{viewer_id}/stop")

    async def take_screenshot(self, viewer_id: str) -> dict:
        return await self._request("POST", f"/viewers/{viewer_id}/screenshot")

    async def take_tab_screenshot(self, viewer_id: str, tab_index: int) -> dict:
        return await self._request(
            "POST", f"/viewers/{viewer_id}/tab-screenshot", json={"tabIndex": tab_index}
        )

    async def add_tab(self, viewer_id: str) -> dict:
        return await self._request("POST", f"/viewers/{viewer_id}/add-tab")

    async def close_tab(self, viewer_id: str, tab_index: int) -> dict:
        return await self._request(
            "POST", f"/viewers/{viewer_id}/close-tab", json={"tabIndex": tab_index}
        )

    async def force_tab_lowest_quality(self, viewer_id: str, tab_index: int) -> dict:
        return await self._request(
            "POST",
            f"/viewers/{viewer_id}/force-tab-lowest-quality",
            json={"tabIndex": tab_index},
        )

    async def get_tab_stats(self, viewer_id: str) -> dict:
        return await self._request("GET", f"/viewers/{viewer_id}/tab-stats")

    # ------------------------------------------------------------------
    # System
    async def get_system_metrics(self) -> dict:
        return await self._request("GET", "/system/metrics")

    async def get_resource_manager_metrics(self) -> dict:
        return await self._request("GET", "/system/resources")

    async def update_resource_manager_config(
        self, config: ResourceManagerConfigUpdate
    ) -> dict:
        return await self._request(
            "PUT", "/system/resources/config", json=config.to_payload()
        )

    async def trigger_resource_check(self) -> dict:
        return await self._request("POST", "/system/resources/check")

    async def stop_idle_viewers(self, force: bool = False) -> dict:
        return await self._request(
            "POST", "/system/resources/stop-idle", json={"force": force}
        )

    # ------------------------------------------------------------------
    # Chat
    async def get_chat(self, stream_url: str) -> List[dict]:
        return await self._request("GET", "/streams/chat", params={"url": stream_url})


def _message(body: Any, fallback: str) -> str:
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return fallback
