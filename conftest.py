"""Pytest configuration: asyncio tests without external plugins, plus an
in-memory stand-in for the fleet backend."""

from __future__ import annotations

import asyncio
import copy
import inspect
from typing import Any, Dict, List

import pytest

from client.errors import RequestRejected, TransportError


@pytest.hookimpl(tryfirst=True)
def pytest_configure(config: pytest.Config) -> None:
    """Register the custom ``asyncio`` marker used throughout the test suite."""

    config.addinivalue_line(
        "markers",
        "asyncio: mark a test as running inside an asyncio event loop",
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute ``async def`` tests by driving them with a fresh event loop."""

    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    argnames = pyfuncitem._fixtureinfo.argnames
    kwargs = {name: pyfuncitem.funcargs[name] for name in argnames}
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_function(**kwargs))
        loop.run_until_complete(loop.shutdown_asyncgens())
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


class FakeFleetApi:
    """Backend double: records calls, serves canned snapshots.

    ``boxes``/``viewers`` hold wire-shaped dicts keyed by id. ``fail`` maps a
    method name to an exception raised on its next calls. Status reads may be
    scripted with ``status_script[id]``: a list consumed one entry per call.
    """

    def __init__(self) -> None:
        self.boxes: Dict[str, dict] = {}
        self.viewers: Dict[str, dict] = {}
        self.system: dict = {"system": {"uptime": 1, "loadAvg": [0.1]}}
        self.resources: Dict[str, dict] = {}
        self.logs: Dict[str, List[dict]] = {}
        self.chat: Dict[str, List[dict]] = {}
        self.status_script: Dict[str, List[Any]] = {}
        self.fail: Dict[str, BaseException] = {}
        self.calls: List[tuple] = []
        self.delay = 0.0

    async def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.fail:
            raise self.fail[name]

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def _viewer(self, viewer_id: str) -> dict:
        if viewer_id not in self.viewers:
            raise RequestRejected("Viewer not found", status=404)
        return self.viewers[viewer_id]

    # boxes
    async def list_boxes(self):
        await self._call("list_boxes")
        return [copy.deepcopy(b) for b in self.boxes.values()]

    async def get_box(self, box_id):
        await self._call("get_box", box_id)
        return copy.deepcopy(self.boxes[box_id])

    async def get_box_status(self, box_id):
        await self._call("get_box_status", box_id)
        script = self.status_script.get(box_id)
        if script:
            item = script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return {"status": self.boxes.get(box_id, {}).get("status", "idle")}

    async def create_box(self, data):
        await self._call("create_box", data.to_payload())
        box = {"_id": f"b{len(self.boxes) + 1}", "status": "idle", **data.to_payload()}
        self.boxes[box["_id"]] = box
        return copy.deepcopy(box)

    async def update_box(self, box_id, data):
        await self._call("update_box", box_id, data.to_payload())
        self.boxes[box_id].update(data.to_payload())
        return copy.deepcopy(self.boxes[box_id])

    async def delete_box(self, box_id):
        await self._call("delete_box", box_id)
        self.boxes.pop(box_id, None)

    async def start_box(self, box_id):
        await self._call("start_box", box_id)
        return {"message": "Box starting"}

    async def stop_box(self, box_id):
        await self._call("stop_box", box_id)
        return {"message": "Box stopping"}

    async def refresh_box_ip(self, box_id):
        await self._call("refresh_box_ip", box_id)
        return {"ipAddress": "10.0.0.9", "location": "Amsterdam"}

    async def get_box_resources(self, box_id):
        await self._call("get_box_resources", box_id)
        return copy.deepcopy(self.resources.get(box_id, {}))

    async def update_box_resource_limits(self, box_id, limits):
        await self._call("update_box_resource_limits", box_id, limits.to_payload())
        return limits.to_payload()

    # viewers
    async def list_viewers(self):
        await self._call("list_viewers")
        return [copy.deepcopy(v) for v in self.viewers.values()]

    async def get_viewer(self, viewer_id):
        await self._call("get_viewer", viewer_id)
        return copy.deepcopy(self._viewer(viewer_id))

    async def get_viewer_status(self, viewer_id):
        await self._call("get_viewer_status", viewer_id)
        script = self.status_script.get(viewer_id)
        if script:
            item = script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return {"status": self._viewer(viewer_id).get("status", "idle")}

    async def get_viewer_logs(self, viewer_id):
        await self._call("get_viewer_logs", viewer_id)
        return copy.deepcopy(self.logs.get(viewer_id, []))

    async def update_viewer(self, viewer_id, data):
        await self._call("update_viewer", viewer_id, data.to_payload())
        self._viewer(viewer_id).update(data.to_payload())
        return copy.deepcopy(self.viewers[viewer_id])

    async def stop_viewer(self, viewer_id):
        await self._call("stop_viewer", viewer_id)
        return {"message": "Viewer stopping"}

    async def take_screenshot(self, viewer_id):
        await self._call("take_screenshot", viewer_id)
        self._viewer(viewer_id)["lastScreenshotUrl"] = f"{viewer_id}.png"
        return {"screenshotUrl": f"{viewer_id}.png"}

    async def take_tab_screenshot(self, viewer_id, tab_index):
        await self._call("take_tab_screenshot", viewer_id, tab_index)
        tab = self._viewer(viewer_id)["tabs"][tab_index]
        tab["lastScreenshotUrl"] = f"{viewer_id}-{tab_index}.png"
        return {"screenshotUrl": tab["lastScreenshotUrl"]}

    async def add_tab(self, viewer_id):
        await self._call("add_tab", viewer_id)
        viewer = self._viewer(viewer_id)
        viewer.setdefault("tabs", []).append({"status": "running"})
        return {"tabIndex": len(viewer["tabs"]) - 1}

    async def close_tab(self, viewer_id, tab_index):
        await self._call("close_tab", viewer_id, tab_index)
        del self._viewer(viewer_id)["tabs"][tab_index]
        return {"message": "Tab closed"}

    async def force_tab_lowest_quality(self, viewer_id, tab_index):
        await self._call("force_tab_lowest_quality", viewer_id, tab_index)
        return {"message": "ok"}

    async def get_tab_stats(self, viewer_id):
        await self._call("get_tab_stats", viewer_id)
        return {"tabs": len(self._viewer(viewer_id).get("tabs", []))}

    # system
    async def get_system_metrics(self):
        await self._call("get_system_metrics")
        return copy.deepcopy(self.system)

    async def get_resource_manager_metrics(self):
        await self._call("get_resource_manager_metrics")
        return {"checkInterval": 60000, "idleTimeout": 1800000, "debug": False}

    async def update_resource_manager_config(self, config):
        await self._call("update_resource_manager_config", config.to_payload())
        return config.to_payload()

    async def trigger_resource_check(self):
        await self._call("trigger_resource_check")
        return {"message": "check started"}

    async def stop_idle_viewers(self, force=False):
        await self._call("stop_idle_viewers", force)
        return {"stopped": 0}

    # chat
    async def get_chat(self, stream_url):
        await self._call("get_chat", stream_url)
        return copy.deepcopy(self.chat.get(stream_url, []))


@pytest.fixture
def fake_api() -> FakeFleetApi:
    return FakeFleetApi()


@pytest.fixture
def transport_error() -> TransportError:
    return TransportError("backend unreachable", status=503)
