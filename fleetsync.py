from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Dict, List, Optional

from client.errors import FleetApiError
from dashboard.store import COLLECTION_ID, SYSTEM_ID, EntityKind, EntityStore, snapshot_id
from dashboard.streams import ChatStreamSelector, group_streams
from dashboard.tabs import TabLifecycleManager
from models.entities import Box, EntityStatus, FleetStats, Viewer
from models.updates import (
    BoxCreate,
    BoxUpdate,
    ResourceLimitsUpdate,
    ResourceManagerConfigUpdate,
    ViewerUpdate,
)
from runtime.scheduler import PollScheduler
from runtime.severity import DEFAULT_BOX_LIMITS, Severity, SeverityThresholds, severity
from runtime.synchronizer import StatusSynchronizer, status_gate

logger = logging.getLogger(__name__)


def _env_seconds(value: Optional[float], name: str, default: float) -> float:
    if value is not None:
        return float(value)
    return float(os.getenv(name, default))


class FleetSync:
    """Root scope of the dashboard: one store, its poll loops, and every
    user-initiated mutation.

    Views never write to the store directly; they subscribe ids on the
    synchronizers and call the action methods here.
    """

    def __init__(
        self,
        api,
        *,
        box_interval: Optional[float] = None,
        viewer_interval: Optional[float] = None,
        system_interval: Optional[float] = None,
        resource_interval: Optional[float] = None,
        chat_interval: Optional[float] = None,
        logs_interval: Optional[float] = None,
        list_interval: Optional[float] = None,
        refresh_delay: Optional[float] = None,
        thresholds: Optional[SeverityThresholds] = None,
    ):
        """Intervals are seconds; any left as None comes from the environment
        (BOX_POLL_INTERVAL, VIEWER_POLL_INTERVAL, SYSTEM_POLL_INTERVAL,
        RESOURCE_POLL_INTERVAL, CHAT_POLL_INTERVAL, LOGS_POLL_INTERVAL,
        LIST_POLL_INTERVAL, ACTION_REFRESH_DELAY)."""

        self.api = api
        self.store = EntityStore()
        self.thresholds = thresholds or SeverityThresholds.from_env()
        self.list_interval = _env_seconds(list_interval, "LIST_POLL_INTERVAL", 30)
        self.refresh_delay = _env_seconds(refresh_delay, "ACTION_REFRESH_DELAY", 3)

        self.boxes = StatusSynchronizer(
            EntityKind.BOX,
            api.get_box_status,
            self.store,
            interval=_env_seconds(box_interval, "BOX_POLL_INTERVAL", 15),
            should_poll=status_gate(self.store.box, self._removed(EntityKind.BOX)),
        )
        self.viewers = StatusSynchronizer(
            EntityKind.VIEWER,
            api.get_viewer_status,
            self.store,
            interval=_env_seconds(viewer_interval, "VIEWER_POLL_INTERVAL", 15),
            should_poll=status_gate(self.store.viewer, self._removed(EntityKind.VIEWER)),
        )
        self.system = StatusSynchronizer(
            EntityKind.SYSTEM,
            lambda _id: api.get_system_metrics(),
            self.store,
            interval=_env_seconds(system_interval, "SYSTEM_POLL_INTERVAL", 10),
        )
        self.resources = StatusSynchronizer(
            EntityKind.RESOURCES,
            api.get_box_resources,
            self.store,
            interval=_env_seconds(resource_interval, "RESOURCE_POLL_INTERVAL", 5),
            should_poll=self._box_is_active,
            watch=(EntityKind.BOX,),
        )
        self.logs = StatusSynchronizer(
            EntityKind.LOGS,
            api.get_viewer_logs,
            self.store,
            interval=_env_seconds(logs_interval, "LOGS_POLL_INTERVAL", 30),
            should_poll=self._viewer_exists,
            watch=(EntityKind.VIEWER,),
        )
        self.chat = ChatStreamSelector(
            self.store,
            api.get_chat,
            interval=_env_seconds(chat_interval, "CHAT_POLL_INTERVAL", 30),
        )

        self._tabs: Dict[str, TabLifecycleManager] = {}
        self._lists = PollScheduler(name="lists")
        self._lists_cancel = None
        self._task_group: set[asyncio.Task[Any]] = set()
        self._shutting_down = False

    def _removed(self, kind: EntityKind):
        return lambda entity_id: self.store.was_removed(kind, entity_id)

    def _box_is_active(self, box_id: str) -> bool:
        box = self.store.box(box_id)
        return bool(box and box.status.is_active)

    def _viewer_exists(self, viewer_id: str) -> bool:
        return not self.store.was_removed(EntityKind.VIEWER, viewer_id)

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, *, with_lists: bool = True, with_system: bool = True) -> None:
        self._shutting_down = False
        await asyncio.gather(self.refresh_boxes(), self.refresh_viewers())
        if with_lists:
            # the listings were just loaded; the loop picks up one interval later
            self._lists_cancel = self._lists.start(
                self._fetch_lists,
                self._apply_lists,
                self.list_interval,
                delay=self.list_interval,
            )
        if with_system:
            self.system.subscribe(SYSTEM_ID)
        self.chat.refresh()

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        if self._lists_cancel:
            self._lists_cancel()
            self._lists_cancel = None
        await self._lists.stop()
        for sync in (self.boxes, self.viewers, self.system, self.resources, self.logs):
            await sync.aclose()
        await self.chat.close()
        tasks = list(self._task_group)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task_group.clear()

    def _track_task(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._task_group.add(task)
        task.add_done_callback(self._task_group.discard)
        return task

    # ------------------------------------------------------------------
    # Collections
    async def _fetch_lists(self) -> List[Any]:
        return await asyncio.gather(
            self.api.list_boxes(), self.api.list_viewers(), return_exceptions=True
        )

    def _apply_lists(self, error: Optional[BaseException], data: Any) -> None:
        if error is not None:
            data = [error, error]
        for kind, result in zip((EntityKind.BOX, EntityKind.VIEWER), data):
            self._apply_collection(kind, result)

    def _apply_collection(self, kind: EntityKind, result: Any) -> None:
        if isinstance(result, BaseException):
            self.store.set_error(kind, COLLECTION_ID, str(result) or type(result).__name__)
            logger.warning("listing %ss failed: %s", kind.value, result)
            return
        self.store.sync_collection(kind, result or [])
        self.store.clear_error(kind, COLLECTION_ID)

    async def refresh_boxes(self) -> None:
        try:
            result: Any = await self.api.list_boxes()
        except FleetApiError as e:
            result = e
        self._apply_collection(EntityKind.BOX, result)

    async def refresh_viewers(self) -> None:
        try:
            result: Any = await self.api.list_viewers()
        except FleetApiError as e:
            result = e
        self._apply_collection(EntityKind.VIEWER, result)

    def _refresh_later(self) -> None:
        async def later() -> None:
            await asyncio.sleep(self.refresh_delay)
            await asyncio.gather(self.refresh_boxes(), self.refresh_viewers())

        self._track_task(later())

    # ------------------------------------------------------------------
    # Detail views
    async def load_box(self, box_id: str) -> Optional[Box]:
        try:
            data = await self.api.get_box(box_id)
        except FleetApiError as e:
            self.store.set_error(EntityKind.BOX, box_id, e.message)
            logger.warning("loading box %s failed: %s", box_id, e)
            return self.store.box(box_id)
        self.store.clear_error(EntityKind.BOX, box_id)
        return self.store.merge(EntityKind.BOX, box_id, data)

    async def load_viewer(self, viewer_id: str) -> Optional[Viewer]:
        try:
            data = await self.api.get_viewer(viewer_id)
        except FleetApiError as e:
            self.store.set_error(EntityKind.VIEWER, viewer_id, e.message)
            logger.warning("loading viewer %s failed: %s", viewer_id, e)
            return self.store.viewer(viewer_id)
        self.store.clear_error(EntityKind.VIEWER, viewer_id)
        return self.store.merge(EntityKind.VIEWER, viewer_id, data)

    async def open_box(self, box_id: Optional[str]) -> Optional[Box]:
        # release the old detail id before anything else
        self.boxes.focus(None)
        self.resources.focus(None)
        if box_id is None:
            return None
        box = await self.load_box(box_id)
        self.boxes.focus(box_id)
        self.resources.focus(box_id)
        return box

    async def open_viewer(self, viewer_id: Optional[str]) -> Optional[Viewer]:
        self.viewers.focus(None)
        self.logs.focus(None)
        if viewer_id is None:
            return None
        viewer = await self.load_viewer(viewer_id)
        self.viewers.focus(viewer_id)
        self.logs.focus(viewer_id)
        return viewer

    def tabs(self, viewer_id: str) -> TabLifecycleManager:
        manager = self._tabs.get(viewer_id)
        if manager is None:
            manager = TabLifecycleManager(viewer_id, self.store, self.api)
            self._tabs[viewer_id] = manager
        return manager

    # ------------------------------------------------------------------
    # Derived state
    def stats(self) -> FleetStats:
        return self.store.stats()

    def streams(self):
        return group_streams(self.store.viewers())

    def box_severity(self, box_id: str) -> Optional[Severity]:
        snapshot = self.store.resources(box_id)
        if snapshot is None:
            return None
        box = self.store.box(box_id)
        limits = (
            snapshot.resource_limits
            or (box.resource_limits if box else None)
            or DEFAULT_BOX_LIMITS
        )
        return severity(snapshot, limits, self.thresholds)

    def viewer_severity(self, viewer_id: str) -> Optional[Severity]:
        viewer = self.store.viewer(viewer_id)
        if viewer is None or viewer.resources is None:
            return None
        return severity(viewer.resources, viewer.resource_limits, self.thresholds)

    # ------------------------------------------------------------------
    # Actions. Rejections (4xx) are raised to the caller only.
    async def _call(self, label: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except FleetApiError as e:
            logger.error("%s failed: %s", label, e.message)
            raise

    async def create_box(self, data: BoxCreate) -> Box:
        created = await self._call("create box", self.api.create_box(data))
        box_id = snapshot_id(created)
        if not box_id:
            logger.error("create box returned no id: %r", created)
            raise FleetApiError("create box response carried no id", path="/boxes")
        return self.store.merge(EntityKind.BOX, box_id, created)

    async def update_box(self, box_id: str, data: BoxUpdate) -> Box:
        updated = await self._call("update box", self.api.update_box(box_id, data))
        return self.store.merge(EntityKind.BOX, box_id, updated)

    async def delete_box(self, box_id: str) -> None:
        """Delete a box; its viewers go with it, as they do on the backend."""

        await self._call("delete box", self.api.delete_box(box_id))
        box = self.store.box(box_id)
        viewer_ids = {v.id for v in self.store.viewers_of(box_id)}
        if box is not None:
            viewer_ids.update(v for v in box.viewers if self.store.viewer(v))
        if self.boxes.focused == box_id:
            await self.open_box(None)
        if self.viewers.focused in viewer_ids:
            await self.open_viewer(None)
        for viewer_id in sorted(viewer_ids):
            self.store.remove(EntityKind.VIEWER, viewer_id)
            self.store.remove(EntityKind.LOGS, viewer_id)
            self._tabs.pop(viewer_id, None)
        self.store.remove(EntityKind.BOX, box_id)
        self.store.remove(EntityKind.RESOURCES, box_id)

    async def start_box(self, box_id: str) -> Any:
        result = await self._call("start box", self.api.start_box(box_id))
        self.store.merge(EntityKind.BOX, box_id, {"status": EntityStatus.STARTING})
        self._refresh_later()
        return result

    async def stop_box(self, box_id: str) -> Any:
        result = await self._call("stop box", self.api.stop_box(box_id))
        self.store.merge(EntityKind.BOX, box_id, {"status": EntityStatus.STOPPING})
        self._refresh_later()
        return result

    async def refresh_box_ip(self, box_id: str) -> Any:
        result = await self._call("refresh box ip", self.api.refresh_box_ip(box_id))
        if isinstance(result, dict):
            fields = {k: result[k] for k in ("ipAddress", "location") if k in result}
            if fields:
                self.store.merge(EntityKind.BOX, box_id, fields)
        return result

    async def update_box_resource_limits(
        self, box_id: str, limits: ResourceLimitsUpdate
    ) -> Any:
        result = await self._call(
            "update resource limits", self.api.update_box_resource_limits(box_id, limits)
        )
        self.store.merge(
            EntityKind.BOX, box_id, {"resourceLimits": result or limits.to_payload()}
        )
        return result

    async def update_viewer(self, viewer_id: str, data: ViewerUpdate) -> Viewer:
        updated = await self._call("update viewer", self.api.update_viewer(viewer_id, data))
        return self.store.merge(EntityKind.VIEWER, viewer_id, updated)

    async def set_max_tabs(self, viewer_id: str, max_tabs: int) -> Viewer:
        return await self._call("set max tabs", self.tabs(viewer_id).set_max_tabs(max_tabs))

    async def stop_viewer(self, viewer_id: str) -> Any:
        result = await self._call("stop viewer", self.api.stop_viewer(viewer_id))
        self.store.merge(EntityKind.VIEWER, viewer_id, {"status": EntityStatus.STOPPING})
        self._refresh_later()
        return result

    async def load_resource_manager(self) -> Any:
        data = await self._call(
            "load resource manager", self.api.get_resource_manager_metrics()
        )
        self.store.merge(EntityKind.SYSTEM, SYSTEM_ID, {"resourceManager": data})
        return data

    async def update_resource_config(self, config: ResourceManagerConfigUpdate) -> Any:
        return await self._call(
            "update resource config", self.api.update_resource_manager_config(config)
        )

    async def trigger_resource_check(self) -> Any:
        return await self._call("resource check", self.api.trigger_resource_check())

    async def stop_idle_viewers(self, force: bool = False) -> Any:
        return await self._call("stop idle viewers", self.api.stop_idle_viewers(force))
