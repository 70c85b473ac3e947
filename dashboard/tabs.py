# fleetsync/dashboard/tabs.py
# Purpose: Per-viewer tab list actions and the active-tab pointer rules.

from __future__ import annotations

import logging
from typing import Any, List, Optional

from client.errors import TabLimitReached
from dashboard.store import EntityKind, EntityStore
from models.entities import Tab, Viewer
from models.updates import ViewerUpdate

logger = logging.getLogger(__name__)


def next_active_index(active: Optional[int], closed: int, remaining: int) -> Optional[int]:
    """Where the active pointer lands after tab ``closed`` goes away.

    Closing a tab left of the active one, or the active one itself (unless it
    is the first), moves the pointer one step left. The result is always a
    valid index into ``remaining`` tabs, or None when none are left.
    """

    if remaining <= 0:
        return None
    if active is None:
        return 0
    if closed < active or (closed == active and active > 0):
        active -= 1
    return max(0, min(active, remaining - 1))


class TabLifecycleManager:
    def __init__(self, viewer_id: str, store: EntityStore, api: Any):
        self.viewer_id = viewer_id
        self.store = store
        self.api = api

    def _viewer(self) -> Viewer:
        viewer = self.store.viewer(self.viewer_id)
        if viewer is None:
            raise KeyError(f"unknown viewer {self.viewer_id}")
        return viewer

    @property
    def tabs(self) -> List[Tab]:
        return self.store.tabs(self.viewer_id)

    @property
    def active_index(self) -> Optional[int]:
        return self.store.active_tab_index(self.viewer_id)

    @property
    def active_tab(self) -> Optional[Tab]:
        index = self.active_index
        tabs = self.tabs
        if index is None or index >= len(tabs):
            return None
        return tabs[index]

    def active_screenshot(self) -> Optional[str]:
        """Screenshot file of the active tab, else the viewer-level one."""

        tab = self.active_tab
        if tab and tab.last_screenshot_url:
            return tab.last_screenshot_url
        viewer = self.store.viewer(self.viewer_id)
        return viewer.last_screenshot_url if viewer else None

    def select(self, index: int) -> Optional[int]:
        return self.store.set_active_tab(self.viewer_id, index)

    async def reload(self) -> Viewer:
        data = await self.api.get_viewer(self.viewer_id)
        return self.store.merge(EntityKind.VIEWER, self.viewer_id, data)

    async def add_tab(self) -> Optional[int]:
        viewer = self._viewer()
        if len(viewer.tabs) >= viewer.max_tabs:
            raise TabLimitReached(
                f"viewer {self.viewer_id} already has {viewer.max_tabs} tab(s)"
            )
        await self.api.add_tab(self.viewer_id)
        await self.reload()
        count = len(self.tabs)
        if count:
            self.store.set_active_tab(self.viewer_id, count - 1)
        return self.active_index

    async def close_tab(self, index: int) -> Optional[int]:
        count = len(self.tabs)
        if not 0 <= index < count:
            raise IndexError(f"tab {index} out of range for {count} tab(s)")
        await self.api.close_tab(self.viewer_id, index)
        # the pointer may have moved while the request was in flight
        target = next_active_index(self.active_index, index, count - 1)
        self.store.set_active_tab(self.viewer_id, target, clamp=True)
        await self.reload()
        return self.active_index

    def _resolve(self, tab_index: Optional[int]) -> Optional[int]:
        # read the merged array now, not whatever the caller saw earlier
        count = len(self.tabs)
        if tab_index is None:
            return self.active_index if count else None
        if not 0 <= tab_index < count:
            raise IndexError(f"tab {tab_index} out of range for {count} tab(s)")
        return tab_index

    async def take_screenshot(self, tab_index: Optional[int] = None) -> Any:
        target = self._resolve(tab_index)
        if target is None:
            result = await self.api.take_screenshot(self.viewer_id)
        else:
            result = await self.api.take_tab_screenshot(self.viewer_id, target)
        await self.reload()
        return result

    async def force_lowest_quality(self, tab_index: Optional[int] = None) -> Any:
        target = self._resolve(tab_index)
        if target is None:
            raise IndexError(f"viewer {self.viewer_id} has no tabs")
        result = await self.api.force_tab_lowest_quality(self.viewer_id, target)
        await self.reload()
        return result

    async def set_max_tabs(self, max_tabs: int) -> Viewer:
        update = ViewerUpdate(max_tabs=max_tabs)
        data = await self.api.update_viewer(self.viewer_id, update)
        if not data:
            data = {"maxTabs": max_tabs}
        return self.store.merge(EntityKind.VIEWER, self.viewer_id, data)

    async def tab_stats(self) -> Any:
        return await self.api.get_tab_stats(self.viewer_id)
