# fleetsync/dashboard/store.py
# Purpose: Central in-memory mirror of fleet state, mutated only through merge.

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Type

from pydantic import BaseModel

from models.entities import (
    Box,
    ChatMessage,
    EntityStatus,
    FleetStats,
    LogEntry,
    ResourceSnapshot,
    SystemMetrics,
    Tab,
    Viewer,
)

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    BOX = "box"
    VIEWER = "viewer"
    SYSTEM = "system"
    RESOURCES = "resources"
    LOGS = "logs"
    CHAT = "chat"


SYSTEM_ID = "system"
# error slot for whole-collection fetches (GET /boxes, GET /viewers)
COLLECTION_ID = "*"

_RECORD_MODELS: Dict[EntityKind, Type[BaseModel]] = {
    EntityKind.BOX: Box,
    EntityKind.VIEWER: Viewer,
    EntityKind.SYSTEM: SystemMetrics,
    EntityKind.RESOURCES: ResourceSnapshot,
}
_LIST_MODELS: Dict[EntityKind, Type[BaseModel]] = {
    EntityKind.LOGS: LogEntry,
    EntityKind.CHAT: ChatMessage,
}

Listener = Callable[[EntityKind, str], None]


def _snapshot_fields(snapshot: Any) -> Dict[str, Any]:
    if isinstance(snapshot, BaseModel):
        return snapshot.model_dump(exclude_unset=True)
    if isinstance(snapshot, Mapping):
        return dict(snapshot)
    raise TypeError(f"snapshot must be a mapping, got {type(snapshot).__name__}")


def snapshot_id(snapshot: Any) -> Optional[str]:
    if isinstance(snapshot, BaseModel):
        return getattr(snapshot, "id", None)
    if isinstance(snapshot, Mapping):
        return snapshot.get("_id") or snapshot.get("id")
    return None


class EntityStore:
    """Holds boxes, viewers, metrics and per-viewer client state.

    Records are replaced, never mutated in place: each merge builds a new model
    from the current record plus the fields present in the snapshot. The
    active-tab pointer lives beside the records so no server payload can
    overwrite it, and it is re-clamped after every viewer merge.
    """

    def __init__(self) -> None:
        self._records: Dict[EntityKind, Dict[str, BaseModel]] = {
            kind: {} for kind in _RECORD_MODELS
        }
        self._lists: Dict[EntityKind, Dict[str, List[BaseModel]]] = {
            kind: {} for kind in _LIST_MODELS
        }
        self._active_tab: Dict[str, int] = {}
        self._errors: Dict[Tuple[EntityKind, str], str] = {}
        self._viewer_box: Dict[str, str] = {}
        # ids dropped by remove(), until a snapshot brings them back
        self._removed: Set[Tuple[EntityKind, str]] = set()
        self._listeners: List[Listener] = []
        self.version = 0

    # ------------------------------------------------------------------
    # Listeners
    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: Listener) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def _notify(self, kind: EntityKind, entity_id: str) -> None:
        self.version += 1
        for fn in list(self._listeners):
            try:
                fn(kind, entity_id)
            except Exception:
                logger.exception("store listener failed for %s:%s", kind.value, entity_id)

    # ------------------------------------------------------------------
    # Mutations
    def merge(self, kind: EntityKind | str, entity_id: str, snapshot: Any) -> Any:
        """Apply a (possibly partial) server snapshot to one record.

        Fields present in the snapshot replace the stored ones wholesale
        (nested objects and the tab array included); absent fields are kept.
        List kinds (logs, chat) are replaced as a whole.
        """

        kind = EntityKind(kind)
        if kind in _LIST_MODELS:
            return self._replace_list(kind, entity_id, snapshot)

        model = _RECORD_MODELS[kind]
        fields = _snapshot_fields(snapshot)
        if "id" in model.model_fields:
            fields.pop("_id", None)
            fields["id"] = entity_id
        parsed = model.model_validate(fields)

        current = self._records[kind].get(entity_id)
        if current is None:
            merged = parsed
        else:
            update = {name: getattr(parsed, name) for name in parsed.model_fields_set}
            merged = current.model_copy(update=update)
        self._records[kind][entity_id] = merged
        self._removed.discard((kind, entity_id))

        if kind is EntityKind.VIEWER:
            self._index_viewer(merged)  # type: ignore[arg-type]
            self._clamp_active_tab(entity_id)
        elif kind is EntityKind.BOX and "viewers" in parsed.model_fields_set:
            for viewer_id in merged.viewers:  # type: ignore[attr-defined]
                self._viewer_box[viewer_id] = entity_id
        self._notify(kind, entity_id)
        return merged

    def _replace_list(self, kind: EntityKind, key: str, items: Any) -> List[BaseModel]:
        model = _LIST_MODELS[kind]
        if items is None:
            items = []
        if not isinstance(items, list):
            raise TypeError(f"{kind.value} snapshot must be a list")
        parsed = [model.model_validate(item) for item in items]
        self._lists[kind][key] = parsed
        self._notify(kind, key)
        return parsed

    def sync_collection(self, kind: EntityKind | str, snapshots: List[Any]) -> List[str]:
        """Merge a full listing and drop records the listing no longer has."""

        kind = EntityKind(kind)
        seen: List[str] = []
        for snap in snapshots or []:
            entity_id = snapshot_id(snap)
            if not entity_id:
                logger.warning("skipping %s without id in listing", kind.value)
                continue
            self.merge(kind, entity_id, snap)
            seen.append(entity_id)
        for stale in set(self._records[kind]) - set(seen):
            self.remove(kind, stale)
        return seen

    def remove(self, kind: EntityKind | str, entity_id: str) -> None:
        kind = EntityKind(kind)
        if kind in _LIST_MODELS:
            self._lists[kind].pop(entity_id, None)
        elif self._records[kind].pop(entity_id, None) is not None:
            self._removed.add((kind, entity_id))
        self._errors.pop((kind, entity_id), None)
        if kind is EntityKind.VIEWER:
            self._active_tab.pop(entity_id, None)
            self._viewer_box.pop(entity_id, None)
        elif kind is EntityKind.BOX:
            for viewer_id, box_id in list(self._viewer_box.items()):
                if box_id == entity_id:
                    del self._viewer_box[viewer_id]
        self._notify(kind, entity_id)

    def set_error(self, kind: EntityKind | str, entity_id: str, message: str) -> None:
        self._errors[(EntityKind(kind), entity_id)] = message

    def clear_error(self, kind: EntityKind | str, entity_id: str) -> None:
        self._errors.pop((EntityKind(kind), entity_id), None)

    # ------------------------------------------------------------------
    # Client-owned tab pointer
    def set_active_tab(
        self, viewer_id: str, index: Optional[int], *, clamp: bool = False
    ) -> Optional[int]:
        viewer = self.viewer(viewer_id)
        if viewer is None:
            raise KeyError(f"unknown viewer {viewer_id}")
        count = len(viewer.tabs)
        if count == 0:
            if index is not None and not clamp:
                raise IndexError("viewer has no tabs")
            self._active_tab.pop(viewer_id, None)
        else:
            if index is None:
                index = 0
            if not 0 <= index < count:
                if not clamp:
                    raise IndexError(f"tab {index} out of range 0..{count - 1}")
                index = max(0, min(index, count - 1))
            self._active_tab[viewer_id] = index
        self._notify(EntityKind.VIEWER, viewer_id)
        return self._active_tab.get(viewer_id)

    def _clamp_active_tab(self, viewer_id: str) -> None:
        count = len(self.tabs(viewer_id))
        pointer = self._active_tab.get(viewer_id)
        if count == 0:
            self._active_tab.pop(viewer_id, None)
        elif pointer is None:
            self._active_tab[viewer_id] = 0
        elif pointer > count - 1:
            self._active_tab[viewer_id] = count - 1

    def _index_viewer(self, viewer: Viewer) -> None:
        if viewer.box_id:
            self._viewer_box[viewer.id] = viewer.box_id

    # ------------------------------------------------------------------
    # Reads
    def get(self, kind: EntityKind | str, entity_id: str) -> Any:
        kind = EntityKind(kind)
        if kind in _LIST_MODELS:
            return self._lists[kind].get(entity_id)
        return self._records[kind].get(entity_id)

    def box(self, box_id: str) -> Optional[Box]:
        return self._records[EntityKind.BOX].get(box_id)  # type: ignore[return-value]

    def viewer(self, viewer_id: str) -> Optional[Viewer]:
        return self._records[EntityKind.VIEWER].get(viewer_id)  # type: ignore[return-value]

    def boxes(self) -> List[Box]:
        return list(self._records[EntityKind.BOX].values())  # type: ignore[arg-type]

    def viewers(self) -> List[Viewer]:
        return list(self._records[EntityKind.VIEWER].values())  # type: ignore[arg-type]

    def system(self) -> Optional[SystemMetrics]:
        return self._records[EntityKind.SYSTEM].get(SYSTEM_ID)  # type: ignore[return-value]

    def resources(self, box_id: str) -> Optional[ResourceSnapshot]:
        return self._records[EntityKind.RESOURCES].get(box_id)  # type: ignore[return-value]

    def logs(self, viewer_id: str) -> List[LogEntry]:
        return list(self._lists[EntityKind.LOGS].get(viewer_id, []))  # type: ignore[arg-type]

    def chat(self, stream_url: Optional[str]) -> List[ChatMessage]:
        if not stream_url:
            return []
        return list(self._lists[EntityKind.CHAT].get(stream_url, []))  # type: ignore[arg-type]

    def tabs(self, viewer_id: str) -> List[Tab]:
        viewer = self.viewer(viewer_id)
        return list(viewer.tabs) if viewer else []

    def active_tab_index(self, viewer_id: str) -> Optional[int]:
        return self._active_tab.get(viewer_id)

    def was_removed(self, kind: EntityKind | str, entity_id: str) -> bool:
        return (EntityKind(kind), entity_id) in self._removed

    def error(self, kind: EntityKind | str, entity_id: str) -> Optional[str]:
        return self._errors.get((EntityKind(kind), entity_id))

    def box_of(self, viewer_id: str) -> Optional[str]:
        return self._viewer_box.get(viewer_id)

    def viewers_of(self, box_id: str) -> List[Viewer]:
        return [v for v in self.viewers() if self._viewer_box.get(v.id) == box_id]

    def stats(self) -> FleetStats:
        boxes = self.boxes()
        viewers = self.viewers()
        return FleetStats(
            total_boxes=len(boxes),
            active_boxes=sum(1 for b in boxes if b.status == EntityStatus.RUNNING),
            error_boxes=sum(1 for b in boxes if b.status == EntityStatus.ERROR),
            total_viewers=len(viewers),
            active_viewers=sum(1 for v in viewers if v.status == EntityStatus.RUNNING),
            error_viewers=sum(1 for v in viewers if v.status == EntityStatus.ERROR),
        )
