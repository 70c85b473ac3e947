# fleetsync/runtime/synchronizer.py
# Purpose: One poll loop per subscribed entity id, feeding the entity store.

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from dashboard.store import EntityKind, EntityStore
from runtime.scheduler import PollScheduler

logger = logging.getLogger(__name__)


def status_gate(
    lookup: Callable[[str], Any],
    removed: Optional[Callable[[str], bool]] = None,
) -> Callable[[str], bool]:
    """Poll while the record's status is active. Records not loaded yet are
    polled so their status can be learned; records the store dropped are not."""

    def should_poll(entity_id: str) -> bool:
        record = lookup(entity_id)
        if record is None:
            return not (removed and removed(entity_id))
        return record.status.is_active

    return should_poll


class StatusSynchronizer:
    def __init__(
        self,
        kind: EntityKind | str,
        fetch: Callable[[str], Awaitable[Any]],
        store: EntityStore,
        *,
        interval: float,
        should_poll: Optional[Callable[[str], bool]] = None,
        watch: Iterable[EntityKind] = (),
    ):
        self.kind = EntityKind(kind)
        self.fetch = fetch
        self.store = store
        self.interval = interval
        self.should_poll = should_poll
        self._watch = {self.kind, *(EntityKind(k) for k in watch)}
        self._subs: Dict[str, int] = {}
        self._loops: Dict[str, Tuple[PollScheduler, Callable[[], None]]] = {}
        self._focused: Optional[str] = None
        self._closed = False
        store.add_listener(self._on_store_change)

    # ------------------------------------------------------------------
    # Subscriptions
    def subscribe(self, entity_id: str) -> Callable[[], None]:
        """Register interest in ``entity_id``; returns an idempotent release."""

        self._subs[entity_id] = self._subs.get(entity_id, 0) + 1
        self._reconcile(entity_id)
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self.unsubscribe(entity_id)

        return release

    def unsubscribe(self, entity_id: str) -> None:
        count = self._subs.get(entity_id, 0)
        if count <= 1:
            self._subs.pop(entity_id, None)
        else:
            self._subs[entity_id] = count - 1
        self._reconcile(entity_id)

    def focus(self, entity_id: Optional[str]) -> None:
        """Point the single detail slot at ``entity_id``.

        The previous id is released (and its loop cancelled) before the new
        one is subscribed, so the old loop can never write after the switch.
        """

        if entity_id == self._focused:
            return
        previous, self._focused = self._focused, entity_id
        if previous is not None:
            self.unsubscribe(previous)
        if entity_id is not None:
            self.subscribe(entity_id)

    @property
    def focused(self) -> Optional[str]:
        return self._focused

    def is_subscribed(self, entity_id: str) -> bool:
        return entity_id in self._subs

    def is_polling(self, entity_id: str) -> bool:
        return entity_id in self._loops

    @property
    def polling_ids(self) -> List[str]:
        return sorted(self._loops)

    def reconcile(self) -> None:
        for entity_id in list(self._subs) + list(self._loops):
            self._reconcile(entity_id)

    # ------------------------------------------------------------------
    def _wants_poll(self, entity_id: str) -> bool:
        if self._closed or entity_id not in self._subs:
            return False
        if self.should_poll is None:
            return True
        return bool(self.should_poll(entity_id))

    def _reconcile(self, entity_id: str) -> None:
        wanted = self._wants_poll(entity_id)
        live = entity_id in self._loops
        if wanted and not live:
            self._start(entity_id)
        elif live and not wanted:
            self._stop(entity_id)

    def _start(self, entity_id: str) -> None:
        scheduler = PollScheduler(name=f"{self.kind.value}:{entity_id}")

        async def fetch() -> Any:
            return await self.fetch(entity_id)

        def on_result(error: Optional[BaseException], data: Any) -> None:
            self._apply(entity_id, error, data)

        cancel = scheduler.start(fetch, on_result, self.interval)
        self._loops[entity_id] = (scheduler, cancel)
        logger.debug("polling %s:%s every %ss", self.kind.value, entity_id, self.interval)

    def _stop(self, entity_id: str) -> None:
        _, cancel = self._loops.pop(entity_id)
        cancel()
        logger.debug("stopped polling %s:%s", self.kind.value, entity_id)

    def _apply(self, entity_id: str, error: Optional[BaseException], data: Any) -> None:
        if error is not None:
            self.store.set_error(self.kind, entity_id, str(error) or type(error).__name__)
            logger.warning("poll %s:%s failed: %s", self.kind.value, entity_id, error)
            return
        try:
            self.store.merge(self.kind, entity_id, data)
        except (ValidationError, TypeError) as e:
            self.store.set_error(self.kind, entity_id, f"bad snapshot: {e}")
            logger.warning("poll %s:%s returned unusable data: %s", self.kind.value, entity_id, e)
            return
        self.store.clear_error(self.kind, entity_id)

    def _on_store_change(self, kind: EntityKind, entity_id: str) -> None:
        if kind in self._watch and (entity_id in self._subs or entity_id in self._loops):
            self._reconcile(entity_id)

    # ------------------------------------------------------------------
    async def aclose(self) -> None:
        self._closed = True
        self.store.remove_listener(self._on_store_change)
        loops = list(self._loops.values())
        self._loops.clear()
        for _, cancel in loops:
            cancel()
        if loops:
            await asyncio.gather(*(s.stop() for s, _ in loops), return_exceptions=True)
