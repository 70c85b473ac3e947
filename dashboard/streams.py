# fleetsync/dashboard/streams.py
# Purpose: Streams derived from the viewer slice, and the chat poll selection.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from dashboard.store import EntityKind, EntityStore
from models.entities import ChatMessage, EntityStatus, Viewer
from runtime.scheduler import PollScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatStream:
    url: str
    name: str


@dataclass
class StreamGroup:
    url: str
    name: str
    viewer_ids: List[str] = field(default_factory=list)


def stream_name(url: str, streamer: Optional[str] = None) -> str:
    if streamer:
        return streamer
    return url.rstrip("/").rsplit("/", 1)[-1]


def eligible_streams(viewers: Iterable[Viewer]) -> List[ChatStream]:
    """Distinct stream URLs with at least one running, chat-parsing viewer.

    Order follows the first viewer seen for each URL, which also supplies the
    display name.
    """

    found: Dict[str, ChatStream] = {}
    for v in viewers:
        if v.status != EntityStatus.RUNNING or not v.chat_parsing_enabled:
            continue
        if not v.stream_url or v.stream_url in found:
            continue
        found[v.stream_url] = ChatStream(v.stream_url, stream_name(v.stream_url, v.streamer))
    return list(found.values())


def group_streams(viewers: Iterable[Viewer]) -> List[StreamGroup]:
    """Running viewers grouped by the stream they watch."""

    groups: Dict[str, StreamGroup] = {}
    for v in viewers:
        if v.status != EntityStatus.RUNNING or not v.stream_url:
            continue
        group = groups.get(v.stream_url)
        if group is None:
            group = StreamGroup(v.stream_url, stream_name(v.stream_url, v.streamer))
            groups[v.stream_url] = group
        group.viewer_ids.append(v.id)
    return list(groups.values())


class ChatStreamSelector:
    """Keeps one chat poll loop pointed at a stream that is still eligible."""

    def __init__(
        self,
        store: EntityStore,
        fetch_chat: Callable[[str], Awaitable[Any]],
        *,
        interval: float = 30.0,
    ):
        self.store = store
        self.fetch_chat = fetch_chat
        self.interval = interval
        self._scheduler = PollScheduler(name="chat")
        self._cancel: Optional[Callable[[], None]] = None
        self._selected: Optional[str] = None
        self._streams: List[ChatStream] = []
        self._closed = False
        store.add_listener(self._on_store_change)

    @property
    def streams(self) -> List[ChatStream]:
        return list(self._streams)

    @property
    def selected(self) -> Optional[str]:
        return self._selected

    @property
    def polling(self) -> bool:
        return self._scheduler.running

    def messages(self) -> List[ChatMessage]:
        return self.store.chat(self._selected)

    def error(self) -> Optional[str]:
        if not self._selected:
            return None
        return self.store.error(EntityKind.CHAT, self._selected)

    def refresh(self) -> Optional[str]:
        """Re-derive the eligible set and fall back if the selection left it."""

        self._streams = eligible_streams(self.store.viewers())
        urls = [s.url for s in self._streams]
        if self._selected in urls:
            target = self._selected
        else:
            target = urls[0] if urls else None
        if target != self._selected or (target and not self._scheduler.running):
            self._switch(target)
        return self._selected

    def select(self, url: str) -> None:
        if url not in [s.url for s in self._streams]:
            raise ValueError(f"stream not eligible for chat monitoring: {url}")
        if url != self._selected:
            self._switch(url)

    def _switch(self, url: Optional[str]) -> None:
        if self._cancel:
            self._cancel()
            self._cancel = None
        self._selected = url
        if url is None or self._closed:
            return

        async def fetch() -> Any:
            return await self.fetch_chat(url)

        def on_result(error: Optional[BaseException], data: Any) -> None:
            if error is not None:
                self.store.set_error(EntityKind.CHAT, url, str(error))
                logger.warning("chat poll for %s failed: %s", url, error)
                return
            self.store.merge(EntityKind.CHAT, url, data)
            self.store.clear_error(EntityKind.CHAT, url)

        self._cancel = self._scheduler.start(fetch, on_result, self.interval)
        logger.info("monitoring chat for %s", url)

    def _on_store_change(self, kind: EntityKind, entity_id: str) -> None:
        if kind is EntityKind.VIEWER and not self._closed:
            self.refresh()

    async def close(self) -> None:
        self._closed = True
        self.store.remove_listener(self._on_store_change)
        if self._cancel:
            self._cancel()
            self._cancel = None
        await self._scheduler.stop()
