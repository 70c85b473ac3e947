# fleetsync/runtime/scheduler.py
# Purpose: Cancellable self-rescheduling poll loop with a generation counter.

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]
ResultFn = Callable[[Optional[BaseException], Any], Any]


class SchedulerError(Exception): ...


class PollScheduler:
    """Runs ``fetch`` forever, one call at a time.

    The next call is scheduled ``interval`` seconds after the previous one
    settles, so a slow backend never builds a backlog. Every ``start`` opens a
    new generation; results from an older generation are dropped, which is how
    a fetch that was already in flight at cancel time gets discarded.
    """

    def __init__(self, name: str = "poll"):
        self.name = name
        self._generation = 0
        self._live = False
        self._sleeping: Optional[int] = None
        self._task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._live

    @property
    def generation(self) -> int:
        return self._generation

    def start(
        self,
        fetch: FetchFn,
        on_result: ResultFn,
        interval: float,
        *,
        delay: float = 0.0,
    ) -> Callable[[], None]:
        """Begin polling; the first fetch runs after ``delay`` seconds.

        A loop cancelled while its fetch was still awaiting keeps that fetch
        until it settles; the new loop waits for it before fetching, so an
        instance never has two requests in flight.
        """

        if self._live:
            raise SchedulerError(f"{self.name}: loop already running")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._generation += 1
        self._live = True
        generation = self._generation
        previous = self._task if self._task and not self._task.done() else None
        task = asyncio.create_task(
            self._loop(generation, fetch, on_result, interval, delay, previous),
            name=f"{self.name}#{generation}",
        )
        self._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        def cancel() -> None:
            self._cancel(generation)

        return cancel

    def cancel(self) -> None:
        self._cancel(self._generation)

    def _cancel(self, generation: int) -> None:
        # stale or repeated handles are no-ops
        if generation != self._generation or not self._live:
            return
        self._generation += 1
        self._live = False
        if self._task and self._sleeping == generation:
            self._task.cancel()

    async def stop(self) -> None:
        """Cancel and wait for every loop task to finish, aborting any fetch."""

        self.cancel()
        self._task = None
        tasks = [t for t in self._tasks if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _is_current(self, generation: int) -> bool:
        return self._live and generation == self._generation

    async def _sleep(self, generation: int, seconds: float) -> None:
        self._sleeping = generation
        try:
            await asyncio.sleep(seconds)
        finally:
            if self._sleeping == generation:
                self._sleeping = None

    async def _loop(
        self,
        generation: int,
        fetch: FetchFn,
        on_result: ResultFn,
        interval: float,
        delay: float,
        previous: Optional[asyncio.Task[None]],
    ) -> None:
        try:
            if previous is not None:
                await asyncio.wait({previous})
            if delay > 0 and self._is_current(generation):
                await self._sleep(generation, delay)
            while self._is_current(generation):
                error: Optional[BaseException] = None
                data: Any = None
                try:
                    data = await fetch()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    error = e
                if not self._is_current(generation):
                    logger.debug("%s: dropping result of cancelled loop", self.name)
                    break
                self.ticks += 1
                await self._deliver(on_result, error, data)
                if not self._is_current(generation):
                    break
                await self._sleep(generation, interval)
        except asyncio.CancelledError:
            pass

    async def _deliver(
        self, on_result: ResultFn, error: Optional[BaseException], data: Any
    ) -> None:
        try:
            result = on_result(error, data)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: result handler failed", self.name)
