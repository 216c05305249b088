"""In-flight request coalescing.

A burst of identical reads (re-render storms, several terminals opening the
same store) shares one backend round trip instead of multiplying it.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """Coalesces concurrent calls that share a key.

    A call joins the pending execution for its key when that execution is
    still running and started no more than ``window_seconds`` ago. With
    ``window_seconds=None`` a call joins for as long as the first one is
    outstanding. Keys are evicted as soon as their execution finishes, so a
    failure is shared by every waiter and the next call retries cleanly.
    """

    def __init__(
        self,
        window_seconds: Optional[float] = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._pending: Dict[str, Tuple["asyncio.Task", float]] = {}

    async def dedupe(self, key: str, produce: Callable[[], Awaitable[T]]) -> T:
        now = self._clock()
        existing = self._pending.get(key)
        if existing is not None:
            task, started_at = existing
            if not task.done() and self._within_window(now, started_at):
                logger.debug(f"Joining in-flight request: {key}")
                return await asyncio.shield(task)

        task = asyncio.ensure_future(produce())
        self._pending[key] = (task, now)
        task.add_done_callback(lambda t, k=key: self._evict(k, t))
        # Shield so one waiter giving up does not cancel the shared work
        return await asyncio.shield(task)

    def pending_count(self) -> int:
        return sum(1 for task, _ in self._pending.values() if not task.done())

    def _within_window(self, now: float, started_at: float) -> bool:
        return self.window_seconds is None or now - started_at <= self.window_seconds

    def _evict(self, key: str, task: "asyncio.Task") -> None:
        current = self._pending.get(key)
        if current is not None and current[0] is task:
            del self._pending[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Deduplicated request failed, key evicted: {key}")
