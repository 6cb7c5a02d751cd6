"""
Low-priority task queue, drained only while no foreground work is running.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Hashable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[None]]


class IdleTaskScheduler:
    def __init__(self) -> None:
        self._queue: deque[tuple[Hashable, TaskFactory]] = deque()
        self._queued: set[Hashable] = set()
        self._busy = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> list[Hashable]:
        return [key for key, _ in self._queue]

    @contextmanager
    def foreground(self) -> Iterator[None]:
        """
        Hold back idle work while the block runs.
        """
        self._busy += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._busy -= 1
            if self._busy == 0:
                self._idle.set()

    def schedule(self, key: Hashable, factory: TaskFactory) -> bool:
        """
        Queue ``factory`` unless a task with the same key is already waiting.
        """
        if key in self._queued:
            return False
        self._queue.append((key, factory))
        self._queued.add(key)
        self._ensure_worker()
        return True

    async def drain(self) -> None:
        while self._worker is not None:
            await asyncio.wait({self._worker})

    async def aclose(self) -> None:
        self._queue.clear()
        self._queued.clear()
        worker = self._worker
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)

    def _ensure_worker(self) -> None:
        if self._worker is not None:
            return
        worker = asyncio.get_running_loop().create_task(self._run())

        def _cleanup(t: asyncio.Task) -> None:
            if self._worker is t:
                self._worker = None
            # work queued after the loop exited but before cleanup
            if self._queue and not t.cancelled():
                self._ensure_worker()

        worker.add_done_callback(_cleanup)
        self._worker = worker

    async def _run(self) -> None:
        while self._queue:
            await self._idle.wait()
            if not self._queue:
                break
            key, factory = self._queue.popleft()
            self._queued.discard(key)
            try:
                await factory()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("idle task %r failed", key)
