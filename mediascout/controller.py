from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set


class WorkerPool:
    """Bounded pool of asyncio tasks processing jobs.

    The claim loop waits for a free slot before claiming a job, so a worker
    never holds more claimed jobs than it can run. stop() wakes any waiter,
    cancels in-flight tasks and waits for their cleanup to finish.
    """

    def __init__(self, limit: int) -> None:
        self._cv = asyncio.Condition()
        self._limit = max(1, int(limit))
        self._active = 0
        self._running = False
        self._tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        self._running = True

    async def wait_for_slot(self) -> bool:
        """Block until a slot is free; False once the pool is stopped."""
        async with self._cv:
            await self._cv.wait_for(lambda: not self._running or self._active < self._limit)
            return self._running

    async def submit(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Optional[asyncio.Task]:
        """Run `fn(*args)` as a task once a slot is free; None if the pool is stopped."""
        if not await self.wait_for_slot():
            return None
        async with self._cv:
            self._active += 1
        task = asyncio.create_task(self._wrap_task(fn, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _wrap_task(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await fn(*args)
        finally:
            async with self._cv:
                self._active = max(0, self._active - 1)
                self._cv.notify_all()

    async def stop(self, cancel: bool = True) -> None:
        async with self._cv:
            self._running = False
            self._cv.notify_all()
        tasks = list(self._tasks)
        if cancel:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active
