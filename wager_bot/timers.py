from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

log = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[object]]


class DeferredTasks:
    """Delayed coroutines keyed by an id; rescheduling replaces the pending one."""

    def __init__(self, *, sleep: Sleeper = asyncio.sleep) -> None:
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[object]],
    ) -> asyncio.Task[None]:
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        return task

    async def _run(
        self, key: str, delay: float, callback: Callable[[], Awaitable[object]]
    ) -> None:
        try:
            await self._sleep(delay)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:  # pylint: disable=broad-except
            log.exception("Deferred task %s failed", key)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                self._tasks.pop(key, None)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for key in list(self._tasks):
            if self.cancel(key):
                cancelled += 1
        return cancelled

    def pending(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    async def drain(self) -> None:
        """Wait for every pending task (used in tests and on shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def __contains__(self, key: object) -> bool:
        return key in self._tasks and not self._tasks[key].done()  # type: ignore[index]

    def __len__(self) -> int:
        return len(self.pending())


__all__ = ["DeferredTasks", "Sleeper"]
