import asyncio
from typing import Any, Coroutine, Set

from litestar.types.protocols import Logger


class TaskTracker:
    """
    Owner of fire-and-forget side effects.

    Message-log writes and idle-warning resets, which never gate the reply, are spawned
    here instead of awaited by the turn. The tracker keeps a strong reference
    to every pending task, logs failures at warning, and never re-raises them.
    On shutdown, drain() waits a bounded time for pending tasks and cancels
    the rest.
    """

    def __init__(self, logger: Logger):
        self.logger = logger
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            self.logger.warning(f"Background task {task.get_name()} failed: {exc!r}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 5.0) -> None:
        if not self._tasks:
            return

        tasks = list(self._tasks)
        done, still_pending = await asyncio.wait(tasks, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            self.logger.warning(f"Cancelled {len(still_pending)} background tasks at shutdown")
        self.logger.info(f"Drained {len(done)} background tasks")
