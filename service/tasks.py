# service/tasks.py
import asyncio
import logging
from typing import Set


class BackgroundTasks:
    """
    Holds references to fire-and-forget tasks until they finish and logs
    the ones that fail, instead of leaving "exception was never retrieved".
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._tasks: Set[asyncio.Future] = set()

    def spawn(self, coro, name: str) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(t, name))
        return task

    def _task_done(self, task: asyncio.Future, name: str):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            self.logger.error(f"{name} failed: {exc}", exc_info=exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self):
        """Wait for every pending task, including ones spawned meanwhile."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
