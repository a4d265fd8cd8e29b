from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any] | Any]


class SerialQueue:
    """Runs enqueued jobs one at a time, in arrival order.

    Each job is chained onto the previous one and starts only after it has
    settled, whether it succeeded or failed. A failing job is logged and does
    not affect the jobs behind it. Plain callables run in the default executor
    so blocking disk I/O stays off the event loop.
    """

    def __init__(self, name: str = "serial-queue") -> None:
        self.name = name
        self._tail: asyncio.Future | None = None
        self.completed = 0
        self.failed = 0

    def enqueue(self, job: Job) -> asyncio.Task:
        previous = self._tail
        task = asyncio.ensure_future(self._run(previous, job))
        self._tail = task
        return task

    async def _run(self, previous: asyncio.Future | None, job: Job) -> None:
        if previous is not None:
            # Jobs never raise out of _run, but a cancelled predecessor does.
            await asyncio.gather(previous, return_exceptions=True)
        try:
            if inspect.iscoroutinefunction(job):
                await job()
            else:
                result = await asyncio.get_running_loop().run_in_executor(None, job)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            self.failed += 1
            logger.warning("%s job failed: %s", self.name, exc, exc_info=True)
        finally:
            self.completed += 1

    @property
    def idle(self) -> bool:
        return self._tail is None or self._tail.done()

    async def drain(self) -> None:
        """Wait until every job enqueued so far has settled."""
        while self._tail is not None and not self._tail.done():
            await asyncio.gather(self._tail, return_exceptions=True)
