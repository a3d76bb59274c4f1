"""Spawn and supervise asyncio background tasks with error logging."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Coroutine

logger = logging.getLogger(__name__)


async def _execute_and_log_traceback(
    coro: Coroutine[Any, Any, None],
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine, logs the traceback,
    and re-raises the exception. Cancellation is not logged.
    """
    try:
        await coro
    except Exception:
        logger.error(traceback.format_exc())
        raise


class TaskSet:
    """Scope owning a group of background tasks.

    Every task spawned in the set is tracked until it finishes so the
    owner can cancel the remaining tasks and await their completion.
    Exceptions raised by a task are logged and stored on the task but are
    never propagated to sibling tasks or to the owner.

    Example:
        ```python
        tasks = TaskSet('proxy')
        tasks.spawn(handle(conn), name='session-1')
        ...
        await tasks.cancel()
        ```

    Args:
        name: Name used as a prefix for task names.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task[None]] = set()
        self._counter = 0

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> frozenset[asyncio.Task[None]]:
        """Tasks which have not finished yet."""
        return frozenset(self._tasks)

    def spawn(
        self,
        coro: Coroutine[Any, Any, None],
        name: str | None = None,
    ) -> asyncio.Task[None]:
        """Run a coroutine as a task owned by this set.

        Args:
            coro: Coroutine to run.
            name: Optional task name suffix. Defaults to a counter.

        Returns:
            Asyncio task handle.
        """
        self._counter += 1
        suffix = str(self._counter) if name is None else name
        task = asyncio.create_task(_execute_and_log_traceback(coro))
        task.set_name(f'{self.name}-{suffix}')
        self._tasks.add(task)
        task.add_done_callback(self._discard)
        return task

    def _discard(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        # Retrieve the exception so asyncio does not warn that it was
        # never retrieved. The traceback was already logged.
        if not task.cancelled():
            task.exception()

    async def wait(self) -> None:
        """Wait for every task currently in the set to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel(self) -> None:
        """Cancel every task in the set and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        await self.wait()
