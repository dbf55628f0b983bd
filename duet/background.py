"""Utilities for supervising background asyncio tasks.

Fire-and-forget work (generation after a step crossover, sliding session
extension, program generation) is submitted to a ``TaskRunner`` instead of
being left detached. The runner keeps a strong reference to every task until
it finishes, logs failures instead of letting them vanish, and can be drained
so callers (tests, shutdown) can wait for outstanding work deterministically.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from functools import partial
from typing import Awaitable, Callable, Optional, Any, Set

logger = logging.getLogger(__name__)


class TaskRunner:
    def __init__(self) -> None:
        # Track tasks so they are not garbage collected before finishing.
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable[Any], *, name: Optional[str] = None,
               on_error: Optional[Callable[[BaseException], None]] = None) -> asyncio.Task[Any]:
        """Create and supervise a background task.

        Args:
            coro: Awaitable coroutine to run in the background.
            name: Optional name for the task, used in logs.
            on_error: Optional callback invoked if the task raises.
        """
        task = asyncio.create_task(coro, name=name)  # type: ignore[arg-type]
        self._tasks.add(task)

        def _finished(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            try:
                t.result()
            except asyncio.CancelledError:
                logger.debug("Background task %s cancelled", name or t)
            except Exception as exc:  # noqa: BLE001
                if on_error:
                    try:
                        on_error(exc)
                    except Exception:  # noqa: BLE001
                        logger.exception("Error in on_error callback for task %s", name or t)
                logger.error("Background task %s failed", name or t, exc_info=exc)

        task.add_done_callback(_finished)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every submitted task, including ones submitted while
        waiting, has finished."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            await asyncio.wait(set(self._tasks), timeout=remaining)
            if deadline is not None and loop.time() >= deadline and self._tasks:
                raise asyncio.TimeoutError(f"{len(self._tasks)} background task(s) still running")
            # give done-callbacks a chance to run before re-checking
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


runner = TaskRunner()


def get_task_runner() -> TaskRunner:
    return runner



async def run_sync(func: Callable[..., Any], *args: Any, loop: Optional[asyncio.AbstractEventLoop] = None,
                   executor: Optional[Executor] = None, **kwargs: Any) -> Any:
    """Execute blocking code in the default executor and await the result."""
    event_loop = loop or asyncio.get_running_loop()
    bound = partial(func, *args, **kwargs)
    return await event_loop.run_in_executor(executor, bound)


__all__ = ["TaskRunner", "runner", "get_task_runner", "run_sync"]
