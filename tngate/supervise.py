"""Supervised background tasks, shared readiness state and the service interface."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TASK_NAME = "unnamed"


class ShutdownGuard:
    """Spawns tasks that are dropped as soon as shutdown is requested."""

    def __init__(self) -> None:
        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

    def cancel(self) -> None:
        """Request shutdown; every supervised task is cancelled."""
        self._stop.set()

    async def cancelled(self) -> None:
        """Wait until shutdown has been requested."""
        await self._stop.wait()

    def is_cancelled(self) -> bool:
        """Whether shutdown has been requested."""
        return self._stop.is_set()

    def spawn_supervised_task(
        self, coro: Awaitable[Any], name: str = DEFAULT_TASK_NAME
    ) -> asyncio.Task[Any]:
        """Run ``coro`` in the background until it ends or shutdown is requested.

        The returned task yields the coroutine's result, or None if it was
        cut short by shutdown. Exceptions of the coroutine propagate.
        """
        task = asyncio.get_running_loop().create_task(self._supervise(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def spawn_supervised_task_fn(
        self,
        fn: Callable[[ShutdownGuard], Awaitable[Any]],
        name: str = DEFAULT_TASK_NAME,
    ) -> asyncio.Task[Any]:
        """Like spawn_supervised_task, with the coroutine built by ``fn(self)``."""
        return self.spawn_supervised_task(fn(self), name)

    async def wait(self) -> None:
        """Wait for every supervised task, including ones spawned meanwhile."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _supervise(self, coro: Awaitable[Any]) -> Any:
        if self._stop.is_set():
            close = getattr(coro, "close", None)
            if callable(close):
                close()
            return None

        work = asyncio.ensure_future(coro)
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            stop.cancel()
            raise

        if work.done():
            stop.cancel()
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("supervised task failed while being cancelled", exc_info=True)
        return None


class TngState:
    """State shared between the runtime and its callers."""

    def __init__(self) -> None:
        self._ready = asyncio.Event()

    def mark_ready(self) -> None:
        """Record that every service is ready."""
        self._ready.set()

    async def wait_ready(self) -> None:
        """Wait until the runtime has become ready."""
        await self._ready.wait()

    def is_ready(self) -> bool:
        """Whether the runtime has become ready."""
        return self._ready.is_set()


class RegisteredService(ABC):
    """A long-running component of the runtime.

    Once it can accept work, a service puts one item on the ``ready`` queue.
    A service that raises brings the whole runtime down. It is cancelled when
    the runtime shuts down, so it need not watch the guard itself.
    """

    @abstractmethod
    async def serve(self, shutdown_guard: ShutdownGuard, ready: asyncio.Queue[Any]) -> None:
        """Serve until cancelled; raise on failure."""