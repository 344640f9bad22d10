"""The runtime that starts all services and supervises them until shutdown."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from collections.abc import Iterable
from typing import Any, Union

from tngate.metrics import NoopMeterProvider
from tngate.supervise import RegisteredService, ShutdownGuard, TngState

logger = logging.getLogger(__name__)

ServiceEntry = Union[RegisteredService, "tuple[RegisteredService, str]"]


def _normalize(entry: Any) -> tuple[RegisteredService, str]:
    if isinstance(entry, tuple):
        service, name = entry
        return service, str(name)
    return entry, type(entry).__name__


async def _run_service(
    service: RegisteredService,
    ready: asyncio.Queue[Any],
    errors: asyncio.Queue[BaseException],
    guard: ShutdownGuard,
) -> None:
    try:
        await service.serve(guard, ready)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("service failed: %r", exc, exc_info=exc)
        errors.put_nowait(exc)


async def _wait_all_ready(ready: asyncio.Queue[Any], count: int) -> None:
    for _ in range(count):
        await ready.get()


async def _cancel_on_event(event: asyncio.Event, guard: ShutdownGuard) -> None:
    await event.wait()
    guard.cancel()


def _install_signal_handlers(guard: ShutdownGuard) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, guard.cancel)
        except (ValueError, RuntimeError, NotImplementedError):
            continue
        installed.append(sig)
    return installed


def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        try:
            loop.remove_signal_handler(sig)
        except (ValueError, RuntimeError, NotImplementedError):
            pass


class TngRuntime:
    """Runs a set of services; any service failing shuts the whole runtime down.

    Services may be given alone or as ``(service, name)`` pairs. A runtime
    serves only once.
    """

    def __init__(self, services: Iterable[ServiceEntry], meter_provider: Any = None) -> None:
        self._services: list[tuple[RegisteredService, str]] | None = [
            _normalize(entry) for entry in services
        ]
        self._meter_provider = meter_provider if meter_provider is not None else NoopMeterProvider()
        self._state = TngState()

    def state(self) -> TngState:
        """The state shared with callers, e.g. to watch for readiness."""
        return self._state

    async def serve_forever(self) -> None:
        """Serve until a signal arrives or a service fails."""
        await self.serve_with_cancel(asyncio.Event())

    async def serve_with_cancel(
        self, cancel_event: asyncio.Event, ready: asyncio.Future[Any] | None = None
    ) -> None:
        """Serve until ``cancel_event`` is set, a signal arrives or a service fails.

        ``ready`` is resolved once every service is ready; if the runtime
        exits before that, it is given a RuntimeError instead.
        """
        if self._services is None:
            raise RuntimeError("this runtime has already been served")
        services, self._services = self._services, None

        logger.info("Starting tng instance now")
        guard = ShutdownGuard()
        guard.spawn_supervised_task(_cancel_on_event(cancel_event, guard), name="cancel_watcher")
        installed = _install_signal_handlers(guard)
        try:
            await self._serve(services, guard, ready)
        finally:
            guard.cancel()
            _remove_signal_handlers(installed)
            await guard.wait()
            if ready is not None and not ready.done():
                ready.set_exception(RuntimeError("the runtime exited before it became ready"))
        logger.debug("The instance is shutdown complete")

    async def _serve(
        self,
        services: list[tuple[RegisteredService, str]],
        guard: ShutdownGuard,
        ready: asyncio.Future[Any] | None,
    ) -> None:
        count = len(services)
        logger.info("Starting all %d services", count)

        ready_queue: asyncio.Queue[Any] = asyncio.Queue()
        errors: asyncio.Queue[BaseException] = asyncio.Queue()
        for service, name in services:
            guard.spawn_supervised_task_fn(
                functools.partial(_run_service, service, ready_queue, errors), name=name
            )

        live = self._meter_provider.meter("tng").gauge(
            "live", "Indicates the server is alive or not"
        )
        live.record(0)

        all_ready = asyncio.ensure_future(_wait_all_ready(ready_queue, count))
        failed = asyncio.ensure_future(errors.get())
        stopped = asyncio.ensure_future(guard.cancelled())
        try:
            done, _ = await asyncio.wait(
                {all_ready, failed, stopped}, return_when=asyncio.FIRST_COMPLETED
            )
            if all_ready in done and not failed.done():
                logger.info("All of the services are ready")
                live.record(1)
                self._state.mark_ready()
                if ready is not None and not ready.done():
                    ready.set_result(None)
                if not stopped.done():
                    await asyncio.wait({failed, stopped}, return_when=asyncio.FIRST_COMPLETED)
            error = failed.result() if failed.done() else None
        finally:
            for waiter in (all_ready, failed, stopped):
                waiter.cancel()

        if error is not None:
            logger.error("failed to serve all services, canceling and exiting now")
        else:
            logger.info("Now shutdown the instance gracefully")