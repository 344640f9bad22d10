"""Stream wrappers: byte counting and a timeout on the first read."""

from __future__ import annotations

import asyncio
import enum
import inspect
from typing import Any, Protocol


class _Duplex(Protocol):
    async def read(self, n: int = -1) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    async def drain(self) -> None: ...

    def close(self) -> Any: ...


class _Adder(Protocol):
    def add(self, value: int) -> None: ...


async def _close(inner: Any) -> None:
    result = inner.close()
    if inspect.isawaitable(result):
        await result
    wait_closed = getattr(inner, "wait_closed", None)
    if callable(wait_closed):
        await wait_closed()


class CountingStream:
    """A duplex stream that counts bytes written (tx) and read (rx)."""

    def __init__(self, inner: _Duplex, tx_bytes_total: _Adder, rx_bytes_total: _Adder) -> None:
        self.inner = inner
        self.tx_bytes_total = tx_bytes_total
        self.rx_bytes_total = rx_bytes_total

    async def read(self, n: int = -1) -> bytes:
        """Read from the inner stream and count what arrived."""
        data = await self.inner.read(n)
        self.rx_bytes_total.add(len(data))
        return data

    def write(self, data: bytes) -> None:
        """Write to the inner stream and count what was handed over."""
        self.inner.write(data)
        self.tx_bytes_total.add(len(data))

    async def drain(self) -> None:
        await self.inner.drain()

    async def close(self) -> None:
        await _close(self.inner)


class _ReadState(enum.Enum):
    BEFORE_FIRST_READ = enum.auto()
    IN_FIRST_READ = enum.auto()
    AFTER_FIRST_READ = enum.auto()


class FirstByteReadTimeoutStream:
    """A duplex stream whose first read must complete within ``timeout`` seconds.

    The clock starts on the first read call, not on construction. Once the
    first read has completed, later reads are not limited. After the timeout
    has expired, every read raises TimeoutError.
    """

    def __init__(self, inner: _Duplex, timeout: float) -> None:
        self.inner = inner
        self.timeout = timeout
        self._state = _ReadState.BEFORE_FIRST_READ
        self._deadline = 0.0

    async def read(self, n: int = -1) -> bytes:
        if self._state is _ReadState.AFTER_FIRST_READ:
            return await self.inner.read(n)

        loop = asyncio.get_running_loop()
        if self._state is _ReadState.BEFORE_FIRST_READ:
            self._deadline = loop.time() + self.timeout
            self._state = _ReadState.IN_FIRST_READ

        remaining = self._deadline - loop.time()
        if remaining <= 0:
            raise TimeoutError("timed out waiting for the first byte")
        try:
            data = await asyncio.wait_for(self.inner.read(n), remaining)
        except asyncio.TimeoutError:
            raise TimeoutError("timed out waiting for the first byte") from None
        except asyncio.CancelledError:
            raise
        except Exception:
            self._state = _ReadState.AFTER_FIRST_READ
            raise
        self._state = _ReadState.AFTER_FIRST_READ
        return data

    def write(self, data: bytes) -> Any:
        return self.inner.write(data)

    async def drain(self) -> None:
        await self.inner.drain()

    async def close(self) -> None:
        await _close(self.inner)