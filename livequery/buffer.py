"""
LiveQuery Buffer - Single-Slot Latest-Wins Cell
===============================================

``LatestValueBuffer`` sits between a subscription's fetch loop (the only
producer) and its consumer. It holds at most one unconsumed value:

- ``put`` never blocks; writing over an unread value discards the old one
  and bumps ``dropped``.
- Readers suspend until a value is available or the buffer is closed.
- ``close`` and ``fail`` still let the reader drain the pending value before
  the end of iteration (or the failure) is reported.
- ``clear`` drops the pending value and closes, for consumer cancellation.

All methods must be called from the event loop thread that owns the buffer.
"""

import asyncio
from typing import Generic, List, Optional, TypeVar

from .errors import SubscriptionError

T = TypeVar("T")

_EMPTY = object()


class LatestValueBuffer(Generic[T]):
    """
    One-capacity overwrite cell with a waiting-reader wakeup.

    Example:
        ```python
        buffer = LatestValueBuffer()
        buffer.put(1)
        buffer.put(2)             # overwrites 1
        assert await buffer.get() == 2
        assert buffer.dropped == 1
        ```
    """

    def __init__(self) -> None:
        self._value = _EMPTY
        self._closed = False
        self._error: Optional[BaseException] = None
        self._waiters: List[asyncio.Future] = []
        self.dropped = 0
        self.published = 0

    @property
    def has_value(self) -> bool:
        return self._value is not _EMPTY

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, value: T) -> None:
        if self._closed:
            raise SubscriptionError("cannot publish into a closed buffer")
        if self._value is not _EMPTY:
            self.dropped += 1
        self._value = value
        self.published += 1
        self._wake()

    def close(self) -> None:
        self._closed = True
        self._wake()

    def fail(self, error: BaseException) -> None:
        if not self._closed:
            self._error = error
        self.close()

    def clear(self) -> None:
        self._value = _EMPTY
        self._error = None
        self.close()

    async def get(self) -> T:
        """
        Take the buffered value, waiting for one if necessary.

        Raises:
            StopAsyncIteration: The buffer is closed and drained
            Exception: The failure passed to ``fail``, reported once
        """
        while self._value is _EMPTY and not self._closed:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

        if self._value is not _EMPTY:
            value, self._value = self._value, _EMPTY
            return value

        error, self._error = self._error, None
        if error is not None:
            raise error
        raise StopAsyncIteration

    def __aiter__(self) -> "LatestValueBuffer[T]":
        return self

    async def __anext__(self) -> T:
        return await self.get()

    def _wake(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        pending = "pending" if self.has_value else "empty"
        return f"LatestValueBuffer({state}, {pending}, dropped={self.dropped})"
