"""
LiveQuery Signals - Update Ticks, Fan-In Merge and Cancellation
===============================================================

An update signal is a payload-free tick meaning "re-evaluate now". Every
subscription consumes one ordered tick sequence built by merging

1. a synthetic one-shot initial-load source, and
2. the store's change feed for the query's relevance key.

``SignalMerge`` is a fan-in channel: one pump task per source pushes into a
shared queue, the merge ends only once every source has finished, and the
first source failure closes the merge with a ``MergeError`` after cancelling
its siblings. Ticks come out in arrival order; sources are never concatenated.

``CancellationToken`` is the cooperative cancellation flag checked by the
fetch loop at tick boundaries and threaded into the store's execute call.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, List, Optional, Tuple

from .errors import FetchCancelledError, MergeError


class UpdateSignal:
    """A tick. Carries no payload; all ticks are the same object."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "TICK"


TICK = UpdateSignal()


async def initial_load() -> AsyncIterator[UpdateSignal]:
    """Emit exactly one tick, immediately, then finish."""
    yield TICK


# ============================================================================
# CANCELLATION
# ============================================================================


class CancellationToken:
    """
    Thread-safe, one-way cancellation flag.

    The fetch loop checks it between ticks; worker threads running a fetch can
    poll it (or call ``raise_if_cancelled``) to abort early.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FetchCancelledError("fetch cancelled")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationToken({state})"


# ============================================================================
# FAN-IN MERGE
# ============================================================================

_TICK = "tick"
_DONE = "done"
_FAILED = "failed"


class SignalMerge:
    """
    Merge several async tick sources into one ordered sequence.

    Pump tasks start on the first ``__anext__`` in the order the sources were
    given, so an eager source listed first yields the first tick.

    Example:
        ```python
        merged = SignalMerge(initial_load(), feed)
        try:
            async for _ in merged:
                refresh()
        finally:
            await merged.aclose()
        ```
    """

    def __init__(self, *sources: Any) -> None:
        self._sources = sources
        self._queue: Optional[asyncio.Queue] = None
        self._pumps: List[asyncio.Task] = []
        self._active = len(sources)
        self._closed = False
        self._failure: Optional[Tuple[int, Exception]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "SignalMerge":
        return self

    async def __anext__(self) -> UpdateSignal:
        if self._closed:
            raise StopAsyncIteration
        if self._queue is None:
            self._start()

        # A recorded failure wins over ticks still queued behind it
        while self._failure is None:
            kind = await self._queue.get()
            if self._failure is not None:
                break
            if kind == _TICK:
                return TICK
            if kind == _DONE:
                self._active -= 1
                if self._active == 0:
                    self._closed = True
                    raise StopAsyncIteration

        index, error = self._failure
        await self.aclose()
        raise MergeError(f"update source {index} failed: {error}") from error

    def _start(self) -> None:
        self._queue = asyncio.Queue()
        if not self._sources:
            self._queue.put_nowait(_DONE)
            self._active = 1
            return
        loop = asyncio.get_running_loop()
        self._pumps = [
            loop.create_task(self._pump(index, source))
            for index, source in enumerate(self._sources)
        ]

    async def _pump(self, index: int, source: Any) -> None:
        try:
            async for _ in source:
                self._queue.put_nowait(_TICK)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._failure is None:
                self._failure = (index, e)
            self._queue.put_nowait(_FAILED)
            me = asyncio.current_task()
            for pump in self._pumps:
                if pump is not me:
                    pump.cancel()
            return
        self._queue.put_nowait(_DONE)

    async def aclose(self) -> None:
        """Cancel every pump and release every source. Safe to call twice."""
        self._closed = True
        pumps, self._pumps = self._pumps, []
        for pump in pumps:
            pump.cancel()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

        sources, self._sources = self._sources, ()
        for source in sources:
            close = getattr(source, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logging.error(f"Error closing update source {source!r}: {e}")
