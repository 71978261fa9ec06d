"""
LiveQuery Observer - Fetch Stream Controller
============================================

``QueryObserver`` turns a pull query into a push stream. Every call to
``values(store)`` returns an independent ``ResultStream``; iterating it yields
the transformed query result once eagerly (the initial load) and then once per
relevant change reported by the store.

How a subscription runs:

1. On first pull the change feed is registered on the designated context
   (``registrar``) and merged with a one-shot initial-load source.
2. A background task iterates the merged ticks. Before each tick it checks the
   cancellation token; for each tick it runs one fetch on the ``worker``
   context and publishes the result into a single-slot latest-wins buffer.
   Fetches are strictly sequential: a tick's fetch and publish finish before
   the next tick is taken.
3. A fetch, transform or feed failure terminates the stream with that error
   after any pending value has been consumed. There is no retry.
4. Cancelling the stream (``cancel``, ``aclose``, leaving ``async with`` or
   dropping the last reference) cancels the background task and releases both
   merged sources. A fetch already running on a worker thread completes, and
   its result is discarded.

Example:
    ```python
    observer = QueryDescriptor(Todo, predicate=lambda t: not t.done).observe(count)

    async with observer.values(store) as open_todos:
        async for n in open_todos:
            render_badge(n)
    ```
"""

import asyncio
import logging
import weakref
from enum import Enum
from typing import Callable, Generic, List, Optional, TypeVar

from .buffer import LatestValueBuffer
from .descriptor import QueryDescriptor, to_none
from .dispatch import ExecutionContext, InlineContext, WorkerPool
from .errors import FetchCancelledError, SubscriptionError
from .protocols import PersistentStore
from .query import DescriptorQuery
from .signals import CancellationToken, SignalMerge, initial_load

T = TypeVar("T")
R = TypeVar("R")


class SubscriptionState(Enum):
    """Lifecycle of a single ResultStream. There is no way back to IDLE."""

    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    CANCELLING = "cancelling"
    TERMINATED = "terminated"


# ============================================================================
# FETCH LOOP
# ============================================================================


async def _fetch_loop(
    query: DescriptorQuery,
    store: PersistentStore,
    signals: SignalMerge,
    buffer: LatestValueBuffer,
    token: CancellationToken,
    worker: ExecutionContext,
) -> Optional[Exception]:
    """
    Fetch once per tick and publish into ``buffer``.

    Runs as its own task and never touches the ResultStream that owns it, so a
    forgotten stream can still be garbage collected and finalized.

    Returns:
        The exception that terminated the stream, or None
    """
    ticks = 0
    error: Optional[Exception] = None
    try:
        async for _ in signals:
            if token.cancelled:
                break
            ticks += 1
            logging.debug(f"Tick {ticks} for {query!r}, fetching")
            value = await worker.run(query.fetch, store, token)
            if token.cancelled:
                logging.debug(f"Discarding result of {query!r} fetched after cancel")
                break
            buffer.put(value)
    except asyncio.CancelledError:
        try:
            await signals.aclose()
        finally:
            buffer.close()
        raise
    except Exception as e:
        if not (isinstance(e, FetchCancelledError) and token.cancelled):
            logging.error(f"Live query {query!r} failed after {ticks} ticks: {e}")
            error = e

    # Sources are released before the consumer can observe the end,
    # except after cancel() which empties the buffer up front
    try:
        await signals.aclose()
    finally:
        if error is not None:
            buffer.fail(error)
        else:
            buffer.close()
    return error


def _cancel_orphan(
    token: CancellationToken, task: asyncio.Task, loop: asyncio.AbstractEventLoop
) -> None:
    if task.done():
        return
    logging.debug("Result stream collected while subscribed, cancelling its fetch loop")
    token.cancel()
    if not loop.is_closed():
        loop.call_soon_threadsafe(task.cancel)


# ============================================================================
# RESULT STREAM
# ============================================================================


class ResultStream(Generic[R]):
    """
    Async iterator over the live results of one subscription.

    The stream is single-use: it starts on the first pull (or ``start()``),
    and once terminated it stays terminated. At most one value is buffered;
    a slow consumer only ever sees the freshest result.

    Attributes:
        state: Current SubscriptionState
        error: Exception that terminated the stream, if any
        dropped: Number of results overwritten before being consumed
    """

    def __init__(
        self,
        query: DescriptorQuery,
        store: PersistentStore,
        registrar: ExecutionContext,
        worker: ExecutionContext,
    ) -> None:
        self._query = query
        self._store = store
        self._registrar = registrar
        self._worker = worker
        self._buffer: LatestValueBuffer[R] = LatestValueBuffer()
        self._token = CancellationToken()
        self._state = SubscriptionState.IDLE
        self._startup: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._startup_error: Optional[Exception] = None
        self._finalizer: Optional[weakref.finalize] = None

    @property
    def state(self) -> SubscriptionState:
        if self._task is not None and self._task.done():
            return SubscriptionState.TERMINATED
        return self._state

    @property
    def error(self) -> Optional[Exception]:
        if self._startup_error is not None:
            return self._startup_error
        if self._task is not None and self._task.done() and not self._task.cancelled():
            return self._task.exception() or self._task.result()
        return None

    @property
    def dropped(self) -> int:
        return self._buffer.dropped

    @property
    def published(self) -> int:
        return self._buffer.published

    async def start(self) -> "ResultStream[R]":
        """
        Register the change feed and start the fetch loop.

        Raises:
            SubscriptionError: If the stream was already started or cancelled
        """
        if self.state is not SubscriptionState.IDLE:
            raise SubscriptionError(f"cannot start a {self.state.value} stream")
        await self._ensure_started()
        return self

    async def _ensure_started(self) -> None:
        if self._startup is None:
            self._state = SubscriptionState.SUBSCRIBED
            self._startup = asyncio.get_running_loop().create_task(self._subscribe())
        await asyncio.shield(self._startup)

    async def _subscribe(self) -> None:
        logging.debug(f"Subscribing to {self._query!r}")
        try:
            feed = await self._registrar.run(
                self._query.make_updates_stream, self._store
            )
        except Exception as e:
            logging.error(f"Could not observe changes for {self._query!r}: {e}")
            self._startup_error = e
            self._state = SubscriptionState.TERMINATED
            self._buffer.fail(e)
            return

        if self._token.cancelled:
            await feed.aclose()
            self._state = SubscriptionState.TERMINATED
            return

        loop = asyncio.get_running_loop()
        signals = SignalMerge(initial_load(), feed)
        self._task = loop.create_task(
            _fetch_loop(
                self._query,
                self._store,
                signals,
                self._buffer,
                self._token,
                self._worker,
            )
        )
        self._finalizer = weakref.finalize(
            self, _cancel_orphan, self._token, self._task, loop
        )
        self._finalizer.atexit = False

    def cancel(self) -> None:
        """
        Stop the subscription. No value is delivered after this call.

        Teardown completes asynchronously; await ``aclose()`` to wait for it.
        """
        if self._token.cancelled:
            return
        logging.debug(f"Cancelling subscription to {self._query!r}")
        self._token.cancel()
        self._buffer.clear()
        if self._state is SubscriptionState.IDLE:
            self._state = SubscriptionState.TERMINATED
        elif self._state is SubscriptionState.SUBSCRIBED:
            self._state = SubscriptionState.CANCELLING
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel the subscription and wait until its sources are released."""
        self.cancel()
        pending = [t for t in (self._startup, self._task) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._finalizer is not None:
            self._finalizer.detach()

    def __aiter__(self) -> "ResultStream[R]":
        return self

    async def __anext__(self) -> R:
        if self.state is SubscriptionState.IDLE:
            await self._ensure_started()
        return await self._buffer.get()

    async def __aenter__(self) -> "ResultStream[R]":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    def __repr__(self) -> str:
        return f"ResultStream({self._query!r}, {self.state.value})"


# ============================================================================
# OBSERVER
# ============================================================================


class QueryObserver(Generic[T, R]):
    """
    Reusable factory of live result streams for one descriptor and transform.

    The observer itself is stateless; each ``values()`` call creates a new,
    independent subscription with its own merged signal, buffer and task.

    Args:
        descriptor: What to fetch
        transform: Pure function from fetched rows to the delivered value;
            defaults to the unit transform (change notifications only)
        registrar: Designated context for registering the change feed;
            defaults to the loop the subscription starts on
        worker: Context that runs fetches; defaults to ``WorkerPool.shared()``
    """

    def __init__(
        self,
        descriptor: QueryDescriptor[T],
        transform: Callable[[List[T]], R] = to_none,
        *,
        registrar: Optional[ExecutionContext] = None,
        worker: Optional[ExecutionContext] = None,
    ) -> None:
        self._query: DescriptorQuery[T, R] = DescriptorQuery(descriptor, transform)
        self._registrar = registrar
        self._worker = worker

    @property
    def query(self) -> DescriptorQuery[T, R]:
        return self._query

    @property
    def descriptor(self) -> QueryDescriptor[T]:
        return self._query.descriptor

    def fetch(self, store: PersistentStore) -> R:
        """Run the query once, synchronously, on the calling thread."""
        return self._query.fetch(store)

    def values(self, store: PersistentStore) -> ResultStream[R]:
        """Create a new subscription. Nothing runs until it is first pulled."""
        return ResultStream(
            self._query,
            store,
            registrar=self._registrar or InlineContext(),
            worker=self._worker or WorkerPool.shared(),
        )

    def __repr__(self) -> str:
        return f"QueryObserver({self._query!r})"
