"""
LiveQuery Dispatch - Execution Contexts
=======================================

Two kinds of work happen for every subscription and they must not share a
thread:

- Registering the change observer. Stores commonly require this to happen on
  one designated context (think of a UI thread). ``LoopContext`` pins calls to
  a specific asyncio loop, which may be running on another thread;
  ``InlineContext`` runs them right where the subscription starts.
- Fetching and transforming. ``WorkerPool`` runs these on a thread pool so the
  designated context is never blocked by fetch latency.

All contexts share one awaitable entry point: ``await context.run(func, *args)``.
"""

import asyncio
import concurrent.futures
import functools
import logging
import threading
from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@runtime_checkable
class ExecutionContext(Protocol):
    """Somewhere a synchronous callable can be run and awaited."""

    async def run(self, func: Callable[..., T], *args: Any) -> T:
        ...


class InlineContext:
    """Run callables synchronously on the calling loop's thread."""

    async def run(self, func: Callable[..., T], *args: Any) -> T:
        return func(*args)

    def __repr__(self) -> str:
        return "InlineContext()"


class LoopContext:
    """
    Run callables on a fixed asyncio event loop.

    When awaited from that loop the call happens inline; from any other loop
    it is scheduled with ``call_soon_threadsafe`` and the caller suspends until
    it completes.

    Example:
        ```python
        main = LoopContext(asyncio.get_running_loop())
        observer = descriptor.observe(count, registrar=main)
        ```
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    @classmethod
    def current(cls) -> "LoopContext":
        return cls(asyncio.get_running_loop())

    async def run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            return func(*args)
        if self.loop.is_closed():
            raise RuntimeError("designated loop is closed")

        future: concurrent.futures.Future = concurrent.futures.Future()

        def call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(func(*args))
            except Exception as e:
                future.set_exception(e)

        self.loop.call_soon_threadsafe(call)
        return await asyncio.wrap_future(future)

    def __repr__(self) -> str:
        return f"LoopContext({self.loop!r})"


class WorkerPool:
    """
    Thread pool for fetches and transforms.

    Args:
        max_workers: Maximum number of worker threads (default: 4)
        thread_name_prefix: Name prefix for worker threads
    """

    _shared: Optional["WorkerPool"] = None
    _shared_lock = threading.Lock()

    def __init__(
        self, max_workers: int = 4, thread_name_prefix: str = "livequery-fetch"
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=thread_name_prefix
        )

    @classmethod
    def shared(cls) -> "WorkerPool":
        """Process-wide pool used by observers that were not given one."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
                logging.debug(
                    f"Created shared fetch pool with {cls._shared.max_workers} workers"
                )
            return cls._shared

    async def run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args)
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    def __repr__(self) -> str:
        return f"WorkerPool(max_workers={self.max_workers})"
