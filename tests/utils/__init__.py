"""
Test utilities for LiveQuery.

Row types used across the suite, plus helpers for driving async streams with
timeouts so a broken subscription fails a test instead of hanging it.
"""

import asyncio
from dataclasses import dataclass

from livequery import TICK

from .memory_utils import assert_cleaned_up, count_instances


@dataclass(frozen=True)
class Note:
    title: str
    pinned: bool = False
    rank: int = 0


@dataclass(frozen=True)
class Task:
    name: str
    done: bool = False


@dataclass(frozen=True)
class Chore(Task):
    room: str = "kitchen"


_END = object()


class ManualSource:
    """Tick source driven by the test; records whether it was released."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.closed = False

    def tick(self, n: int = 1):
        for _ in range(n):
            self.queue.put_nowait(TICK)

    def finish(self):
        self.queue.put_nowait(_END)

    def explode(self, error: Exception):
        self.queue.put_nowait(error)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self):
        self.closed = True


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` on the running loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def next_value(stream, timeout: float = 2.0):
    """Pull one value from ``stream``, failing the test if none arrives."""
    return await asyncio.wait_for(stream.__anext__(), timeout)


async def assert_no_value(stream, within: float = 0.05):
    """Assert that ``stream`` neither yields nor ends during ``within`` seconds."""
    pull = asyncio.ensure_future(stream.__anext__())
    done, _ = await asyncio.wait({pull}, timeout=within)
    if done:
        raise AssertionError(f"unexpected stream item: {pull.result()!r}")
    pull.cancel()
    await asyncio.gather(pull, return_exceptions=True)


__all__ = [
    "Note",
    "Task",
    "Chore",
    "ManualSource",
    "wait_until",
    "next_value",
    "assert_no_value",
    "assert_cleaned_up",
    "count_instances",
]
