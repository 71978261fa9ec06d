"""
Shared pytest fixtures and configuration for LiveQuery tests.
"""

import asyncio
import threading

import pytest

from livequery import InMemoryStore, WorkerPool


@pytest.fixture
def store():
    """Provide a fresh in-memory store registered to the test's thread."""
    with InMemoryStore() as store:
        yield store


@pytest.fixture
def worker():
    """Provide a private fetch pool so tests never share worker threads."""
    with WorkerPool(max_workers=2, thread_name_prefix="test-fetch") as pool:
        yield pool


@pytest.fixture
def designated_loop():
    """Run an event loop on its own thread, standing in for a UI thread."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, name="designated", daemon=True)
    thread.start()
    yield loop, thread
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=2)
    loop.close()
