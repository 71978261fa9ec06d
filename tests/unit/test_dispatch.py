"""Unit tests for execution contexts: inline, pinned loop and worker pool."""

import asyncio
import threading

import pytest

from livequery import ExecutionContext, InlineContext, LoopContext, WorkerPool


def current_thread_name():
    return threading.current_thread().name


@pytest.mark.unit
@pytest.mark.asyncio
async def test_inline_context_runs_on_calling_thread():
    context = InlineContext()

    assert await context.run(current_thread_name) == threading.current_thread().name
    assert isinstance(context, ExecutionContext)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_worker_pool_runs_off_the_loop_thread(worker):
    name = await worker.run(current_thread_name)

    assert name.startswith("test-fetch")
    assert name != threading.current_thread().name


@pytest.mark.unit
@pytest.mark.asyncio
async def test_worker_pool_passes_arguments_and_propagates_errors(worker):
    def divide(a, b):
        return a / b

    assert await worker.run(divide, 6, 3) == 2
    with pytest.raises(ZeroDivisionError):
        await worker.run(divide, 1, 0)


@pytest.mark.unit
@pytest.mark.edge_case
def test_worker_pool_requires_a_worker():
    with pytest.raises(ValueError, match="max_workers"):
        WorkerPool(max_workers=0)


@pytest.mark.unit
def test_shared_pool_is_reused():
    assert WorkerPool.shared() is WorkerPool.shared()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_loop_context_on_its_own_loop_runs_inline():
    context = LoopContext.current()

    assert context.loop is asyncio.get_running_loop()
    assert await context.run(current_thread_name) == threading.current_thread().name


@pytest.mark.unit
@pytest.mark.asyncio
async def test_loop_context_hops_to_the_designated_thread(designated_loop):
    loop, thread = designated_loop
    context = LoopContext(loop)

    assert await asyncio.wait_for(context.run(current_thread_name), 1) == thread.name


@pytest.mark.unit
@pytest.mark.asyncio
async def test_loop_context_propagates_errors_from_designated_thread(designated_loop):
    loop, _ = designated_loop

    def refuse():
        raise PermissionError("not here")

    with pytest.raises(PermissionError, match="not here"):
        await asyncio.wait_for(LoopContext(loop).run(refuse), 1)


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.edge_case
async def test_loop_context_rejects_closed_loop():
    loop = asyncio.new_event_loop()
    loop.close()

    with pytest.raises(RuntimeError, match="closed"):
        await LoopContext(loop).run(current_thread_name)
