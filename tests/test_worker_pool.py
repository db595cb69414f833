import pytest
import asyncio
from centinel.core.errors import PoolShutdownError
from centinel.core.worker_pool import WorkerPool


@pytest.mark.asyncio
async def test_submit_returns_result():
    pool = WorkerPool(core_size=2, max_size=4, queue_capacity=10)

    async def double(x):
        return x * 2

    futures = [await pool.submit(double, i) for i in range(5)]
    assert await asyncio.gather(*futures) == [0, 2, 4, 6, 8]
    assert await pool.shutdown(1) is True
    assert pool.stats()["completed"] == 5

@pytest.mark.asyncio
async def test_exception_delivered_through_future():
    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=1)

    async def fail():
        raise RuntimeError("boom")

    future = await pool.submit(fail)
    with pytest.raises(RuntimeError):
        await future

    # The worker survives a failing job
    async def ok():
        return "ok"
    assert await (await pool.submit(ok)) == "ok"

@pytest.mark.asyncio
async def test_admission_core_then_queue_then_max():
    release = asyncio.Event()

    async def blocked():
        await release.wait()

    pool = WorkerPool(core_size=2, max_size=3, queue_capacity=2)
    futures = [await pool.submit(blocked) for _ in range(2)]
    assert pool.stats()["workers"] == 2
    assert pool.stats()["queued"] == 0

    futures += [await pool.submit(blocked) for _ in range(2)]
    assert pool.stats()["workers"] == 2
    assert pool.stats()["queued"] == 2

    futures.append(await pool.submit(blocked))
    assert pool.stats()["workers"] == 3
    assert pool.stats()["queued"] == 2

    release.set()
    await asyncio.gather(*futures)
    assert await pool.shutdown(1) is True

@pytest.mark.asyncio
async def test_saturated_pool_runs_in_caller():
    release = asyncio.Event()
    order = []

    async def blocked():
        await release.wait()

    async def inline():
        order.append("inline")
        return "done"

    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=1)
    first = await pool.submit(blocked)
    second = await pool.submit(blocked)

    third = await pool.submit(inline)
    # Already finished when submit() returns
    assert third.done()
    assert third.result() == "done"
    assert order == ["inline"]
    assert pool.stats()["caller_runs"] == 1

    release.set()
    await asyncio.gather(first, second)

@pytest.mark.asyncio
async def test_shutdown_drains_queued_work():
    results = []

    async def slow(i):
        await asyncio.sleep(0.01)
        results.append(i)

    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=10)
    for i in range(5):
        await pool.submit(slow, i)

    assert await pool.shutdown(5) is True
    assert results == [0, 1, 2, 3, 4]

@pytest.mark.asyncio
async def test_shutdown_cancels_after_grace():
    async def forever():
        await asyncio.sleep(3600)

    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=5)
    running = await pool.submit(forever)
    queued = await pool.submit(forever)

    assert await pool.shutdown(0.05) is False
    assert running.cancelled()
    assert queued.cancelled()

@pytest.mark.asyncio
async def test_submit_after_shutdown_rejected():
    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=1)
    await pool.shutdown(1)

    async def noop():
        pass

    with pytest.raises(PoolShutdownError):
        await pool.submit(noop)
    assert pool.is_shutdown

def test_invalid_bounds():
    with pytest.raises(ValueError):
        WorkerPool(core_size=5, max_size=2)
    with pytest.raises(ValueError):
        WorkerPool(core_size=0)
