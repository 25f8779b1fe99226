"""
Тесты очереди фоновых задач.
"""

import asyncio

import pytest

from billing.exceptions import JobSchedulingFailed
from billing.jobs.dispatcher import AsyncioJobDispatcher


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def test_dispatch_runs_handler():
    dispatcher = AsyncioJobDispatcher(workers=2, retry_delay=0.01)
    seen = []

    async def handler(payload):
        seen.append(payload["order_id"])

    dispatcher.register("order.fulfill", handler)
    # Enqueued before start, picked up once workers run
    await dispatcher.dispatch("order.fulfill", {"order_id": 1})
    dispatcher.start()
    await dispatcher.dispatch("order.fulfill", {"order_id": 2})

    await _wait_for(lambda: dispatcher.completed_jobs == 2)
    await dispatcher.stop()

    assert sorted(seen) == [1, 2]
    assert dispatcher.failed_jobs == 0


async def test_failed_job_is_retried():
    dispatcher = AsyncioJobDispatcher(workers=1, max_attempts=3, retry_delay=0.01)
    attempts = []

    async def flaky(payload):
        attempts.append(payload)
        if len(attempts) < 3:
            raise RuntimeError("database is locked")

    dispatcher.register("flaky", flaky)
    dispatcher.start()
    await dispatcher.dispatch("flaky", {"order_id": 7})

    await _wait_for(lambda: dispatcher.completed_jobs == 1)
    await dispatcher.stop()

    assert len(attempts) == 3
    assert dispatcher.failed_jobs == 0


async def test_job_dropped_after_max_attempts():
    dispatcher = AsyncioJobDispatcher(workers=1, max_attempts=2, retry_delay=0.01)
    attempts = []

    async def broken(payload):
        attempts.append(payload)
        raise RuntimeError("boom")

    dispatcher.register("broken", broken)
    dispatcher.start()
    await dispatcher.dispatch("broken", {})

    await _wait_for(lambda: dispatcher.failed_jobs == 1)
    await dispatcher.stop()

    assert len(attempts) == 2
    assert dispatcher.completed_jobs == 0


async def test_scheduling_failures():
    """
    Тест: неизвестная задача, переполненная очередь и остановленный
    диспетчер - ошибка постановки.
    """
    dispatcher = AsyncioJobDispatcher(workers=1, queue_size=1)

    async def handler(payload):
        return None

    dispatcher.register("job", handler)

    with pytest.raises(JobSchedulingFailed):
        await dispatcher.dispatch("unknown", {})

    await dispatcher.dispatch("job", {"n": 1})
    with pytest.raises(JobSchedulingFailed):
        await dispatcher.dispatch("job", {"n": 2})

    dispatcher.start()
    await dispatcher.stop()
    with pytest.raises(JobSchedulingFailed):
        await dispatcher.dispatch("job", {"n": 3})
    assert dispatcher.completed_jobs == 1


async def test_stop_waits_for_queued_jobs():
    dispatcher = AsyncioJobDispatcher(workers=1, timeout=2)
    done = []

    async def slow(payload):
        await asyncio.sleep(0.05)
        done.append(payload["n"])

    dispatcher.register("slow", slow)
    dispatcher.start()
    for n in range(3):
        await dispatcher.dispatch("slow", {"n": n})

    await dispatcher.stop()

    assert done == [0, 1, 2]
