import asyncio

import pytest

from scriptqueue.queue_manager import QueueManager


@pytest.fixture
async def make_queue():
    queues = []

    def factory(generate, **kwargs):
        kwargs.setdefault("tick_interval", 0.01)
        kwargs.setdefault("worker_max_retries", 3)
        kwargs.setdefault("worker_retry_delay", 0.01)
        kwargs.setdefault("worker_cooldown", 60.0)
        queue = QueueManager(generate, **kwargs)
        queues.append(queue)
        return queue

    yield factory

    for queue in queues:
        queue.stop()
        await queue.drain()


@pytest.fixture
def wait_until():
    async def waiter(predicate, timeout=3.0, interval=0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(interval)

    return waiter
