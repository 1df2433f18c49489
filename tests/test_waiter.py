import asyncio

import pytest

from fakes import FakeGenerator, block_until_cancelled
from scriptqueue.errors import (
    GenerationError,
    JobFailedError,
    JobWaitTimeoutError,
    QueueNotActiveError,
)
from scriptqueue.log_routing import JobLogRegistry
from scriptqueue.waiter import JobWaiter


def make_waiter(queue, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("timeout", 3.0)
    registry = JobLogRegistry()
    queue.on_worker_status_change(registry.handle_worker_status)
    return JobWaiter(queue, registry, **kwargs)


async def test_wait_returns_result(make_queue):
    queue = make_queue(FakeGenerator(default="the text"))
    queue.initialize_workers(["key-a"])
    waiter = make_waiter(queue)
    queue.start()
    [job_id] = queue.add_jobs([{"title": "t", "prompt": "p"}])

    assert await waiter.wait(job_id) == "the text"


async def test_wait_requires_running_queue(make_queue):
    queue = make_queue(FakeGenerator())
    queue.initialize_workers(["key-a"])
    waiter = make_waiter(queue)
    [job_id] = queue.add_jobs([{"title": "t", "prompt": "p"}])
    messages = []

    with pytest.raises(QueueNotActiveError):
        await waiter.wait(job_id, log_callback=lambda message, level: messages.append((message, level)))

    assert messages == [("Queue system is not active", "error")]
    assert job_id not in waiter.registry


async def test_wait_raises_when_job_fails(make_queue):
    queue = make_queue(
        FakeGenerator(default=GenerationError("boom")),
        worker_max_retries=1,
        max_unique_worker_attempts=1,
    )
    queue.initialize_workers(["key-a"])
    waiter = make_waiter(queue)
    queue.start()
    [job_id] = queue.add_jobs([{"title": "t", "prompt": "p"}])

    with pytest.raises(JobFailedError) as exc_info:
        await waiter.wait(job_id)

    assert exc_info.value.job_id == job_id
    assert str(exc_info.value) == "Failed after attempts on 1 workers: boom"


async def test_wait_times_out_without_cancelling_job(make_queue):
    queue = make_queue(block_until_cancelled)
    queue.initialize_workers(["key-a"])
    waiter = make_waiter(queue)
    queue.start()
    [job_id] = queue.add_jobs([{"title": "t", "prompt": "p"}])
    messages = []

    with pytest.raises(JobWaitTimeoutError):
        await waiter.wait(job_id, timeout=0.05, log_callback=lambda m, level: messages.append(level))

    assert messages[-1] == "error"
    assert queue.get_job(job_id) is not None
    assert len(waiter.registry) == 0


async def test_wait_stops_when_queue_stops(make_queue):
    queue = make_queue(block_until_cancelled)
    queue.initialize_workers(["key-a"])
    waiter = make_waiter(queue)
    queue.start()
    [job_id] = queue.add_jobs([{"title": "t", "prompt": "p"}])
    asyncio.get_running_loop().call_later(0.03, queue.stop)

    with pytest.raises(QueueNotActiveError):
        await waiter.wait(job_id)


async def test_progress_is_routed_to_job_callback(make_queue):
    generator = FakeGenerator(responses={"key-a": [GenerationError("flaky"), "done"]})
    queue = make_queue(generator)
    queue.initialize_workers(["key-a"])
    waiter = make_waiter(queue)
    queue.start()
    [job_id] = queue.add_jobs([{"title": "My job", "prompt": "p"}])
    messages = []

    result = await waiter.wait(job_id, log_callback=lambda m, level: messages.append((m, level)))

    assert result == "done"
    assert messages[0] == ("My job: attempt 1/3...", "info")
    assert ("My job: attempt 1 failed (flaky).", "error") in messages
    assert messages[-1] == ("My job generated successfully!", "success")
    assert job_id not in waiter.registry
