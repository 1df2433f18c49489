import pytest

from fakes import FakeGenerator, block_until_cancelled
from scriptqueue.errors import GenerationError, InvalidCredentialError, NoWorkersError
from scriptqueue.models import JobPriority, JobStatus, WorkerState


def new_jobs(count, prefix="t"):
    return [{"title": f"{prefix}{i}", "prompt": f"p-{prefix}{i}"} for i in range(count)]


async def test_initialize_workers_skips_blank_and_duplicate_credentials(make_queue):
    queue = make_queue(FakeGenerator())
    queue.initialize_workers(["key-a", "", "key-a", "  ", "key-b"])

    assert list(queue.workers) == ["worker-1", "worker-5"]
    assert queue.max_concurrent == 2


async def test_initialize_workers_replaces_previous_pool(make_queue):
    queue = make_queue(FakeGenerator())
    queue.initialize_workers(["key-a", "key-b"])
    old = queue.workers["worker-1"]

    queue.initialize_workers(["key-c"])

    assert list(queue.workers) == ["worker-1"]
    assert queue.workers["worker-1"].credential == "key-c"
    assert old.is_active is False


async def test_add_jobs_returns_unique_ids_in_order(make_queue):
    queue = make_queue(FakeGenerator())
    ids = queue.add_jobs(new_jobs(3))

    assert len(set(ids)) == 3
    assert [job.id for job in queue.queue] == ids
    assert all(job.status == JobStatus.QUEUED for job in queue.queue)
    assert queue.get_status()["queue"] == 3
    assert queue.stats.total_jobs == 3


async def test_start_without_workers_raises(make_queue):
    queue = make_queue(FakeGenerator())
    with pytest.raises(NoWorkersError):
        queue.start()
    assert queue.is_running is False


async def test_start_twice_is_ignored(make_queue):
    queue = make_queue(FakeGenerator())
    queue.initialize_workers(["key-a"])
    queue.start()
    task = queue._loop_task

    queue.start()

    assert queue._loop_task is task


async def test_jobs_spread_across_all_workers(make_queue, wait_until):
    generator = FakeGenerator(delay=0.02)
    queue = make_queue(generator)
    queue.initialize_workers(["key-a", "key-b", "key-c"])
    ids = queue.add_jobs(new_jobs(5))

    queue.start()

    assert len(queue.processing) == 3
    assert len(queue.queue) == 2

    await wait_until(lambda: len(queue.completed) == 5)

    assert queue.failed == []
    assert {job.id for job in queue.completed} == set(ids)
    assert all(job.attempts == 1 and job.result == "generated text" for job in queue.completed)
    assert set(generator.credentials_called) == {"key-a", "key-b", "key-c"}
    # A worker never runs two jobs at once
    assert max(generator.max_active.values()) == 1
    status = queue.get_status()
    assert (status["queue"], status["processing"], status["completed"]) == (0, 0, 5)


async def test_invalid_credential_with_single_worker_leaves_job_queued(make_queue, wait_until):
    generator = FakeGenerator(responses={"key-a": [InvalidCredentialError()]})
    queue = make_queue(generator)
    queue.initialize_workers(["key-a"])
    queue.add_jobs(new_jobs(1))

    queue.start()
    await wait_until(lambda: len(queue.queue) == 1 and not queue.processing)

    worker = queue.workers["worker-1"]
    job = queue.queue[0]
    assert worker.is_active is False
    assert worker.get_state() == WorkerState.DISABLED
    assert job.excluded_workers == ["worker-1"]
    assert job.priority == JobPriority.HIGH
    assert len(generator.calls) == 1
    status = queue.get_status()
    assert (status["queue"], status["processing"], status["completed"], status["failed"]) == (1, 0, 0, 0)


async def test_failed_job_moves_to_another_worker(make_queue, wait_until):
    generator = FakeGenerator(responses={"key-a": [GenerationError("boom"), GenerationError("boom")]})
    queue = make_queue(generator, worker_max_retries=2)
    queue.initialize_workers(["key-a", "key-b"])
    queue.add_jobs(new_jobs(1))

    queue.start()
    await wait_until(lambda: len(queue.completed) == 1)

    job = queue.completed[0]
    assert job.worker_id == "worker-2"
    assert job.excluded_workers == ["worker-1"]
    assert job.attempts == 1
    assert job.total_attempts == 3
    assert generator.credentials_called == ["key-a", "key-a", "key-b"]
    assert queue.workers["worker-1"].get_state() == WorkerState.COOLDOWN


async def test_job_fails_after_max_unique_workers(make_queue, wait_until):
    generator = FakeGenerator(default=GenerationError("boom"))
    queue = make_queue(generator, worker_max_retries=1)
    queue.initialize_workers(["key-a", "key-b", "key-c"])
    failures = []
    queue.on_job_failed(lambda job, result: failures.append((job.id, result.error)))
    [job_id] = queue.add_jobs(new_jobs(1))

    queue.start()
    await wait_until(lambda: len(queue.failed) == 1)

    job = queue.failed[0]
    assert job.status == JobStatus.FAILED
    assert job.error == "Failed after attempts on 3 workers: boom"
    assert sorted(job.excluded_workers) == ["worker-1", "worker-2", "worker-3"]
    assert job.total_attempts == 3
    assert generator.credentials_called == ["key-a", "key-b", "key-c"]
    assert failures == [(job_id, "Failed after attempts on 3 workers: boom")]
    assert job_id not in queue.job_attempts


async def test_max_unique_worker_attempts_is_configurable(make_queue, wait_until):
    generator = FakeGenerator(default=GenerationError("boom"))
    queue = make_queue(generator, worker_max_retries=1, max_unique_worker_attempts=2)
    queue.initialize_workers(["key-a", "key-b", "key-c"])
    queue.add_jobs(new_jobs(1))

    queue.start()
    await wait_until(lambda: len(queue.failed) == 1)

    assert queue.failed[0].error == "Failed after attempts on 2 workers: boom"
    assert "key-c" not in generator.credentials_called


async def test_high_priority_jobs_go_first(make_queue, wait_until):
    generator = FakeGenerator()
    queue = make_queue(generator)
    queue.initialize_workers(["key-a"])
    first, second = queue.add_jobs(new_jobs(2))
    [urgent] = queue.add_jobs([{"title": "urgent", "prompt": "p-urgent", "priority": "high"}])

    queue.start()
    await wait_until(lambda: len(queue.completed) == 3)

    assert [job.id for job in queue.completed] == [urgent, first, second]
    assert generator.calls[0][1] == "p-urgent"


async def test_clear_forgets_everything(make_queue):
    generator = FakeGenerator(delay=0.05)
    queue = make_queue(generator)
    queue.initialize_workers(["key-a", "key-b"])
    queue.add_jobs(new_jobs(3))
    queue.start()
    assert queue.processing

    queue.clear()
    await queue.drain()

    status = queue.get_status()
    assert status["is_running"] is False
    assert (status["queue"], status["processing"], status["completed"], status["failed"]) == (0, 0, 0, 0)
    assert status["stats"]["total_jobs"] == 0
    assert queue.job_attempts == {}


async def test_retry_failed_jobs_resets_history(make_queue, wait_until):
    generator = FakeGenerator(responses={"key-a": [GenerationError("boom")]})
    queue = make_queue(generator, worker_max_retries=1, max_unique_worker_attempts=1)
    queue.initialize_workers(["key-a"])
    queue.add_jobs(new_jobs(1))
    queue.start()
    await wait_until(lambda: len(queue.failed) == 1)

    assert queue.retry_failed_jobs() == 1

    job = queue.queue[0]
    assert queue.failed == []
    assert queue.stats.failed == 0
    assert job.status == JobStatus.QUEUED
    assert job.priority == JobPriority.NORMAL
    assert job.excluded_workers == []
    assert job.error is None

    # The only worker is still cooling down
    assert queue.restart_workers() == 1
    await wait_until(lambda: len(queue.completed) == 1)

    assert queue.completed[0].attempts == 1
    assert queue.completed[0].excluded_workers == []


async def test_retry_failed_jobs_without_failures(make_queue):
    queue = make_queue(FakeGenerator())
    assert queue.retry_failed_jobs() == 0


async def test_restart_keeps_rejected_credential_disabled(make_queue, wait_until):
    generator = FakeGenerator(responses={"key-a": [InvalidCredentialError()]})
    queue = make_queue(generator)
    queue.initialize_workers(["key-a", "key-b"])
    queue.add_jobs(new_jobs(2))
    queue.start()
    await wait_until(lambda: len(queue.completed) == 2)

    queue.stop()
    await queue.drain()
    queue.start()

    assert queue.workers["worker-1"].is_active is False
    assert queue.workers["worker-1"].get_state() == WorkerState.DISABLED
    assert queue.workers["worker-2"].is_active is True
    assert all(job.worker_id == "worker-2" for job in queue.completed)


async def test_stop_returns_in_flight_job_to_front(make_queue):
    queue = make_queue(block_until_cancelled)
    queue.initialize_workers(["key-a"])
    first, second = queue.add_jobs(new_jobs(2))
    queue.start()
    assert list(queue.processing) == [first]

    queue.stop()
    await queue.drain()

    assert [job.id for job in queue.queue] == [first, second]
    job = queue.queue[0]
    assert job.status == JobStatus.QUEUED
    assert job.excluded_workers == []
    assert queue.failed == []
    assert queue.processing == {}
    assert queue.workers["worker-1"].cooldown_until is None

    queue.start()

    assert queue.workers["worker-1"].is_active is True
    assert list(queue.processing) == [first]


async def test_worker_crash_requeues_job(make_queue, wait_until, monkeypatch):
    generator = FakeGenerator()
    queue = make_queue(generator)
    queue.initialize_workers(["key-a", "key-b"])

    async def crash(job, cancel_event=None):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(queue.workers["worker-1"], "run_attempts", crash)
    queue.add_jobs(new_jobs(1))

    queue.start()
    await wait_until(lambda: len(queue.completed) == 1)

    job = queue.completed[0]
    assert job.worker_id == "worker-2"
    assert job.excluded_workers == ["worker-1"]
    assert queue.workers["worker-1"].get_state() == WorkerState.IDLE


async def test_discard_pending_keeps_terminal_jobs(make_queue, wait_until):
    queue = make_queue(FakeGenerator())
    queue.initialize_workers(["key-a"])
    queue.add_jobs(new_jobs(1))
    queue.start()
    await wait_until(lambda: len(queue.completed) == 1)
    queue.stop()
    queue.add_jobs(new_jobs(2, prefix="late"))

    assert queue.discard_pending() == 2
    assert queue.queue == []
    assert len(queue.completed) == 1


async def test_listeners_and_unsubscribe(make_queue, wait_until):
    queue = make_queue(FakeGenerator())
    queue.initialize_workers(["key-a"])
    completed, statuses, events = [], [], []
    unsubscribe = queue.on_job_complete(lambda job, result: completed.append(job.id))
    queue.on_queue_status_change(statuses.append)
    queue.on_worker_status_change(events.append)

    def broken(event):
        raise ValueError("listener bug")

    queue.on_worker_status_change(broken)

    [first] = queue.add_jobs(new_jobs(1))
    queue.start()
    await wait_until(lambda: len(queue.completed) == 1)

    unsubscribe()
    queue.add_jobs(new_jobs(1, prefix="next"))
    await wait_until(lambda: len(queue.completed) == 2)

    assert completed == [first]
    assert statuses and "queue" in statuses[-1]
    assert "success" in [event.status.value for event in events]
    assert all(event.job_id for event in events if event.status.value in ("attempting", "success"))


async def test_completed_and_failed_views(make_queue, wait_until):
    generator = FakeGenerator(responses={"key-a": ["ok", GenerationError("boom")]})
    queue = make_queue(generator, worker_max_retries=1, max_unique_worker_attempts=1)
    queue.initialize_workers(["key-a"])
    good, bad = queue.add_jobs(
        [
            {"title": "good", "prompt": "p1", "metadata": {"kind": "premise"}},
            {"title": "bad", "prompt": "p2"},
        ]
    )

    queue.start()
    await wait_until(lambda: len(queue.completed) == 1 and len(queue.failed) == 1)

    [done] = queue.get_completed_results()
    assert done["id"] == good
    assert done["result"] == "ok"
    assert done["metadata"] == {"kind": "premise"}
    [failed] = queue.get_failed_jobs()
    assert failed["id"] == bad
    assert failed["error"].startswith("Failed after attempts on 1 workers")
    assert queue.get_job(good).status == JobStatus.COMPLETED
    assert queue.get_job("job-unknown") is None


async def test_cancelled_worker_does_not_count_toward_worker_ceiling(make_queue, wait_until):
    async def generate(credential, prompt, cancel_event=None):
        if credential == "key-a":
            return await block_until_cancelled(credential, prompt, cancel_event)
        if credential == "key-b":
            raise GenerationError("boom")
        return "done"

    queue = make_queue(generate, worker_max_retries=1, max_unique_worker_attempts=2)
    queue.initialize_workers(["key-a", "key-b", "key-c"])
    [job_id] = queue.add_jobs(new_jobs(1))
    queue.start()
    assert queue.processing[job_id].worker_id == "worker-1"

    queue.stop()
    await queue.drain()

    assert queue.job_attempts[job_id].workers_attempted == set()

    # Keeps worker-1 busy so the job goes to worker-2 after the restart
    queue.add_jobs([{"title": "hold", "prompt": "p-hold", "priority": "high"}])
    queue.start()
    await wait_until(lambda: len(queue.completed) == 1)

    job = queue.completed[0]
    assert job.id == job_id
    assert job.worker_id == "worker-3"
    assert job.excluded_workers == ["worker-2"]
    assert job.attempts == 1
    assert job.total_attempts == 2
    assert queue.failed == []


async def test_tts_chunk_jobs_pass_through_unchanged(make_queue, wait_until):
    generator = FakeGenerator(default="narration")
    queue = make_queue(generator)
    queue.initialize_workers(["key-a"])
    metadata = {"type": "tts-chunk", "chunk_index": 3, "voice": "Kore"}
    [job_id] = queue.add_jobs([{"title": "Chunk 3", "prompt": "Read this aloud", "metadata": metadata}])

    queue.start()
    await wait_until(lambda: len(queue.completed) == 1)

    [done] = queue.get_completed_results()
    assert done["id"] == job_id
    assert done["metadata"] == metadata
    assert generator.calls == [("key-a", "Read this aloud")]
