import threading
import time

import pytest

from certdesk.services.jobs import (
    JobQueue,
    JobQueueUnavailable,
    JobStatus,
    MemoryProgressStore,
    NonRetryableError,
    RedisProgressStore,
)


def _eager_queue(**kwargs):
    sleeps = []
    queue = JobQueue(eager=True, sleep=sleeps.append, **kwargs)
    queue.start()
    return queue, sleeps


def test_always_failing_job_is_attempted_exactly_max_attempts():
    queue, sleeps = _eager_queue(max_attempts=3, backoff_seconds=2)
    calls = []

    def task(pid):
        calls.append(pid)
        raise RuntimeError("boom")

    (job,) = queue.enqueue_batch("b1", [7], task)
    assert calls == [7, 7, 7]
    assert job.status is JobStatus.FAILED
    assert job.attempt == 3
    assert job.error == "boom"
    assert sleeps == [2, 4]


def test_backoff_doubles_from_base():
    queue = JobQueue(backoff_seconds=2)
    assert [queue.backoff_delay(n) for n in (1, 2, 3)] == [2, 4, 8]


def test_transient_failure_recovers_on_retry():
    queue, sleeps = _eager_queue(backoff_seconds=0.5)
    attempts = {}

    def task(pid):
        attempts[pid] = attempts.get(pid, 0) + 1
        if attempts[pid] == 1:
            raise OSError("disk busy")
        return f"ok-{pid}"

    jobs = queue.enqueue_batch("b2", [1, 2], task)
    assert [job.status for job in jobs] == [JobStatus.COMPLETED] * 2
    assert [job.result for job in jobs] == ["ok-1", "ok-2"]
    assert sleeps == [0.5, 0.5]
    progress = queue.get_progress("b2")
    assert (progress.total, progress.completed, progress.failed, progress.generated) == (2, 2, 0, 2)


def test_non_retryable_error_fails_immediately():
    queue, sleeps = _eager_queue()
    failures = []
    queue.failure_hook = failures.append

    def task(pid):
        raise NonRetryableError("participant missing")

    (job,) = queue.enqueue_batch("b3", [9], task, counter="sent")
    assert job.attempt == 1
    assert sleeps == []
    assert failures == [job]
    result = queue.wait("b3")
    assert (result.success_count, result.failure_count) == (0, 1)
    assert result.results[0]["participant_id"] == 9
    assert result.results[0]["error"] == "participant missing"


def test_failure_hook_errors_do_not_break_the_batch(caplog):
    queue, _ = _eager_queue(max_attempts=1)
    queue.failure_hook = lambda job: 1 / 0

    def task(pid):
        if pid == 2:
            raise RuntimeError("bad")

    caplog.set_level("ERROR", logger="certdesk.jobs")
    queue.enqueue_batch("b4", [1, 2, 3], task)
    result = queue.wait("b4")
    assert (result.success_count, result.failure_count) == (2, 1)
    assert any("failure hook error" in m for m in caplog.messages)


def test_enqueue_requires_running_queue():
    queue = JobQueue(eager=True)
    with pytest.raises(JobQueueUnavailable):
        queue.enqueue_batch("b", [1], lambda pid: None)
    queue.start()
    queue.close()
    with pytest.raises(JobQueueUnavailable):
        queue.enqueue_batch("b", [1], lambda pid: None)


def test_empty_batch_is_rejected():
    queue, _ = _eager_queue()
    with pytest.raises(ValueError):
        queue.enqueue_batch("b", [], lambda pid: None)


def test_progress_store_expires_entries():
    now = [100.0]
    store = MemoryProgressStore(ttl_seconds=10, clock=lambda: now[0])
    store.set_total("k", 3)
    assert store.incr("k", "generated") == 1
    now[0] += 9
    assert store.get("k").generated == 1
    now[0] += 11
    assert store.get("k") is None


def test_progress_store_rejects_unknown_counter():
    with pytest.raises(ValueError):
        MemoryProgressStore().incr("k", "printed")


def test_progress_store_increments_are_atomic():
    store = MemoryProgressStore()

    def bump():
        for _ in range(500):
            store.incr("k", "completed")

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get("k").completed == 4000


def test_threaded_pool_runs_batch_with_retries():
    queue = JobQueue(concurrency=4, backoff_seconds=0.01)
    queue.start()
    seen = {}
    lock = threading.Lock()

    def task(pid):
        with lock:
            seen[pid] = seen.get(pid, 0) + 1
            attempt = seen[pid]
        if pid % 2 == 0 and attempt == 1:
            raise RuntimeError("flaky")
        if pid == 5:
            raise NonRetryableError("bad input")
        return pid * 10

    try:
        queue.enqueue_batch("threaded", range(1, 11), task)
        result = queue.wait("threaded", timeout=10)
    finally:
        queue.close()
    assert result.pending == 0
    assert (result.success_count, result.failure_count) == (9, 1)
    assert {r["participant_id"] for r in result.results if not r["ok"]} == {5}
    assert all(seen[pid] == 2 for pid in (2, 4, 6, 8, 10))


def test_polling_ceiling_does_not_cancel_jobs(caplog):
    queue = JobQueue(concurrency=2)
    queue.start()
    release = threading.Event()

    def task(pid):
        release.wait(5)
        return pid

    caplog.set_level("WARNING", logger="certdesk.jobs")
    try:
        queue.enqueue_batch("slow", [1, 2], task)
        progress = queue.poll_progress("slow", ceiling=0, interval=0)
        assert progress.total == 2
        assert not progress.finished
        assert any("polling stopped" in m for m in caplog.messages)
        partial = queue.wait("slow", timeout=0)
        assert partial.pending == 2
        release.set()
        result = queue.wait("slow", timeout=5)
    finally:
        queue.close()
    assert result.success_count == 2
    assert queue.get_progress("slow").completed == 2


def test_close_fails_jobs_waiting_for_a_retry():
    queue = JobQueue(concurrency=1, backoff_seconds=5)
    failures = []
    queue.failure_hook = failures.append
    queue.start()
    attempted = threading.Event()

    def task(pid):
        attempted.set()
        raise RuntimeError("smtp timeout")

    (job,) = queue.enqueue_batch("closing", [1], task)
    assert attempted.wait(5)
    for _ in range(500):
        if job.status is JobStatus.QUEUED and queue._timers:
            break
        time.sleep(0.01)
    queue.close()

    assert job.done.is_set()
    assert job.status is JobStatus.FAILED
    assert job.error == "Job queue closed before retry"
    assert failures == [job]
    result = queue.wait("closing", timeout=1)
    assert (result.success_count, result.failure_count, result.pending) == (0, 1, 0)
    assert queue.get_progress("closing").failed == 1


def test_finished_batches_nobody_waited_on_expire():
    now = [0.0]
    queue = JobQueue(eager=True, sleep=lambda s: None, batch_ttl_seconds=60, clock=lambda: now[0])
    queue.start()
    queue.enqueue_batch("polled-only", [1, 2], lambda pid: pid)
    assert queue.tracked_batches() == ["polled-only"]
    now[0] += 61
    queue.enqueue_batch("next", [3], lambda pid: pid)
    assert queue.tracked_batches() == ["next"]
    queue.close()


def test_close_releases_exit_hook(monkeypatch):
    registered = []
    monkeypatch.setattr("certdesk.services.jobs.atexit.register", registered.append)
    monkeypatch.setattr("certdesk.services.jobs.atexit.unregister", registered.remove)
    queue = JobQueue(eager=True)
    queue.start()
    queue.start()
    assert registered == [queue.close]
    queue.close()
    assert registered == []


def test_memory_store_sweeps_expired_batches_on_write():
    now = [0.0]
    store = MemoryProgressStore(ttl_seconds=10, clock=lambda: now[0])
    store.set_total("old", 1)
    now[0] += 11
    store.set_total("new", 1)
    assert len(store) == 1


class _FakeRedisPipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def hset(self, name, key, value):
        self.ops.append(("hset", name, key, value))

    def hincrby(self, name, key, amount):
        self.ops.append(("hincrby", name, key, amount))

    def expire(self, name, seconds):
        self.ops.append(("expire", name, seconds))

    def execute(self):
        results = []
        for op, name, *args in self.ops:
            bucket = self.client.hashes.setdefault(name, {})
            if op == "hset":
                key, value = args
                bucket[key.encode()] = str(value).encode()
                results.append(1)
            elif op == "hincrby":
                key, amount = args
                value = int(bucket.get(key.encode(), b"0")) + amount
                bucket[key.encode()] = str(value).encode()
                results.append(value)
            else:
                self.client.expiries[name] = args[0]
                results.append(True)
        self.client.transactions += 1
        return results


class _FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.expiries = {}
        self.transactions = 0

    def pipeline(self, transaction=True):
        assert transaction
        return _FakeRedisPipeline(self)

    def hgetall(self, name):
        return dict(self.hashes.get(name, {}))


def test_redis_store_refreshes_expiry_with_every_write():
    client = _FakeRedis()
    store = RedisProgressStore(client, ttl_seconds=900)
    store.set_total("batch-1", 4)
    assert store.incr("batch-1", "completed") == 1
    assert store.incr("batch-1", "generated", 2) == 2
    assert client.transactions == 3
    assert client.expiries == {"certdesk:progress:batch-1": 900}
    progress = store.get("batch-1")
    assert (progress.total, progress.completed, progress.generated, progress.sent) == (4, 1, 2, 0)
    assert store.get("missing") is None
    with pytest.raises(ValueError):
        store.incr("batch-1", "printed")


def test_app_uses_redis_progress_store_when_configured(tmp_path):
    from certdesk.app import create_app, get_job_queue

    app = create_app(
        {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "STORAGE_ROOT": str(tmp_path),
            "JOB_QUEUE_EAGER": True,
            "PROGRESS_REDIS_URL": "redis://localhost:6379/5",
            "PROGRESS_TTL_SECONDS": 120,
        }
    )
    queue = get_job_queue(app)
    try:
        assert isinstance(queue.progress, RedisProgressStore)
        assert queue.progress.ttl_seconds == 120
        assert queue.batch_ttl_seconds == 120
    finally:
        queue.close()
