"""In-process job queue for bulk certificate work.

Jobs move ``queued -> active -> completed`` or, after exhausting their
attempts, ``failed``. A failed attempt that may be retried goes back to
``queued`` after ``backoff_seconds * 2 ** (attempt - 1)`` seconds.
"""

from __future__ import annotations

import atexit
import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Union

import redis

logger = logging.getLogger("certdesk.jobs")

Task = Callable[[int], Any]


class JobQueueUnavailable(RuntimeError):
    """Raised when work is submitted to a queue that is not running."""


class NonRetryableError(RuntimeError):
    """A job error that retrying cannot fix."""


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(eq=False)
class RenderJob:
    participant_id: int
    batch_key: str
    max_attempts: int = 3
    attempt: int = 0
    status: JobStatus = JobStatus.QUEUED
    error: str | None = None
    result: Any = None
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    def as_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "ok": self.status is JobStatus.COMPLETED,
            "attempts": self.attempt,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class Progress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    generated: int = 0
    sent: int = 0

    @property
    def finished(self) -> bool:
        return self.completed + self.failed >= self.total


@dataclass
class BatchResult:
    success_count: int
    failure_count: int
    results: list[dict]
    pending: int = 0


PROGRESS_COUNTERS = tuple(Progress.__dataclass_fields__)


def _check_counter(counter: str) -> None:
    if counter not in PROGRESS_COUNTERS:
        raise ValueError(f"Unknown progress counter {counter!r}")


class MemoryProgressStore:
    """Per-batch counters with expiry; every update happens under one lock."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Progress]] = {}

    def __len__(self) -> int:
        with self._lock:
            self._sweep()
            return len(self._entries)

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]

    def _live(self, key: str) -> Progress | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, progress = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return progress

    def _touch(self, key: str, progress: Progress) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, progress)

    def set_total(self, key: str, total: int) -> None:
        with self._lock:
            self._sweep()
            progress = self._live(key) or Progress()
            progress.total = total
            self._touch(key, progress)

    def incr(self, key: str, counter: str, amount: int = 1) -> int:
        _check_counter(counter)
        with self._lock:
            progress = self._live(key) or Progress()
            value = getattr(progress, counter) + amount
            setattr(progress, counter, value)
            self._touch(key, progress)
            return value

    def get(self, key: str) -> Progress | None:
        with self._lock:
            progress = self._live(key)
            if progress is None:
                return None
            return Progress(**vars(progress))


class RedisProgressStore:
    """Per-batch counters kept in a redis hash.

    Every write runs in a MULTI/EXEC pipeline together with an ``EXPIRE``, so
    the counters of a batch nobody reads any more disappear on their own.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: float = 3600, prefix: str = "certdesk:progress:"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisProgressStore":
        return cls(redis.Redis.from_url(url), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _ttl(self) -> int:
        return max(1, int(self.ttl_seconds))

    def set_total(self, key: str, total: int) -> None:
        name = self._key(key)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(name, "total", int(total))
        pipe.expire(name, self._ttl())
        pipe.execute()

    def incr(self, key: str, counter: str, amount: int = 1) -> int:
        _check_counter(counter)
        name = self._key(key)
        pipe = self.client.pipeline(transaction=True)
        pipe.hincrby(name, counter, amount)
        pipe.expire(name, self._ttl())
        value, _ = pipe.execute()
        return int(value)

    def get(self, key: str) -> Progress | None:
        raw = self.client.hgetall(self._key(key))
        if not raw:
            return None
        values = {
            (name.decode() if isinstance(name, bytes) else name): int(value)
            for name, value in raw.items()
        }
        return Progress(**{name: values.get(name, 0) for name in PROGRESS_COUNTERS})


ProgressStore = Union[MemoryProgressStore, RedisProgressStore]


class JobQueue:
    def __init__(
        self,
        concurrency: int = 10,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        progress_store: ProgressStore | None = None,
        eager: bool = False,
        failure_hook: Callable[[RenderJob], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        batch_ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.progress = progress_store or MemoryProgressStore()
        self.eager = eager
        self.failure_hook = failure_hook
        self._sleep = sleep
        self.batch_ttl_seconds = batch_ttl_seconds
        self._clock = clock
        self._tasks: queue.Queue = queue.Queue()
        self._workers: list[threading.Thread] = []
        self._timers: dict[threading.Timer, RenderJob] = {}
        self._batches: dict[str, list[RenderJob]] = {}
        self._batch_touched: dict[str, float] = {}
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            atexit.register(self.close)
            if self.eager:
                return
            for n in range(self.concurrency):
                worker = threading.Thread(
                    target=self._work, name=f"certdesk-worker-{n}", daemon=True
                )
                worker.start()
                self._workers.append(worker)

    def close(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            for timer in self._timers:
                timer.cancel()
            stranded = list(self._timers.values())
            self._timers.clear()
            workers, self._workers = self._workers, []
        atexit.unregister(self.close)
        for job in stranded:
            self._fail(job, "Job queue closed before retry")
        for _ in workers:
            self._tasks.put(None)
        for worker in workers:
            worker.join(timeout)
        logger.info("[QUEUE] closed stranded_retries=%s", len(stranded))

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))

    def enqueue_batch(
        self,
        batch_key: str,
        participant_ids: Iterable[int],
        task: Task,
        counter: str = "generated",
    ) -> list[RenderJob]:
        """Queue one job per participant and return their handles."""
        if not self._running:
            raise JobQueueUnavailable("Job queue is not running")
        ids = list(participant_ids)
        if not ids:
            raise ValueError("Batch has no participants")
        jobs = [RenderJob(pid, batch_key, self.max_attempts) for pid in ids]
        with self._lock:
            self._prune_batches()
            batch = self._batches.setdefault(batch_key, [])
            batch.extend(jobs)
            self._batch_touched[batch_key] = self._clock()
            total = len(batch)
        self.progress.set_total(batch_key, total)
        logger.info("[QUEUE] batch=%s jobs=%s counter=%s", batch_key, len(jobs), counter)
        for job in jobs:
            if self.eager:
                self._run_eager(job, task, counter)
            else:
                self._tasks.put((job, task, counter))
        return jobs

    def get_progress(self, batch_key: str) -> Progress | None:
        return self.progress.get(batch_key)

    def wait(self, batch_key: str, timeout: float | None = None) -> BatchResult:
        """Block until the batch finishes or ``timeout`` elapses.

        Jobs still running at the deadline are reported as pending.
        """
        with self._lock:
            jobs = list(self._batches.get(batch_key, ()))
        deadline = None if timeout is None else time.monotonic() + timeout
        for job in jobs:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not job.done.wait(remaining):
                break
        finished = [job for job in jobs if job.done.is_set()]
        success = sum(1 for job in finished if job.status is JobStatus.COMPLETED)
        result = BatchResult(
            success_count=success,
            failure_count=len(finished) - success,
            results=[job.as_dict() for job in finished],
            pending=len(jobs) - len(finished),
        )
        if not result.pending:
            with self._lock:
                self._batches.pop(batch_key, None)
                self._batch_touched.pop(batch_key, None)
        return result

    def tracked_batches(self) -> list[str]:
        with self._lock:
            return list(self._batches)

    def _prune_batches(self) -> None:
        """Forget finished batches nobody waited on once they outlive the TTL.

        Caller holds ``self._lock``.
        """
        cutoff = self._clock() - self.batch_ttl_seconds
        for key, touched in list(self._batch_touched.items()):
            if touched > cutoff:
                continue
            if all(job.done.is_set() for job in self._batches.get(key, ())):
                self._batches.pop(key, None)
                del self._batch_touched[key]

    def poll_progress(
        self,
        batch_key: str,
        ceiling: float = 600,
        interval: float = 1.0,
        on_progress: Callable[[Progress], None] | None = None,
    ) -> Progress:
        """Poll counters until the batch is finished or ``ceiling`` seconds pass.

        Reaching the ceiling only stops polling; queued jobs keep running.
        """
        started = time.monotonic()
        while True:
            progress = self.get_progress(batch_key) or Progress()
            if on_progress is not None:
                on_progress(progress)
            if progress.total and progress.finished:
                return progress
            if time.monotonic() - started >= ceiling:
                logger.warning(
                    "[QUEUE] batch=%s polling stopped after %ss; jobs keep running",
                    batch_key,
                    ceiling,
                )
                return progress
            self._sleep(interval)

    def _work(self) -> None:
        while True:
            item = self._tasks.get()
            if item is None:
                break
            job, task, counter = item
            delay = self._attempt(job, task, counter)
            if delay is not None:
                self._schedule_retry(job, task, counter, delay)

    def _run_eager(self, job: RenderJob, task: Task, counter: str) -> None:
        while True:
            delay = self._attempt(job, task, counter)
            if delay is None:
                return
            self._sleep(delay)

    def _schedule_retry(self, job: RenderJob, task: Task, counter: str, delay: float) -> None:
        def requeue():
            with self._lock:
                # close() already failed the job if it removed this timer
                if self._timers.pop(timer, None) is None:
                    return
                running = self._running
            if running:
                self._tasks.put((job, task, counter))
            else:
                self._fail(job, "Job queue closed before retry")

        timer = threading.Timer(delay, requeue)
        timer.daemon = True
        with self._lock:
            running = self._running
            if running:
                self._timers[timer] = job
        if not running:
            self._fail(job, "Job queue closed before retry")
            return
        timer.start()

    def _attempt(self, job: RenderJob, task: Task, counter: str) -> float | None:
        """Run one attempt; return the retry delay, or ``None`` when the job is done."""
        job.attempt += 1
        job.status = JobStatus.ACTIVE
        try:
            job.result = task(job.participant_id)
        except NonRetryableError as exc:
            self._fail(job, str(exc))
            return None
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            if job.attempt < job.max_attempts:
                delay = self.backoff_delay(job.attempt)
                job.status = JobStatus.QUEUED
                job.error = reason
                logger.warning(
                    "[QUEUE] retry batch=%s participant=%s attempt=%s/%s delay=%ss reason=%s",
                    job.batch_key,
                    job.participant_id,
                    job.attempt,
                    job.max_attempts,
                    delay,
                    reason,
                )
                return delay
            self._fail(job, reason)
            return None
        job.status = JobStatus.COMPLETED
        job.error = None
        self.progress.incr(job.batch_key, "completed")
        self.progress.incr(job.batch_key, counter)
        job.done.set()
        return None

    def _fail(self, job: RenderJob, reason: str) -> None:
        job.status = JobStatus.FAILED
        job.error = reason
        logger.error(
            "[QUEUE] failed batch=%s participant=%s attempts=%s reason=%s",
            job.batch_key,
            job.participant_id,
            job.attempt,
            reason,
        )
        self.progress.incr(job.batch_key, "failed")
        if self.failure_hook is not None:
            try:
                self.failure_hook(job)
            except Exception:
                logger.exception(
                    "[QUEUE] failure hook error batch=%s participant=%s",
                    job.batch_key,
                    job.participant_id,
                )
        job.done.set()
