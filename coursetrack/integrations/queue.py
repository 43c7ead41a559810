"""Durable named job queues with delayed delivery and retry/backoff.

The three notification queues (notifications, reminders, alerts) share one
implementation. Storage sits behind the JobStore protocol:
RedisJobStore (durable, shared between processes) and MemoryJobStore
(single process, used by tests and local runs without a broker).

A job handed to ``JobQueue.add`` is written to the store before the call
returns. Delayed jobs stay invisible until due. A handler that raises is
retried with exponential backoff until the attempt budget is spent, after
which the job is marked failed. UnrecoverableError skips the remaining
attempts.
"""

import heapq
import itertools
import json
import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from typing import Any, NamedTuple, Protocol

import redis

logger = logging.getLogger(__name__)

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

QUEUE_NAMES = ("notifications", "reminders", "alerts")


class UnrecoverableError(Exception):
    """Raised by a handler to fail a job without using its remaining attempts."""


@dataclass
class Job:
    id: str
    name: str
    data: dict
    attempts: int = 3
    backoff_ms: int = 2000
    delay_ms: int = 0
    attempts_made: int = 0
    state: str = WAITING
    timestamp: int = 0
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str = ""
    return_value: Any = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls(**json.loads(raw))


Handler = Callable[[Job], Any]


def backoff_delay(base_ms: int, attempts_made: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""
    return base_ms * 2 ** max(attempts_made - 1, 0)


def _trimmable(job_ids: list[str], limit: int) -> list[str]:
    """The first ``limit`` auto-numbered ids. Caller-chosen ids are kept."""
    return [job_id for job_id in job_ids if job_id.isdigit()][:limit]


# ── Storage ────────────────────────────────────────────────────────────


class JobStore(Protocol):
    """Job storage interface."""

    def next_id(self) -> str: ...
    def load(self, job_id: str) -> Job | None: ...
    def enqueue(self, job: Job, ready_at: int | None) -> None: ...
    def promote_due(self, now_ms: int) -> int: ...
    def claim(self) -> str | None: ...
    def release(self, job_id: str) -> None: ...
    def reschedule(self, job: Job, ready_at: int) -> None: ...
    def finish(self, job: Job) -> None: ...
    def remove(self, job_id: str) -> None: ...
    def requeue_active(self) -> int: ...
    def counts(self) -> dict[str, int]: ...
    def close(self) -> None: ...


_PROMOTE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('LPUSH', KEYS[2], id)
end
return #ids
"""


class RedisJobStore:
    """Redis-backed job storage.

    Layout under ``<prefix>:<queue>:``: ``id`` counter, ``job:<id>`` JSON
    envelope, ``wait`` list (LPUSH/RPOP, FIFO), ``delayed`` sorted set
    scored by ready time, ``active`` list, ``completed`` and ``failed``
    sorted sets scored by finish time.

    Each finished set keeps at most ``keep_finished`` jobs; the oldest
    ones beyond that are deleted together with their envelopes. Jobs added
    under a caller-chosen id (dedup keys) are never trimmed.
    """

    def __init__(
        self,
        client: redis.Redis,
        queue_name: str,
        prefix: str = "coursetrack",
        keep_finished: int = 1000,
    ) -> None:
        self._client = client
        self._base = f"{prefix}:{queue_name}"
        self._keep_finished = keep_finished
        self._promote = client.register_script(_PROMOTE_SCRIPT)

    def _key(self, suffix: str) -> str:
        return f"{self._base}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def next_id(self) -> str:
        return str(self._client.incr(self._key("id")))

    def load(self, job_id: str) -> Job | None:
        raw = self._client.get(self._job_key(job_id))
        if raw is None:
            return None
        return Job.from_json(raw)

    def enqueue(self, job: Job, ready_at: int | None) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.set(self._job_key(job.id), job.to_json())
        if ready_at is None:
            pipe.lpush(self._key("wait"), job.id)
        else:
            pipe.zadd(self._key("delayed"), {job.id: ready_at})
        pipe.execute()

    def promote_due(self, now_ms: int) -> int:
        return int(self._promote(keys=[self._key("delayed"), self._key("wait")], args=[now_ms]))

    def claim(self) -> str | None:
        return self._client.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")

    def release(self, job_id: str) -> None:
        self._client.lrem(self._key("active"), 1, job_id)

    def reschedule(self, job: Job, ready_at: int) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.set(self._job_key(job.id), job.to_json())
        pipe.lrem(self._key("active"), 1, job.id)
        pipe.zadd(self._key("delayed"), {job.id: ready_at})
        pipe.execute()

    def finish(self, job: Job) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.set(self._job_key(job.id), job.to_json())
        pipe.lrem(self._key("active"), 1, job.id)
        pipe.zadd(self._key(job.state), {job.id: job.finished_on or 0})
        pipe.execute()
        self._trim(job.state)

    def _trim(self, state: str) -> None:
        key = self._key(state)
        excess = self._client.zcard(key) - self._keep_finished
        if excess <= 0:
            return
        stale = _trimmable(self._client.zrange(key, 0, -1), excess)
        if not stale:
            return
        pipe = self._client.pipeline(transaction=True)
        pipe.zrem(key, *stale)
        pipe.delete(*(self._job_key(job_id) for job_id in stale))
        pipe.execute()

    def remove(self, job_id: str) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.delete(self._job_key(job_id))
        pipe.lrem(self._key("wait"), 0, job_id)
        pipe.lrem(self._key("active"), 0, job_id)
        for state in (DELAYED, COMPLETED, FAILED):
            pipe.zrem(self._key(state), job_id)
        pipe.execute()

    def requeue_active(self) -> int:
        moved = 0
        while self._client.lmove(self._key("active"), self._key("wait"), "LEFT", "RIGHT") is not None:
            moved += 1
        return moved

    def counts(self) -> dict[str, int]:
        pipe = self._client.pipeline(transaction=False)
        pipe.llen(self._key("wait"))
        pipe.zcard(self._key("delayed"))
        pipe.llen(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        waiting, delayed, active, completed, failed = pipe.execute()
        return {
            WAITING: waiting,
            DELAYED: delayed,
            ACTIVE: active,
            COMPLETED: completed,
            FAILED: failed,
        }

    def close(self) -> None:
        self._client.close()


class MemoryJobStore:
    """In-process job storage with the same semantics as RedisJobStore.

    Jobs are kept as JSON so callers never share mutable state with the store.
    """

    def __init__(self, keep_finished: int = 1000) -> None:
        self._keep_finished = keep_finished
        self._lock = threading.Lock()
        self._seq = 0
        self._order = itertools.count()
        self._jobs: dict[str, str] = {}
        self._wait: deque[str] = deque()
        self._delayed: list[tuple[int, int, str]] = []
        self._active: list[str] = []
        self._finished: dict[str, list[str]] = {COMPLETED: [], FAILED: []}

    def next_id(self) -> str:
        with self._lock:
            self._seq += 1
            return str(self._seq)

    def load(self, job_id: str) -> Job | None:
        with self._lock:
            raw = self._jobs.get(job_id)
        return Job.from_json(raw) if raw is not None else None

    def _push_delayed(self, job_id: str, ready_at: int) -> None:
        heapq.heappush(self._delayed, (ready_at, next(self._order), job_id))

    def enqueue(self, job: Job, ready_at: int | None) -> None:
        with self._lock:
            self._jobs[job.id] = job.to_json()
            if ready_at is None:
                self._wait.appendleft(job.id)
            else:
                self._push_delayed(job.id, ready_at)

    def promote_due(self, now_ms: int) -> int:
        promoted = 0
        with self._lock:
            while self._delayed and self._delayed[0][0] <= now_ms:
                _, _, job_id = heapq.heappop(self._delayed)
                self._wait.appendleft(job_id)
                promoted += 1
        return promoted

    def claim(self) -> str | None:
        with self._lock:
            if not self._wait:
                return None
            job_id = self._wait.pop()
            self._active.append(job_id)
            return job_id

    def release(self, job_id: str) -> None:
        with self._lock:
            if job_id in self._active:
                self._active.remove(job_id)

    def reschedule(self, job: Job, ready_at: int) -> None:
        with self._lock:
            self._jobs[job.id] = job.to_json()
            if job.id in self._active:
                self._active.remove(job.id)
            self._push_delayed(job.id, ready_at)

    def finish(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job.to_json()
            if job.id in self._active:
                self._active.remove(job.id)
            finished = self._finished[job.state]
            finished.append(job.id)
            excess = len(finished) - self._keep_finished
            if excess > 0:
                for job_id in _trimmable(finished, excess):
                    finished.remove(job_id)
                    del self._jobs[job_id]

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            if job_id in self._wait:
                self._wait.remove(job_id)
            if job_id in self._active:
                self._active.remove(job_id)
            self._delayed = [entry for entry in self._delayed if entry[2] != job_id]
            heapq.heapify(self._delayed)
            for finished in self._finished.values():
                if job_id in finished:
                    finished.remove(job_id)

    def requeue_active(self) -> int:
        with self._lock:
            moved = len(self._active)
            for job_id in self._active:
                self._wait.append(job_id)
            self._active.clear()
            return moved

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                WAITING: len(self._wait),
                DELAYED: len(self._delayed),
                ACTIVE: len(self._active),
                COMPLETED: len(self._finished[COMPLETED]),
                FAILED: len(self._finished[FAILED]),
            }

    def close(self) -> None:
        pass


# ── Queue ──────────────────────────────────────────────────────────────


class JobQueue:
    """A named queue with a fixed retry policy.

    Events: ``completed(job, result)``, ``failed(job, exc)`` once a job is
    permanently failed, ``retrying(job, exc, delay_ms)`` before each backoff.
    """

    def __init__(
        self,
        name: str,
        store: JobStore,
        attempts: int = 3,
        backoff_ms: int = 2000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self._store = store
        self._clock = clock
        self._listeners: dict[str, list[Callable]] = defaultdict(list)

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def on(self, event: str, listener: Callable) -> None:
        self._listeners[event].append(listener)

    def _emit(self, event: str, *args) -> None:
        for listener in self._listeners[event]:
            listener(*args)

    def add(self, name: str, data: dict, delay_ms: int = 0, job_id: str | None = None) -> Job:
        """Record a job durably and return it.

        When ``job_id`` is given and a job with that id is pending, running or
        completed, the existing job is returned unchanged. A failed job under
        that id is discarded and replaced by the new one.
        """
        if job_id is not None:
            existing = self._store.load(job_id)
            if existing is not None:
                if existing.state != FAILED:
                    logger.debug(
                        "Queue %s: job %s already exists (%s), not re-added", self.name, job_id, existing.state
                    )
                    return existing
                logger.info("Queue %s: replacing failed job %s", self.name, job_id)
                self._store.remove(job_id)

        now = self._now_ms()
        delay_ms = max(int(delay_ms), 0)
        job = Job(
            id=job_id or self._store.next_id(),
            name=name,
            data=data,
            attempts=self.attempts,
            backoff_ms=self.backoff_ms,
            delay_ms=delay_ms,
            state=DELAYED if delay_ms else WAITING,
            timestamp=now,
        )
        self._store.enqueue(job, now + delay_ms if delay_ms else None)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._store.load(job_id)

    def counts(self) -> dict[str, int]:
        return self._store.counts()

    def recover_stalled(self) -> int:
        """Move jobs left active by a crashed worker back to waiting."""
        moved = self._store.requeue_active()
        if moved:
            logger.warning("Queue %s: re-queued %d stalled job(s)", self.name, moved)
        return moved

    def process_next(self, handlers: Mapping[str, Handler]) -> Job | None:
        """Run the handler for the next ready job. Returns None when idle."""
        self._store.promote_due(self._now_ms())
        job_id = self._store.claim()
        if job_id is None:
            return None

        job = self._store.load(job_id)
        if job is None:
            logger.warning("Queue %s: job %s has no payload, dropping", self.name, job_id)
            self._store.release(job_id)
            return None

        job.state = ACTIVE
        job.attempts_made += 1
        job.processed_on = self._now_ms()
        handler = handlers.get(job.name)

        try:
            if handler is None:
                raise UnrecoverableError(f"No handler registered for job type {job.name!r}")
            result = handler(job)
        except UnrecoverableError as exc:
            self._fail(job, exc)
        except Exception as exc:
            if job.attempts_made < job.attempts:
                self._retry(job, exc)
            else:
                self._fail(job, exc)
        else:
            job.state = COMPLETED
            job.return_value = result
            job.finished_on = self._now_ms()
            self._store.finish(job)
            self._emit("completed", job, result)
        return job

    def _retry(self, job: Job, exc: Exception) -> None:
        delay = backoff_delay(job.backoff_ms, job.attempts_made)
        job.state = DELAYED
        job.failed_reason = str(exc)
        self._store.reschedule(job, self._now_ms() + delay)
        logger.warning(
            "Queue %s: job %s (%s) attempt %d/%d failed, retrying in %d ms: %s",
            self.name, job.id, job.name, job.attempts_made, job.attempts, delay, exc,
        )
        self._emit("retrying", job, exc, delay)

    def _fail(self, job: Job, exc: Exception) -> None:
        job.state = FAILED
        job.failed_reason = str(exc)
        job.finished_on = self._now_ms()
        self._store.finish(job)
        self._emit("failed", job, exc)

    def close(self) -> None:
        self._store.close()


class Queues(NamedTuple):
    notifications: JobQueue
    reminders: JobQueue
    alerts: JobQueue

    def close(self) -> None:
        for queue in self:
            queue.close()


def create_queues(config, clock: Callable[[], float] = time.time) -> Queues:
    """Factory: build the three named queues on the configured backend."""
    if config.queue_backend == "memory":
        logger.warning("Using in-memory job queues: jobs are lost on restart")

        def make_store(name: str) -> JobStore:
            return MemoryJobStore(keep_finished=config.queue_keep_finished)
    else:
        client = redis.from_url(config.redis_url, decode_responses=True)
        client.ping()

        def make_store(name: str) -> JobStore:
            return RedisJobStore(client, name, prefix=config.queue_prefix, keep_finished=config.queue_keep_finished)

    return Queues(*(
        JobQueue(name, make_store(name), attempts=config.job_attempts, backoff_ms=config.job_backoff_ms, clock=clock)
        for name in QUEUE_NAMES
    ))
