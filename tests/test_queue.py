"""Tests for the job queue (memory-backed)."""

import pytest

from conftest import FakeClock
from coursetrack.integrations.queue import (
    COMPLETED,
    DELAYED,
    FAILED,
    Job,
    JobQueue,
    MemoryJobStore,
    UnrecoverableError,
    backoff_delay,
)


@pytest.fixture
def queue(clock):
    return JobQueue("notifications", MemoryJobStore(), attempts=3, backoff_ms=2000, clock=clock)


def _flaky(failures: int):
    """Handler that raises on its first ``failures`` calls."""
    calls = []

    def handler(job: Job):
        calls.append(job.attempts_made)
        if len(calls) <= failures:
            raise ConnectionError(f"boom {len(calls)}")
        return {"success": True}

    handler.calls = calls
    return handler


class TestBackoffDelay:
    def test_doubles_each_attempt(self):
        assert [backoff_delay(2000, n) for n in (1, 2, 3)] == [2000, 4000, 8000]


class TestAdd:
    def test_assigns_sequential_ids(self, queue):
        a = queue.add("x", {"n": 1})
        b = queue.add("x", {"n": 2})
        assert (a.id, b.id) == ("1", "2")
        assert queue.counts()["waiting"] == 2

    def test_delayed_job_counted_as_delayed(self, queue):
        job = queue.add("x", {}, delay_ms=5000)
        assert job.state == DELAYED
        assert queue.counts()["delayed"] == 1

    def test_negative_delay_is_immediate(self, queue):
        job = queue.add("x", {}, delay_ms=-10)
        assert job.delay_ms == 0
        assert queue.counts()["waiting"] == 1

    def test_custom_id_deduplicates(self, queue):
        first = queue.add("x", {"n": 1}, job_id="key-1")
        second = queue.add("x", {"n": 2}, job_id="key-1")
        assert second.id == first.id
        assert second.data == {"n": 1}
        assert queue.counts()["waiting"] == 1

    def test_custom_id_deduplicates_after_completion(self, queue):
        queue.add("x", {}, job_id="key-1")
        queue.process_next({"x": lambda job: "ok"})
        queue.add("x", {}, job_id="key-1")
        assert queue.counts()["waiting"] == 0

    def test_custom_id_replaces_failed_job(self, queue):
        def handler(job):
            raise UnrecoverableError("gone")

        queue.add("x", {"n": 1}, job_id="key-1")
        queue.process_next({"x": handler})

        job = queue.add("x", {"n": 2}, job_id="key-1")

        assert job.state == "waiting"
        assert queue.get_job("key-1").data == {"n": 2}
        assert queue.counts()["failed"] == 0
        assert queue.counts()["waiting"] == 1


class TestRetention:
    def test_oldest_finished_jobs_trimmed(self, clock):
        queue = JobQueue("alerts", MemoryJobStore(keep_finished=2), clock=clock)
        for n in range(4):
            queue.add("x", {"n": n})
        while queue.process_next({"x": lambda job: None}):
            pass

        assert queue.counts()["completed"] == 2
        assert queue.get_job("1") is None
        assert queue.get_job("2") is None
        assert queue.get_job("4").state == COMPLETED

    def test_custom_id_jobs_never_trimmed(self, clock):
        queue = JobQueue("reminders", MemoryJobStore(keep_finished=2), clock=clock)
        queue.add("x", {}, job_id="weekly_reminder:1:2024-W05")
        for _ in range(3):
            queue.add("x", {})
        while queue.process_next({"x": lambda job: None}):
            pass

        assert queue.get_job("weekly_reminder:1:2024-W05").state == COMPLETED
        assert queue.get_job("1") is None
        assert queue.get_job("2") is None
        assert queue.get_job("3").state == COMPLETED


class TestProcessNext:
    def test_returns_none_when_idle(self, queue):
        assert queue.process_next({}) is None

    def test_fifo_order(self, queue):
        seen = []
        for n in range(3):
            queue.add("x", {"n": n})
        while queue.process_next({"x": lambda job: seen.append(job.data["n"])}):
            pass
        assert seen == [0, 1, 2]

    def test_completed_records_return_value(self, queue):
        added = queue.add("x", {})
        job = queue.process_next({"x": lambda job: {"success": True, "messageId": "m1"}})
        assert job.state == COMPLETED
        stored = queue.get_job(added.id)
        assert stored.return_value == {"success": True, "messageId": "m1"}
        assert stored.attempts_made == 1

    def test_delayed_job_invisible_until_due(self, queue, clock):
        queue.add("x", {}, delay_ms=5000)
        handler = _flaky(0)
        assert queue.process_next({"x": handler}) is None
        clock.advance_ms(4999)
        assert queue.process_next({"x": handler}) is None
        clock.advance_ms(1)
        assert queue.process_next({"x": handler}).state == COMPLETED

    def test_missing_handler_fails_without_retry(self, queue):
        queue.add("unknown", {})
        job = queue.process_next({})
        assert job.state == FAILED
        assert job.attempts_made == 1
        assert "No handler" in job.failed_reason


class TestRetry:
    def test_succeeds_on_third_attempt_after_backoff(self, queue, clock):
        handler = _flaky(2)
        added = queue.add("x", {})

        assert queue.process_next({"x": handler}).state == DELAYED
        assert queue.process_next({"x": handler}) is None
        clock.advance_ms(2000)
        assert queue.process_next({"x": handler}).state == DELAYED
        clock.advance_ms(3999)
        assert queue.process_next({"x": handler}) is None
        clock.advance_ms(1)
        job = queue.process_next({"x": handler})

        assert job.state == COMPLETED
        assert handler.calls == [1, 2, 3]
        assert job.finished_on - added.timestamp >= 2000 + 4000

    def test_fails_after_all_attempts(self, queue, clock):
        handler = _flaky(10)
        failed = []
        queue.on("failed", lambda job, exc: failed.append((job.id, str(exc))))
        queue.add("x", {})

        for _ in range(10):
            queue.process_next({"x": handler})
            clock.advance_ms(60_000)

        assert handler.calls == [1, 2, 3]
        assert failed == [("1", "boom 3")]
        assert queue.counts() == {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 1}

    def test_unrecoverable_error_skips_remaining_attempts(self, queue):
        def handler(job):
            raise UnrecoverableError("gone")

        queue.add("x", {})
        job = queue.process_next({"x": handler})
        assert job.state == FAILED
        assert job.attempts_made == 1

    def test_retrying_event_reports_delay(self, queue):
        delays = []
        queue.on("retrying", lambda job, exc, delay: delays.append(delay))
        queue.add("x", {})
        queue.process_next({"x": _flaky(1)})
        assert delays == [2000]


class TestEvents:
    def test_completed_event(self, queue):
        results = []
        queue.on("completed", lambda job, result: results.append(result))
        queue.add("x", {})
        queue.process_next({"x": lambda job: 42})
        assert results == [42]


class TestRecoverStalled:
    def test_requeues_active_jobs(self):
        store = MemoryJobStore()
        queue = JobQueue("alerts", store, clock=FakeClock())
        queue.add("x", {})
        store.claim()  # simulate a worker that died mid-job
        assert queue.counts()["active"] == 1

        assert queue.recover_stalled() == 1
        assert queue.process_next({"x": lambda job: None}).state == COMPLETED
