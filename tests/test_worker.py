"""Tests for the thread-based worker pool."""

import threading
import time

import pytest

from reelcast.queue import FailureKind, HandlerResult, JobState, JobWorkerPool


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def pool(queue):
    p = JobWorkerPool(queue, poll_interval_s=0.05, heartbeat_interval_s=0.05, shutdown_timeout_s=5.0)
    yield p
    p.stop(timeout_s=5.0)


def test_successful_job_is_acked(queue, pool):
    job_id = queue.enqueue("generation", "generate-video", {"x": 1})
    pool.start("generation", 1, lambda job: HandlerResult.success(echo=job.payload["x"]))

    assert wait_for(lambda: queue.get_job(job_id).state == JobState.COMPLETED)
    assert queue.get_job(job_id).result == {"echo": 1}
    assert pool.stats["succeeded"] == 1


def test_transient_failure_is_nacked_for_retry(queue, pool):
    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start("generation", 1, lambda job: HandlerResult.failure(FailureKind.TRANSIENT, "503"))

    assert wait_for(lambda: queue.get_job(job_id).state == JobState.DELAYED)
    job = queue.get_job(job_id)
    assert job.attempts == 1
    assert job.failure_reason == "[transient] 503"


def test_data_integrity_failure_is_not_retried(queue, pool):
    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start(
        "generation", 1, lambda job: HandlerResult.failure(FailureKind.DATA_INTEGRITY, "missing")
    )

    assert wait_for(lambda: queue.get_job(job_id).state == JobState.FAILED)
    assert queue.get_job(job_id).attempts == 1


def test_handler_exception_classified_as_transient(queue, pool):
    def explode(job):
        raise RuntimeError("unexpected")

    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start("generation", 1, explode)

    assert wait_for(lambda: queue.get_job(job_id).state == JobState.DELAYED)
    assert queue.get_job(job_id).failure_reason == "[transient] RuntimeError: unexpected"


def test_non_result_return_is_a_failure(queue, pool):
    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start("generation", 1, lambda job: {"ok": True})

    assert wait_for(lambda: queue.get_job(job_id).state == JobState.DELAYED)


def test_enqueue_wakes_idle_slot(queue):
    pool = JobWorkerPool(queue, poll_interval_s=30.0)
    done = threading.Event()

    def handler(job):
        done.set()
        return HandlerResult.success()

    pool.start("generation", 1, handler)
    time.sleep(0.1)  # Let the slot go idle on its 30s wait
    queue.enqueue("generation", "generate-video", {})

    assert done.wait(timeout=5.0)
    pool.stop(timeout_s=5.0)


def test_slots_run_concurrently(queue, pool):
    barrier = threading.Barrier(2, timeout=5.0)

    def handler(job):
        barrier.wait()
        return HandlerResult.success()

    ids = [queue.enqueue("generation", "generate-video", {}) for _ in range(2)]
    pool.start("generation", 2, handler)

    assert wait_for(lambda: all(queue.get_job(i).state == JobState.COMPLETED for i in ids))


def test_heartbeat_extends_lease(queue, pool, clock):
    release = threading.Event()
    leased = threading.Event()

    def handler(job):
        leased.set()
        release.wait(timeout=5.0)
        return HandlerResult.success()

    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start("generation", 1, handler)
    assert leased.wait(timeout=5.0)
    first_deadline = queue.get_job(job_id).lease_expires_at

    clock.advance(100)
    assert wait_for(lambda: queue.get_job(job_id).lease_expires_at > first_deadline)
    release.set()
    assert wait_for(lambda: queue.get_job(job_id).state == JobState.COMPLETED)


def test_stop_waits_for_in_flight_handler(queue):
    pool = JobWorkerPool(queue, poll_interval_s=0.05)
    started = threading.Event()

    def handler(job):
        started.set()
        time.sleep(0.3)
        return HandlerResult.success()

    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start("generation", 1, handler)
    assert started.wait(timeout=5.0)

    assert pool.stop(timeout_s=5.0) is True
    assert queue.get_job(job_id).state == JobState.COMPLETED
    assert not pool.is_running


def test_stop_deadline_abandons_stuck_handler(queue):
    pool = JobWorkerPool(queue, poll_interval_s=0.05)
    started = threading.Event()
    release = threading.Event()

    def handler(job):
        started.set()
        release.wait(timeout=10.0)
        return HandlerResult.success()

    job_id = queue.enqueue("generation", "generate-video", {})
    pool.start("generation", 1, handler)
    assert started.wait(timeout=5.0)

    assert pool.stop(timeout_s=0.1) is False
    assert queue.get_job(job_id).state == JobState.ACTIVE
    release.set()
    assert wait_for(lambda: queue.get_job(job_id).state == JobState.COMPLETED)


def test_no_leases_after_stop(queue):
    pool = JobWorkerPool(queue, poll_interval_s=0.05)
    pool.start("generation", 2, lambda job: HandlerResult.success())
    pool.stop(timeout_s=5.0)

    job_id = queue.enqueue("generation", "generate-video", {})
    time.sleep(0.2)
    assert queue.get_job(job_id).state == JobState.WAITING


def test_double_start_rejected(queue, pool):
    pool.start("generation", 1, lambda job: HandlerResult.success())
    with pytest.raises(RuntimeError):
        pool.start("generation", 1, lambda job: HandlerResult.success())
