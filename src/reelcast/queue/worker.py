"""Worker pool implementation using lease-loop threads.

This module provides concurrent job execution with:
- N independent slots per queue, each leasing and running one job at a time
- Wake-up on enqueue (in-process notification) or a fixed polling interval
- Heartbeat threads extending the lease of long-running handlers
- Classified outcomes: ack on success, nack (retry or not) on failure
- Graceful shutdown bounded by a deadline
"""

import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional

from ..errors import StorageUnavailable
from .backends import QueueBackend
from .models import FailureKind, HandlerResult, Job

logger = logging.getLogger(__name__)

Handler = Callable[[Job], HandlerResult]


class JobWorkerPool:
    """Thread-based worker pool for one named queue.

    Features:
    - Concurrent slots; handlers for different jobs never block each other
    - Idle slots sleep on a condition that enqueue notifications signal
    - Exceptions escaping a handler are classified as transient failures
    - Context manager for graceful shutdown

    Slots are daemon threads: a handler that outlives the shutdown deadline
    does not keep the process alive. Its lease then expires and the job is
    reclaimed by the next process start.
    """

    def __init__(
        self,
        queue: QueueBackend,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 60.0,
        shutdown_timeout_s: float = 30.0,
    ):
        """Initialize worker pool.

        Args:
            queue: Backend to lease from and report outcomes to
            poll_interval_s: Max idle wait between lease attempts
            heartbeat_interval_s: Lease extension period while a handler runs
            shutdown_timeout_s: Default drain deadline for stop()
        """
        self.queue = queue
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.shutdown_timeout_s = shutdown_timeout_s

        self.queue_name: Optional[str] = None
        self._handler: Optional[Handler] = None
        self._threads: List[threading.Thread] = []
        self._wakeup = threading.Condition()
        self._stopping = threading.Event()
        self._listening = False
        self._stats_lock = threading.Lock()
        self.stats: Dict[str, int] = {"succeeded": 0, "failed": 0}

    def __enter__(self):
        return self

    def __exit__(self, *args):
        """Drain worker slots on context exit."""
        self.stop()

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads) and not self._stopping.is_set()

    def start(self, queue_name: str, concurrency: int, handler: Handler) -> None:
        """Start ``concurrency`` slots leasing from ``queue_name``.

        Args:
            queue_name: Queue to consume
            concurrency: Number of parallel slots
            handler: Callable run for every leased job
        """
        if self.is_running:
            raise RuntimeError(f"Worker pool already running for '{self.queue_name}'")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.queue_name = queue_name
        self._handler = handler
        self._stopping.clear()
        if not self._listening:
            self.queue.add_listener(self._on_enqueue)
            self._listening = True

        self._threads = []
        for slot in range(concurrency):
            worker_id = f"{queue_name}-{os.getpid()}-{slot}"
            thread = threading.Thread(
                target=self._slot_loop, args=(worker_id,), name=worker_id, daemon=True
            )
            thread.start()
            self._threads.append(thread)

        logger.info("Started %d worker slot(s) on '%s'", concurrency, queue_name)

    def stop(self, timeout_s: Optional[float] = None) -> bool:
        """Stop leasing, wait for in-flight handlers, then return.

        Args:
            timeout_s: Drain deadline (default: shutdown_timeout_s)

        Returns:
            True if every slot finished before the deadline
        """
        timeout_s = self.shutdown_timeout_s if timeout_s is None else timeout_s
        self.request_stop()
        return self.join(time.monotonic() + timeout_s)

    def request_stop(self) -> None:
        """Stop leasing and wake idle slots without waiting for them."""
        self._stopping.set()
        with self._wakeup:
            self._wakeup.notify_all()

    def join(self, deadline: float) -> bool:
        """Wait for slots to finish until ``deadline`` (a time.monotonic() value).

        Returns:
            True if every slot finished before the deadline
        """
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        stuck = [t.name for t in self._threads if t.is_alive()]
        if stuck:
            logger.warning(
                "Shutdown deadline reached on '%s'; abandoning slot(s) %s "
                "(their leases will expire and be reclaimed)",
                self.queue_name,
                ", ".join(stuck),
            )
        else:
            logger.info("Worker pool '%s' drained", self.queue_name)
        self._threads = []
        return not stuck

    def _on_enqueue(self, queue_name: str) -> None:
        if queue_name == self.queue_name:
            with self._wakeup:
                self._wakeup.notify()

    def _slot_loop(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                job = self.queue.lease(self.queue_name, worker_id)
            except StorageUnavailable:
                logger.exception("Lease failed on '%s'", self.queue_name)
                job = None

            if job is None:
                with self._wakeup:
                    if self._stopping.is_set():
                        break
                    self._wakeup.wait(timeout=self.poll_interval_s)
                continue

            self._run_job(job, worker_id)

    def _run_job(self, job: Job, worker_id: str) -> None:
        logger.info(
            "%s picked up %s job %s (attempt %d/%d)",
            worker_id, job.type, job.id, job.attempts + 1, job.max_attempts,
        )
        start_time = time.monotonic()
        heartbeat = _start_heartbeat(self.queue, job.id, self.heartbeat_interval_s)
        try:
            result = self._invoke(job)
        finally:
            _stop_heartbeat(heartbeat)
        duration = time.monotonic() - start_time

        try:
            if result.ok:
                self.queue.ack(job.id, result.value, worker_id=worker_id)
                self._count("succeeded")
                logger.info("Job %s succeeded in %.1fs", job.id, duration)
            else:
                new_state = self.queue.nack(
                    job.id,
                    f"[{result.kind.value}] {result.error}",
                    retry=result.retryable,
                    worker_id=worker_id,
                )
                self._count("failed")
                logger.warning(
                    "Job %s failed in %.1fs (%s): %s -> %s",
                    job.id,
                    duration,
                    result.kind.value,
                    result.error,
                    new_state.value if new_state else "ignored",
                )
        except StorageUnavailable:
            # Outcome not recorded; the lease expires and the job is reclaimed
            logger.exception("Could not record outcome of job %s", job.id)

    def _invoke(self, job: Job) -> HandlerResult:
        try:
            result = self._handler(job)
        except Exception as e:
            logger.exception("Unhandled error in handler for job %s", job.id)
            return HandlerResult.failure(FailureKind.TRANSIENT, f"{type(e).__name__}: {e}")
        if not isinstance(result, HandlerResult):
            return HandlerResult.failure(
                FailureKind.TRANSIENT, f"Handler returned {type(result).__name__}, not HandlerResult"
            )
        return result

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1


def _start_heartbeat(queue: QueueBackend, job_id: str, interval_s: float):
    """Start background thread extending the job lease every interval_s.

    Returns:
        Tuple of (thread, stop_event) for cleanup
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                queue.extend_lease(job_id)
            except StorageUnavailable as e:
                # Log but don't crash thread
                logger.warning("Heartbeat failed for %s: %s", job_id, e)

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id}", daemon=True)
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data):
    """Stop heartbeat thread.

    Signals thread to stop and waits up to 5s for clean shutdown.
    """
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
