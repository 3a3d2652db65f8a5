"""Abstract base class for queue backends.

This module defines the interface for durable queue operations. The local
implementation is SQLite-backed (see ``sqlite_backend``); the interface stays
small enough to put Redis or Postgres behind it later.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional

if TYPE_CHECKING:
    from .models import BackoffStrategy, Job, JobCounts, JobState


class QueueBackend(ABC):
    """Abstract durable queue shared by all named queues.

    Implementations must provide:
    - Atomic lease (two slots never claim the same job)
    - Priority DESC then FIFO ordering within a queue
    - Idempotent ack/nack on terminal jobs
    - Lease expiry tracked in storage so a new process can reclaim jobs
    """

    @abstractmethod
    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        delay_s: float = 0.0,
        max_attempts: Optional[int] = None,
        backoff: Optional["BackoffStrategy"] = None,
    ) -> str:
        """Persist a new job in ``waiting`` (or ``delayed`` if delay_s > 0).

        Returns:
            The new job id

        Raises:
            StorageUnavailable: If the backing store cannot be written
        """

    @abstractmethod
    def lease(self, queue_name: str, worker_id: Optional[str] = None) -> Optional["Job"]:
        """Non-blocking claim of the next eligible job.

        Returns:
            The job, now ``active``, or None if nothing is eligible
        """

    @abstractmethod
    def extend_lease(self, job_id: str) -> None:
        """Push the lease deadline of an active job forward (heartbeat)."""

    @abstractmethod
    def ack(
        self,
        job_id: str,
        result: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        """Mark an active job completed. No-op on any other state.

        With ``worker_id`` the call is also a no-op unless that worker holds
        the current lease.
        """

    @abstractmethod
    def nack(
        self,
        job_id: str,
        error: str,
        retry: bool = True,
        worker_id: Optional[str] = None,
    ) -> Optional["JobState"]:
        """Record a failed attempt.

        If ``retry`` and attempts remain, the job is delayed per its backoff
        strategy; otherwise it fails permanently. No-op unless active (and,
        with ``worker_id``, leased by that worker).
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        """Lookup by id."""

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        """Remove a waiting/delayed job; flag an active one (advisory)."""

    @abstractmethod
    def is_cancel_requested(self, job_id: str) -> bool:
        """True if an advisory cancel was recorded for the job."""

    @abstractmethod
    def counts(self, queue_name: str) -> "JobCounts":
        """Job counts by state for one queue."""

    @abstractmethod
    def purge(
        self,
        older_than: timedelta,
        states: Iterable["JobState"] = (),
        queue_name: Optional[str] = None,
    ) -> int:
        """Delete terminal jobs finished longer ago than ``older_than``."""

    @abstractmethod
    def reclaim_expired(self) -> int:
        """Return active jobs with expired leases to ``waiting``."""

    @abstractmethod
    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the queue name after each enqueue."""
