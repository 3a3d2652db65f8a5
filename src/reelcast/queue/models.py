"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time in UTC; every stored timestamp uses it."""
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        waiting → active      (worker leases)
        delayed → active      (worker leases once run_at has passed)
        active → completed    (ack)
        active → delayed      (nack with attempts remaining)
        active → failed       (nack with attempts exhausted, or not retryable)
        active → waiting      (lease expired, reclaimed on startup)
        waiting/delayed → ∅   (cancel removes the row)
    """

    WAITING = "waiting"  # Ready to be leased
    ACTIVE = "active"  # Leased by a worker slot
    DELAYED = "delayed"  # Waiting for run_at (enqueue delay or retry backoff)
    COMPLETED = "completed"  # Handler succeeded
    FAILED = "failed"  # Attempts exhausted or permanent failure


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class BackoffStrategy(BaseModel):
    """Maps an attempt count to a retry delay."""

    type: Literal["exponential", "fixed"] = Field(
        default="exponential", description="Growth of the delay between attempts"
    )
    delay_s: float = Field(default=2.0, ge=0.0, description="Base delay in seconds")

    def delay_for(self, attempts: int) -> float:
        """Delay before the next attempt, given the attempts made so far.

        Exponential: ``delay_s * 2^(attempts-1)`` so a 2s base yields 2s, 4s, 8s.
        """
        if self.type == "fixed":
            return self.delay_s
        return self.delay_s * (2 ** max(attempts - 1, 0))


class QueueSettings(BaseModel):
    """Per-queue defaults applied at enqueue time and by the worker pool."""

    name: str = Field(..., min_length=1, description="Queue name")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before a job fails permanently")
    backoff: BackoffStrategy = Field(default_factory=BackoffStrategy)
    concurrency: int = Field(default=2, ge=1, description="Worker slots for this queue")
    keep_completed: Optional[int] = Field(
        default=100, ge=0, description="Newest completed jobs kept (None = unbounded)"
    )
    keep_failed: Optional[int] = Field(
        default=50, ge=0, description="Newest failed jobs kept (None = unbounded)"
    )
    lease_timeout_s: float = Field(
        default=600.0, gt=0.0, description="Lease duration before an active job is reclaimable"
    )


class Job(BaseModel):
    """A persisted unit of orchestrated work.

    Owned by the queue backend; mutated only through lease/ack/nack.
    """

    id: str = Field(..., description="Unique job identifier (UUID)")
    queue_name: str = Field(..., description="Queue the job belongs to")
    type: str = Field(..., description="Job type, e.g. generate-video")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Validated job payload")
    priority: int = Field(default=0, description="Higher = leased first")
    attempts: int = Field(default=0, ge=0, description="Attempts made so far")
    max_attempts: int = Field(default=3, ge=1, description="Max attempt limit")
    backoff: BackoffStrategy = Field(default_factory=BackoffStrategy)
    state: JobState = Field(default=JobState.WAITING, description="Current job state")
    created_at: datetime = Field(default_factory=utc_now, description="Enqueue time")
    run_at: Optional[datetime] = Field(default=None, description="Earliest lease time if delayed")
    processed_at: Optional[datetime] = Field(default=None, description="Last lease time")
    finished_at: Optional[datetime] = Field(default=None, description="Terminal time")
    lease_expires_at: Optional[datetime] = Field(default=None, description="Lease deadline")
    worker_id: Optional[str] = Field(default=None, description="Slot holding the lease")
    cancel_requested: bool = Field(default=False, description="Advisory cancel of an active job")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")
    failure_reason: Optional[str] = Field(default=None, description="Last failure (truncated)")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class JobCounts(BaseModel):
    """Job counts per state for a single queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class FailureKind(str, Enum):
    """Classification every handler failure gets before it reaches nack."""

    TRANSIENT = "transient"  # Network/5xx/timeout, retried per backoff
    TERMINAL = "terminal"  # Provider reported failure, still uses the retry budget
    DATA_INTEGRITY = "data_integrity"  # Missing/invalid record, never retried


class HandlerResult(BaseModel):
    """Outcome of one handler invocation.

    Handlers return failures instead of raising, so the worker pool can ack or
    nack without inspecting exceptions.
    """

    ok: bool
    value: Dict[str, Any] = Field(default_factory=dict)
    kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, **value: Any) -> "HandlerResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: FailureKind, error: str) -> "HandlerResult":
        return cls(ok=False, kind=kind, error=error)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.kind is not FailureKind.DATA_INTEGRITY


# Queue defaults. Publish failures risk duplicate external posts, so that
# queue retries less often with longer spacing.
GENERATION_QUEUE_DEFAULTS = QueueSettings(
    name="generation",
    max_attempts=3,
    backoff=BackoffStrategy(type="exponential", delay_s=2.0),
    concurrency=2,
    keep_completed=100,
    keep_failed=50,
)

PUBLISH_QUEUE_DEFAULTS = QueueSettings(
    name="publish",
    max_attempts=2,
    backoff=BackoffStrategy(type="exponential", delay_s=5.0),
    concurrency=1,
    keep_completed=50,
    keep_failed=25,
)
