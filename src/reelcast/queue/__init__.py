"""Durable job queue and worker pool."""

from .backends import QueueBackend
from .models import (
    BackoffStrategy,
    FailureKind,
    HandlerResult,
    Job,
    JobCounts,
    JobState,
    QueueSettings,
)
from .sqlite_backend import SQLiteQueue
from .worker import JobWorkerPool

__all__ = [
    "QueueBackend",
    "BackoffStrategy",
    "FailureKind",
    "HandlerResult",
    "Job",
    "JobCounts",
    "JobState",
    "QueueSettings",
    "SQLiteQueue",
    "JobWorkerPool",
]
