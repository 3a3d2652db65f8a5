"""Orchestration context: wires queues, handlers and worker pools together.

Everything is constructed explicitly and owned by one ``Orchestrator``
instance; there are no module-level queue or client singletons.

Usage:
    config = resolve_config()
    with Orchestrator.from_config(config) as orchestrator:
        orchestrator.enqueue_generation(payload)
        ...
"""

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Union

from .credentials import CredentialResolver
from .errors import CredentialNotFound, DataIntegrityError, StorageUnavailable, VideoNotFound
from .handlers.generation import GenerationHandler
from .handlers.publish import PlatformFactory, PublishHandler
from .models import (
    GENERATE_VIDEO,
    GENERATION_QUEUE,
    PUBLISH_QUEUE,
    PUBLISH_VIDEO,
    GenerationJobPayload,
    PublishJobPayload,
    ReelcastConfig,
    VideoStatus,
)
from .providers.generation import GenerationProvider, RunwayGenerationClient
from .providers.publishing import InstagramGraphClient
from .queue.backends import QueueBackend
from .queue.models import Job, JobState
from .queue.sqlite_backend import SQLiteQueue
from .queue.worker import JobWorkerPool
from .state import validate_video_transition
from .store import SQLiteVideoStore, VideoStore

logger = logging.getLogger(__name__)

GENERATION_PRIORITY = 1
PUBLISH_PRIORITY = 2


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class Orchestrator:
    """Dependency-injected orchestration core with an explicit lifecycle."""

    def __init__(
        self,
        config: ReelcastConfig,
        queue: QueueBackend,
        store: VideoStore,
        generation_provider: GenerationProvider,
        platform_factory: PlatformFactory,
        credentials: CredentialResolver,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.queue = queue
        self.store = store
        self.generation_provider = generation_provider
        self.credentials = credentials

        self.generation_handler = GenerationHandler(
            store,
            generation_provider,
            config.generation,
            chain=self._chain_publish,
            sleep=sleep,
        )
        self.publish_handler = PublishHandler(
            store,
            platform_factory,
            credentials,
            config.publishing,
            sleep=sleep,
        )

        worker = config.worker
        self.pools: Dict[str, JobWorkerPool] = {
            name: JobWorkerPool(
                queue,
                poll_interval_s=worker.poll_interval_s,
                heartbeat_interval_s=worker.heartbeat_interval_s,
                shutdown_timeout_s=worker.shutdown_timeout_s,
            )
            for name in (GENERATION_QUEUE, PUBLISH_QUEUE)
        }

    @classmethod
    def from_config(cls, config: ReelcastConfig) -> "Orchestrator":
        """Build the production wiring: SQLite queue/store, Runway, Instagram."""
        queue = SQLiteQueue(
            config.database_path, queues=(config.generation_queue, config.publish_queue)
        )
        store = SQLiteVideoStore(config.database_path)
        publishing = config.publishing

        def platform_factory(access_token: str) -> InstagramGraphClient:
            return InstagramGraphClient(
                access_token,
                base_url=publishing.api_base_url,
                timeout_s=publishing.request_timeout_s,
                poll_timeout_s=publishing.poll_request_timeout_s,
            )

        return cls(
            config,
            queue,
            store,
            RunwayGenerationClient.from_config(config.generation),
            platform_factory,
            CredentialResolver(config.credentials),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    @property
    def is_running(self) -> bool:
        return any(pool.is_running for pool in self.pools.values())

    def start(self) -> None:
        """Reclaim expired leases, then start both worker pools."""
        self.recover()
        self.pools[GENERATION_QUEUE].start(
            GENERATION_QUEUE, self.config.generation_queue.concurrency, self.generation_handler
        )
        self.pools[PUBLISH_QUEUE].start(
            PUBLISH_QUEUE, self.config.publish_queue.concurrency, self.publish_handler
        )

    def stop(self, timeout_s: Optional[float] = None) -> bool:
        """Stop leasing on every pool, then drain them within one shared deadline.

        Returns:
            True if every in-flight handler finished in time
        """
        timeout_s = self.config.worker.shutdown_timeout_s if timeout_s is None else timeout_s
        deadline = time.monotonic() + timeout_s
        for pool in self.pools.values():
            pool.request_stop()
        drained = True
        for pool in self.pools.values():
            drained = pool.join(deadline) and drained
        return drained

    def close(self) -> None:
        """Stop workers and release database connections and HTTP clients."""
        if self.is_running:
            self.stop()
        for resource in (self.queue, self.store, self.generation_provider):
            close = getattr(resource, "close", None)
            if close is not None:
                close()

    def recover(self) -> int:
        """Return jobs whose lease expired (crashed worker) to the queue."""
        return self.queue.reclaim_expired()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue_generation(
        self,
        payload: Union[GenerationJobPayload, Dict[str, Any]],
        priority: int = GENERATION_PRIORITY,
    ) -> str:
        """Validate the payload, enqueue generation and mark the video PENDING.

        The job is written first: a queue failure leaves the video untouched.
        If marking the video fails while the job is still waiting, the job is
        removed again and the error re-raised.

        Raises:
            pydantic.ValidationError: If the payload is malformed
            DataIntegrityError: If the video is missing or mid-generation
            StorageUnavailable: If the queue or the store cannot be written
        """
        if not isinstance(payload, GenerationJobPayload):
            payload = GenerationJobPayload.model_validate(payload)
        video_id = payload.video_id

        video = self.store.get_video(video_id)
        if video is None:
            raise VideoNotFound(f"Video {video_id} not found")
        validate_video_transition(video_id, video.status, VideoStatus.PENDING)

        job_id = self.queue.enqueue(
            GENERATION_QUEUE,
            GENERATE_VIDEO,
            payload.model_dump(mode="json"),
            priority=priority,
        )

        try:
            self.store.transition(video_id, VideoStatus.PENDING)
        except (StorageUnavailable, DataIntegrityError):
            job = self.queue.get_job(job_id)
            if job is not None and job.state in (JobState.WAITING, JobState.DELAYED):
                self.queue.cancel(job_id)
                raise
            # A worker already leased the job and owns the video status now
            logger.info("Generation job %s already picked up for video %s", job_id, video_id)
        return job_id

    def enqueue_publish(
        self,
        payload: Union[PublishJobPayload, Dict[str, Any]],
        priority: int = PUBLISH_PRIORITY,
    ) -> str:
        """Enqueue a manual publish of a COMPLETED video.

        Raises:
            pydantic.ValidationError: If the payload is malformed
            DataIntegrityError: If the video is missing or not COMPLETED
            CredentialNotFound: If the credential reference resolves to no token
        """
        if not isinstance(payload, PublishJobPayload):
            payload = PublishJobPayload.model_validate(payload)

        video = self.store.get_video(payload.video_id)
        if video is None:
            raise VideoNotFound(f"Video {payload.video_id} not found")
        if video.status is not VideoStatus.COMPLETED:
            raise DataIntegrityError(
                f"Video {payload.video_id} is {video.status.value}, not COMPLETED"
            )
        credential_ref = payload.publish_settings.credential_ref
        if credential_ref not in self.credentials:
            raise CredentialNotFound(f"No credential for reference '{credential_ref}'")

        return self.queue.enqueue(
            PUBLISH_QUEUE,
            PUBLISH_VIDEO,
            payload.model_dump(mode="json"),
            priority=priority,
        )

    def _chain_publish(
        self, job: Job, payload: GenerationJobPayload, video_url: str
    ) -> Optional[str]:
        """Enqueue the follow-up publish job of a successful generation."""
        if self.queue.is_cancel_requested(job.id):
            logger.info("Generation job %s was cancelled; not chaining publish", job.id)
            return None

        publish_payload = PublishJobPayload(
            video_id=payload.video_id,
            user_id=payload.user_id,
            artifact_url=video_url,
            publish_settings=payload.publish_settings,
        )
        publish_job_id = self.queue.enqueue(
            PUBLISH_QUEUE,
            PUBLISH_VIDEO,
            publish_payload.model_dump(mode="json"),
            priority=PUBLISH_PRIORITY,
        )
        logger.info("Chained publish job %s after generation job %s", publish_job_id, job.id)
        return publish_job_id

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str, queue_name: str) -> Dict[str, Any]:
        """Job snapshot, or ``{"status": "not_found"}``."""
        job = self.queue.get_job(job_id)
        if job is None or job.queue_name != queue_name:
            return {"status": "not_found"}
        return {
            "id": job.id,
            "queue": job.queue_name,
            "type": job.type,
            "status": job.state.value,
            "priority": job.priority,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "result": job.result,
            "failed_reason": job.failure_reason,
            "cancel_requested": job.cancel_requested,
            "timestamp": _iso(job.created_at),
            "run_at": _iso(job.run_at),
            "processed_on": _iso(job.processed_at),
            "finished_on": _iso(job.finished_at),
        }

    def cancel_job(self, job_id: str, queue_name: str) -> bool:
        """Remove a waiting/delayed job; only flag an active one (returns False)."""
        job = self.queue.get_job(job_id)
        if job is None or job.queue_name != queue_name:
            return False
        return self.queue.cancel(job_id)

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            name: self.queue.counts(name).model_dump()
            for name in (GENERATION_QUEUE, PUBLISH_QUEUE)
        }

    def get_active_summary(self) -> Dict[str, Any]:
        stats = self.get_queue_stats()
        return {
            "active_jobs": sum(counts["active"] for counts in stats.values()),
            "waiting_jobs": sum(counts["waiting"] for counts in stats.values()),
            "delayed_jobs": sum(counts["delayed"] for counts in stats.values()),
            "queues": stats,
        }

    def clean_queues(self, older_than_hours: Optional[float] = None) -> Dict[str, int]:
        """Purge completed/failed jobs older than the retention window."""
        hours = self.config.retention_hours if older_than_hours is None else older_than_hours
        older_than = timedelta(hours=hours)
        return {
            name: self.queue.purge(older_than, queue_name=name)
            for name in (GENERATION_QUEUE, PUBLISH_QUEUE)
        }
