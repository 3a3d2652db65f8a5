"""Generation job handler: drives a video from PENDING to COMPLETED or FAILED.

Steps per attempt:
1. Mark the video GENERATING
2. Submit an image-to-video task to the generation provider
3. Poll the task at a fixed interval until it is terminal or the poll budget runs out
4. Record the artifact and, with auto-publish, chain a publish job

Failures are returned as ``HandlerResult`` values; nothing raised by the
provider or the store escapes uncategorised.
"""

import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError

from ..errors import (
    DataIntegrityError,
    StorageUnavailable,
    TerminalProviderError,
    TransientProviderError,
    VideoNotFound,
)
from ..models import (
    ExternalTaskHandle,
    FailureKind,
    GenerationConfig,
    GenerationJobPayload,
    HandlerResult,
    ProviderTaskStatus,
    VideoStatus,
)
from ..providers.generation import GenerationProvider
from ..queue.models import Job, utc_now
from ..store import VideoStore

logger = logging.getLogger(__name__)

# (job, payload, video_url) -> publish job id, or None when nothing was chained
ChainCallback = Callable[[Job, GenerationJobPayload, str], Optional[str]]


class _PollFailed(Exception):
    def __init__(self, kind: FailureKind, error: str):
        super().__init__(error)
        self.kind = kind
        self.error = error


class GenerationHandler:
    """Callable handler registered on the generation queue."""

    def __init__(
        self,
        store: VideoStore,
        provider: GenerationProvider,
        config: Optional[GenerationConfig] = None,
        chain: Optional[ChainCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.provider = provider
        self.config = config or GenerationConfig()
        self.chain = chain
        self.sleep = sleep

    def __call__(self, job: Job) -> HandlerResult:
        try:
            payload = GenerationJobPayload.model_validate(job.payload)
        except ValidationError as e:
            return HandlerResult.failure(FailureKind.DATA_INTEGRITY, f"Invalid payload: {e}")
        video_id = payload.video_id

        # RECEIVED -> TRANSITIONED_GENERATING
        try:
            if self.store.get_video(video_id) is None:
                raise VideoNotFound(f"Video {video_id} not found")
            self.store.transition(video_id, VideoStatus.GENERATING)
        except DataIntegrityError as e:
            return HandlerResult.failure(FailureKind.DATA_INTEGRITY, str(e))
        except StorageUnavailable as e:
            return HandlerResult.failure(FailureKind.TRANSIENT, str(e))

        try:
            return self._generate(job, payload)
        except Exception as e:
            # Malformed provider response or a failing chain callback
            logger.exception("Video %s: unexpected error during generation", video_id)
            return self._fail(video_id, FailureKind.TRANSIENT, f"{type(e).__name__}: {e}")

    def _generate(self, job: Job, payload: GenerationJobPayload) -> HandlerResult:
        video_id = payload.video_id

        # -> PROVIDER_SUBMITTED
        params = {
            "model": self.config.model,
            "ratio": payload.ratio,
            "duration": self.config.duration_s,
            "seed": payload.seed,
        }
        try:
            task_id = self.provider.submit(payload.prompt, payload.source_image_url, params)
        except TransientProviderError as e:
            return self._fail(video_id, FailureKind.TRANSIENT, f"Submit failed: {e}")
        except TerminalProviderError as e:
            return self._fail(video_id, FailureKind.TERMINAL, f"Submit rejected: {e}")
        logger.info("Video %s: generation task %s submitted", video_id, task_id)

        # -> POLLING
        try:
            handle = self._wait_for_completion(task_id)
        except _PollFailed as e:
            return self._fail(video_id, e.kind, e.error)

        # -> SUCCEEDED
        try:
            self.store.transition(
                video_id,
                VideoStatus.COMPLETED,
                video_url=handle.output_url,
                generated_at=utc_now(),
            )
        except StorageUnavailable as e:
            return HandlerResult.failure(FailureKind.TRANSIENT, f"Could not record artifact: {e}")
        except DataIntegrityError as e:
            return HandlerResult.failure(FailureKind.DATA_INTEGRITY, str(e))

        publish_job_id = None
        if payload.chains_publish and self.chain is not None:
            try:
                publish_job_id = self.chain(job, payload, handle.output_url)
            except StorageUnavailable as e:
                return self._fail(video_id, FailureKind.TRANSIENT, f"Chained publish enqueue failed: {e}")

        result = {
            "video_id": video_id,
            "video_url": handle.output_url,
            "external_task_id": task_id,
        }
        if publish_job_id:
            result["publish_job_id"] = publish_job_id
        return HandlerResult.success(**result)

    def _wait_for_completion(self, task_id: str) -> ExternalTaskHandle:
        """Poll until the task is terminal.

        A transient error on one status request uses up that poll; only a run
        of more than ``max_poll_errors`` consecutive errors fails the attempt.
        """
        consecutive_errors = 0
        for poll in range(1, self.config.max_poll_attempts + 1):
            try:
                handle = self.provider.get_status(task_id)
            except TransientProviderError as e:
                consecutive_errors += 1
                logger.warning(
                    "Status poll %d for task %s failed (%d in a row): %s",
                    poll, task_id, consecutive_errors, e,
                )
                if consecutive_errors > self.config.max_poll_errors:
                    raise _PollFailed(FailureKind.TRANSIENT, f"Status polling failed: {e}")
            except TerminalProviderError as e:
                raise _PollFailed(FailureKind.TERMINAL, f"Status polling rejected: {e}")
            else:
                consecutive_errors = 0
                logger.debug("Task %s poll %d: %s", task_id, poll, handle.provider_status.value)
                if handle.provider_status is ProviderTaskStatus.SUCCEEDED:
                    if not handle.output_url:
                        raise _PollFailed(
                            FailureKind.TERMINAL, f"Task {task_id} succeeded without output"
                        )
                    return handle
                if handle.provider_status is ProviderTaskStatus.FAILED:
                    raise _PollFailed(
                        FailureKind.TERMINAL,
                        f"Task {task_id} failed: {handle.failure or 'unknown error'}",
                    )

            if poll < self.config.max_poll_attempts:
                self.sleep(self.config.poll_interval_s)

        raise _PollFailed(
            FailureKind.TRANSIENT,
            f"processing timeout: task {task_id} not terminal after "
            f"{self.config.max_poll_attempts} polls",
        )

    def _fail(self, video_id: str, kind: FailureKind, error: str) -> HandlerResult:
        """Mark the video FAILED and return the failure."""
        try:
            self.store.transition(video_id, VideoStatus.FAILED)
        except (StorageUnavailable, DataIntegrityError) as e:
            logger.error("Video %s: could not mark FAILED: %s", video_id, e)
        logger.warning("Video %s: generation failed (%s): %s", video_id, kind.value, error)
        return HandlerResult.failure(kind, error)
