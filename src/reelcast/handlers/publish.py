"""Publish job handler: CREATE_MEDIA -> POLL_PROCESSING -> PUBLISH.

A failed publish never marks the video FAILED; the artifact is still good,
so the video is reverted to COMPLETED and the queue's retry policy applies.
"""

import logging
import time
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from ..credentials import CredentialResolver
from ..errors import (
    DataIntegrityError,
    PollTimeout,
    StorageUnavailable,
    TerminalProviderError,
    TransientProviderError,
    VideoNotFound,
)
from ..models import (
    FailureKind,
    HandlerResult,
    MediaStatus,
    PublishingConfig,
    PublishJobPayload,
    PublishSettings,
    UserSettings,
    VideoStatus,
)
from ..providers.publishing import PublishPlatform
from ..queue.models import Job, utc_now
from ..store import VideoStore

logger = logging.getLogger(__name__)

# access token -> platform client bound to that account
PlatformFactory = Callable[[str], PublishPlatform]


def normalize_tags(tags: Iterable[str]) -> str:
    """Space-joined hashtags, each prefixed with '#'."""
    cleaned = (tag.strip() for tag in tags)
    return " ".join(tag if tag.startswith("#") else f"#{tag}" for tag in cleaned if tag)


def compose_caption(
    settings: PublishSettings,
    user_settings: Optional[UserSettings],
    config: PublishingConfig,
) -> str:
    """Caption text followed by hashtags after a blank line.

    Caption: explicit, else the user's stored default, else the configured
    default. Tags follow the same order.
    """
    caption = settings.caption
    if not caption and user_settings:
        caption = user_settings.default_caption
    caption = caption or config.default_caption

    tags = settings.tags
    if tags is None:
        tags = (user_settings.default_hashtags if user_settings else None) or config.default_hashtags

    hashtags = normalize_tags(tags)
    return f"{caption}\n\n{hashtags}" if hashtags else caption


class _PublishFailed(Exception):
    def __init__(self, kind: FailureKind, error: str):
        super().__init__(error)
        self.kind = kind
        self.error = error


class PublishHandler:
    """Callable handler registered on the publish queue."""

    def __init__(
        self,
        store: VideoStore,
        platform_factory: PlatformFactory,
        credentials: CredentialResolver,
        config: Optional[PublishingConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.platform_factory = platform_factory
        self.credentials = credentials
        self.config = config or PublishingConfig()
        self.sleep = sleep

    def __call__(self, job: Job) -> HandlerResult:
        try:
            payload = PublishJobPayload.model_validate(job.payload)
        except ValidationError as e:
            return HandlerResult.failure(FailureKind.DATA_INTEGRITY, f"Invalid payload: {e}")
        video_id = payload.video_id

        try:
            video = self.store.get_video(video_id)
            if video is None:
                raise VideoNotFound(f"Video {video_id} not found")
            if video.status is VideoStatus.POSTED:
                # A previous attempt already published; do not post twice
                logger.info("Video %s already posted as %s", video_id, video.instagram_post_id)
                return HandlerResult.success(
                    video_id=video_id,
                    publish_id=video.instagram_post_id,
                    permalink=video.instagram_permalink,
                    already_posted=True,
                )
            if video.status is not VideoStatus.COMPLETED:
                raise DataIntegrityError(
                    f"Video {video_id} is {video.status.value}, only COMPLETED videos can be published"
                )
            token = self.credentials.resolve(payload.publish_settings.credential_ref)
            user_settings = self.store.get_user_settings(payload.user_id)
        except DataIntegrityError as e:
            return HandlerResult.failure(FailureKind.DATA_INTEGRITY, str(e))
        except StorageUnavailable as e:
            return HandlerResult.failure(FailureKind.TRANSIENT, str(e))

        caption = compose_caption(payload.publish_settings, user_settings, self.config)

        platform = self.platform_factory(token)
        try:
            receipt = self._run_protocol(platform, payload.artifact_url, caption)
        except _PublishFailed as e:
            return self._revert(video_id, e.kind, e.error)
        finally:
            platform.close()

        try:
            self.store.transition(
                video_id,
                VideoStatus.POSTED,
                instagram_post_id=receipt.publish_id,
                instagram_permalink=receipt.permalink,
                posted_at=utc_now(),
            )
        except (StorageUnavailable, DataIntegrityError) as e:
            # The post exists remotely; a retry may post it again
            logger.error("Video %s published as %s but not recorded: %s", video_id, receipt.publish_id, e)
            return HandlerResult.failure(
                FailureKind.TRANSIENT, f"Published as {receipt.publish_id} but not recorded: {e}"
            )

        logger.info("Video %s posted as %s", video_id, receipt.publish_id)
        return HandlerResult.success(
            video_id=video_id,
            publish_id=receipt.publish_id,
            permalink=receipt.permalink,
        )

    def _run_protocol(self, platform: PublishPlatform, artifact_url: str, caption: str):
        # CREATE_MEDIA
        try:
            media_id = platform.create_media(artifact_url, caption)
        except TransientProviderError as e:
            raise _PublishFailed(FailureKind.TRANSIENT, f"Create media failed: {e}")
        except TerminalProviderError as e:
            raise _PublishFailed(FailureKind.TERMINAL, f"Create media rejected: {e}")

        # POLL_PROCESSING
        self._wait_until_finished(platform, media_id)

        # PUBLISH
        try:
            return platform.publish(media_id)
        except TransientProviderError as e:
            raise _PublishFailed(FailureKind.TRANSIENT, f"Publish failed: {e}")
        except TerminalProviderError as e:
            raise _PublishFailed(FailureKind.TERMINAL, f"Publish rejected: {e}")

    def _wait_until_finished(self, platform: PublishPlatform, media_id: str) -> None:
        """Poll container status until FINISHED.

        A timed-out status request is retried at once without sleeping and
        uses up its poll; more than ``max_poll_timeouts`` of them fail the
        attempt.
        """
        timeouts = 0
        for poll in range(1, self.config.max_poll_attempts + 1):
            try:
                status = platform.get_processing_status(media_id)
            except PollTimeout as e:
                timeouts += 1
                logger.warning("Media %s poll %d timed out (%d so far)", media_id, poll, timeouts)
                if timeouts > self.config.max_poll_timeouts:
                    raise _PublishFailed(FailureKind.TRANSIENT, f"Status polling timed out: {e}")
                continue
            except TransientProviderError as e:
                raise _PublishFailed(FailureKind.TRANSIENT, f"Status polling failed: {e}")
            except TerminalProviderError as e:
                raise _PublishFailed(FailureKind.TERMINAL, f"Status polling rejected: {e}")

            logger.debug("Media %s poll %d: %s", media_id, poll, status.value)
            if status is MediaStatus.FINISHED:
                return
            if status is MediaStatus.ERROR:
                raise _PublishFailed(FailureKind.TERMINAL, f"Media {media_id} processing failed")

            if poll < self.config.max_poll_attempts:
                self.sleep(self.config.poll_interval_s)

        raise _PublishFailed(FailureKind.TRANSIENT, "media processing timeout")

    def _revert(self, video_id: str, kind: FailureKind, error: str) -> HandlerResult:
        """Put the video back to COMPLETED and return the failure."""
        try:
            self.store.transition(video_id, VideoStatus.COMPLETED)
        except (StorageUnavailable, DataIntegrityError) as e:
            logger.error("Video %s: could not revert to COMPLETED: %s", video_id, e)
        logger.warning("Video %s: publish failed (%s): %s", video_id, kind.value, error)
        return HandlerResult.failure(kind, error)
