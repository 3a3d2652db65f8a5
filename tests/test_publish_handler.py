"""Tests for the publish job handler and caption composition."""

import pytest

from reelcast.credentials import CredentialResolver
from reelcast.errors import PollTimeout, TerminalProviderError, TransientProviderError
from reelcast.handlers.publish import PublishHandler, compose_caption
from reelcast.models import (
    FailureKind,
    MediaStatus,
    PublishingConfig,
    PublishSettings,
    UserSettings,
    VideoStatus,
)
from reelcast.queue import Job

from fakes import FakePlatform

ARTIFACT = "https://cdn.test/U.mp4"
IN_PROGRESS = MediaStatus.IN_PROGRESS
FINISHED = MediaStatus.FINISHED


def make_job(**settings):
    publish_settings = {"credential_ref": "acct-1"}
    publish_settings.update(settings)
    return Job(
        id="PJ1",
        queue_name="publish",
        type="publish-video",
        payload={
            "video_id": "V1",
            "user_id": "U1",
            "artifact_url": ARTIFACT,
            "publish_settings": publish_settings,
        },
    )


@pytest.fixture
def completed_video(make_video):
    return make_video("V1", status=VideoStatus.COMPLETED, video_url=ARTIFACT)


@pytest.fixture
def sleeps():
    return []


def make_handler(store, platform, credentials, sleeps, **config):
    config.setdefault("max_poll_attempts", 20)
    return PublishHandler(
        store,
        lambda token: platform,
        credentials,
        PublishingConfig(**config),
        sleep=sleeps.append,
    )


class TestPublishFlow:
    def test_create_poll_publish(self, store, completed_video, credentials, sleeps):
        """createMedia -> M1, status [in_progress, finished], publish -> P1 => POSTED."""
        platform = FakePlatform(media_id="M1", statuses=[IN_PROGRESS, FINISHED], publish_id="P1")
        handler = make_handler(store, platform, credentials, sleeps)

        result = handler(make_job(caption="Look!", tags=["cats", "#surf"]))

        assert result.ok
        assert result.value["publish_id"] == "P1"
        video = store.get_video("V1")
        assert video.status == VideoStatus.POSTED
        assert video.instagram_post_id == "P1"
        assert video.instagram_permalink == "https://instagram.com/p/P1"
        assert video.posted_at is not None
        assert platform.created == [{"artifact_url": ARTIFACT, "caption": "Look!\n\n#cats #surf"}]
        assert platform.published == ["M1"]
        assert platform.polls == 2
        assert sleeps == [5.0]
        assert platform.closed

    def test_token_resolved_from_reference(self, store, completed_video, sleeps):
        tokens = []
        platform = FakePlatform()
        resolver = CredentialResolver(environ={"REELCAST_CREDENTIAL_ACCT_1": "secret"})
        handler = PublishHandler(
            store,
            lambda token: tokens.append(token) or platform,
            resolver,
            sleep=sleeps.append,
        )

        assert handler(make_job()).ok
        assert tokens == ["secret"]

    def test_already_posted_is_noop(self, store, make_video, credentials, sleeps):
        make_video("V1", status=VideoStatus.POSTED, instagram_post_id="P0")
        platform = FakePlatform()

        result = make_handler(store, platform, credentials, sleeps)(make_job())

        assert result.ok
        assert result.value["already_posted"] is True
        assert result.value["publish_id"] == "P0"
        assert platform.created == []

    def test_poll_timeouts_retried_in_place(self, store, completed_video, credentials, sleeps):
        platform = FakePlatform(statuses=[PollTimeout("t"), PollTimeout("t"), FINISHED])

        result = make_handler(store, platform, credentials, sleeps)(make_job())

        assert result.ok
        assert platform.polls == 3
        assert sleeps == []


class TestPublishFailure:
    def test_failure_reverts_to_completed(self, store, completed_video, credentials, sleeps):
        platform = FakePlatform(publish_error=TransientProviderError("HTTP 500"))

        result = make_handler(store, platform, credentials, sleeps)(make_job())

        assert not result.ok
        assert result.kind == FailureKind.TRANSIENT
        assert result.retryable
        video = store.get_video("V1")
        assert video.status == VideoStatus.COMPLETED
        assert video.instagram_post_id is None

    def test_media_error_status(self, store, completed_video, credentials, sleeps):
        platform = FakePlatform(statuses=[IN_PROGRESS, MediaStatus.ERROR])

        result = make_handler(store, platform, credentials, sleeps)(make_job())

        assert result.kind == FailureKind.TERMINAL
        assert result.retryable
        assert store.get_video("V1").status == VideoStatus.COMPLETED
        assert platform.published == []

    def test_processing_timeout(self, store, completed_video, credentials, sleeps):
        platform = FakePlatform(statuses=[])  # always in progress

        result = make_handler(store, platform, credentials, sleeps, max_poll_attempts=20)(make_job())

        assert result.error == "media processing timeout"
        assert platform.polls == 20
        assert len(sleeps) == 19
        assert store.get_video("V1").status == VideoStatus.COMPLETED

    def test_too_many_poll_timeouts(self, store, completed_video, credentials, sleeps):
        platform = FakePlatform(statuses=[PollTimeout("t")] * 4 + [FINISHED])

        result = make_handler(store, platform, credentials, sleeps, max_poll_timeouts=3)(make_job())

        assert result.kind == FailureKind.TRANSIENT
        assert platform.polls == 4
        assert platform.published == []

    def test_create_rejected(self, store, completed_video, credentials, sleeps):
        platform = FakePlatform(create_error=TerminalProviderError("HTTP 400: bad video"))

        result = make_handler(store, platform, credentials, sleeps)(make_job())

        assert result.kind == FailureKind.TERMINAL
        assert store.get_video("V1").status == VideoStatus.COMPLETED

    def test_missing_video(self, store, credentials, sleeps):
        result = make_handler(store, FakePlatform(), credentials, sleeps)(make_job())
        assert result.kind == FailureKind.DATA_INTEGRITY
        assert not result.retryable

    def test_video_not_completed(self, store, make_video, credentials, sleeps):
        make_video("V1", status=VideoStatus.GENERATING)
        platform = FakePlatform()

        result = make_handler(store, platform, credentials, sleeps)(make_job())

        assert result.kind == FailureKind.DATA_INTEGRITY
        assert store.get_video("V1").status == VideoStatus.GENERATING
        assert platform.created == []

    def test_unknown_credential(self, store, completed_video, sleeps):
        resolver = CredentialResolver(environ={})
        platform = FakePlatform()

        result = make_handler(store, platform, resolver, sleeps)(make_job())

        assert result.kind == FailureKind.DATA_INTEGRITY
        assert "acct-1" in result.error
        assert platform.created == []


class TestCaption:
    def test_explicit_caption_and_tags(self):
        settings = PublishSettings(credential_ref="a", caption="Hello", tags=["one", "#two"])
        assert compose_caption(settings, None, PublishingConfig()) == "Hello\n\n#one #two"

    def test_user_defaults(self):
        settings = PublishSettings(credential_ref="a")
        user = UserSettings(user_id="U1", default_caption="Mine", default_hashtags=["mine"])
        assert compose_caption(settings, user, PublishingConfig()) == "Mine\n\n#mine"

    def test_config_defaults(self):
        settings = PublishSettings(credential_ref="a")
        assert (
            compose_caption(settings, None, PublishingConfig())
            == "AI-generated reel!\n\n#reels #viral #ai"
        )

    def test_explicit_empty_tags(self):
        settings = PublishSettings(credential_ref="a", caption="Only text", tags=[])
        assert compose_caption(settings, None, PublishingConfig()) == "Only text"

    def test_stored_user_settings_used(self, store, completed_video, credentials, sleeps):
        store.save_user_settings(
            UserSettings(user_id="U1", default_caption="From settings", default_hashtags=["x"])
        )
        platform = FakePlatform()

        make_handler(store, platform, credentials, sleeps)(make_job())

        assert platform.created[0]["caption"] == "From settings\n\n#x"
