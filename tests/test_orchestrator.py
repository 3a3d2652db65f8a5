"""Tests for the orchestration context: enqueue, chaining, status and maintenance."""

import threading
import time

import pytest
from pydantic import ValidationError

from reelcast.errors import (
    CredentialNotFound,
    DataIntegrityError,
    StorageUnavailable,
    VideoNotFound,
)
from reelcast.models import (
    GENERATION_QUEUE,
    PUBLISH_QUEUE,
    ExternalTaskHandle,
    GenerationJobPayload,
    ProviderTaskStatus,
    VideoStatus,
)
from reelcast.orchestrator import GENERATION_PRIORITY, PUBLISH_PRIORITY
from reelcast.queue import JobState

from fakes import FakeGenerationProvider

ARTIFACT = "https://cdn.test/U.mp4"


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def generation_payload(video_id="V1", **overrides):
    payload = {
        "video_id": video_id,
        "user_id": "U1",
        "prompt": "a cat surfing",
        "source_image_url": "https://img.test/cat.png",
        "publish_settings": {"credential_ref": "acct-1", "caption": "Surf's up"},
    }
    payload.update(overrides)
    return payload


class BlockingProvider(FakeGenerationProvider):
    """Holds every status poll until released."""

    def __init__(self):
        super().__init__()
        self.polling = threading.Event()
        self.release = threading.Event()

    def get_status(self, task_id):
        self.polling.set()
        self.release.wait(timeout=5.0)
        return ExternalTaskHandle(
            external_task_id=task_id,
            provider_status=ProviderTaskStatus.SUCCEEDED,
            output_url=ARTIFACT,
        )


def run_next(orchestrator, queue_name):
    """Lease one job and run the matching handler, as a worker slot would."""
    job = orchestrator.queue.lease(queue_name, worker_id="test-slot")
    assert job is not None
    handler = (
        orchestrator.generation_handler
        if queue_name == GENERATION_QUEUE
        else orchestrator.publish_handler
    )
    result = handler(job)
    if result.ok:
        orchestrator.queue.ack(job.id, result.value)
    else:
        orchestrator.queue.nack(job.id, result.error, retry=result.retryable)
    return job, result


class TestEnqueue:
    def test_generation_marks_video_pending(self, orchestrator, make_video):
        make_video("V1", status=VideoStatus.FAILED)

        job_id = orchestrator.enqueue_generation(generation_payload())

        assert orchestrator.store.get_video("V1").status == VideoStatus.PENDING
        job = orchestrator.queue.get_job(job_id)
        assert job.queue_name == GENERATION_QUEUE
        assert job.type == "generate-video"
        assert job.priority == GENERATION_PRIORITY
        assert job.payload["publish_settings"]["credential_ref"] == "acct-1"

    def test_generation_accepts_model(self, orchestrator, make_video):
        make_video("V1")
        payload = GenerationJobPayload(**generation_payload())

        job_id = orchestrator.enqueue_generation(payload, priority=5)

        assert orchestrator.queue.get_job(job_id).priority == 5

    def test_generation_missing_video(self, orchestrator):
        with pytest.raises(VideoNotFound):
            orchestrator.enqueue_generation(generation_payload("nope"))
        assert orchestrator.get_queue_stats()[GENERATION_QUEUE]["waiting"] == 0

    def test_generation_rejected_mid_generation(self, orchestrator, make_video):
        make_video("V1", status=VideoStatus.GENERATING)
        with pytest.raises(DataIntegrityError):
            orchestrator.enqueue_generation(generation_payload())

    def test_generation_invalid_payload(self, orchestrator, make_video):
        make_video("V1")
        with pytest.raises(ValidationError):
            orchestrator.enqueue_generation(generation_payload(prompt=""))

    def test_generation_queue_failure_leaves_video_untouched(
        self, orchestrator, make_video, monkeypatch
    ):
        make_video("V1", status=VideoStatus.COMPLETED, video_url=ARTIFACT)

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("database is locked")

        monkeypatch.setattr(orchestrator.queue, "enqueue", unavailable)
        with pytest.raises(StorageUnavailable):
            orchestrator.enqueue_generation(generation_payload())

        assert orchestrator.store.get_video("V1").status == VideoStatus.COMPLETED
        monkeypatch.undo()
        job_id = orchestrator.enqueue_publish(
            {
                "video_id": "V1",
                "user_id": "U1",
                "artifact_url": ARTIFACT,
                "publish_settings": {"credential_ref": "acct-1"},
            }
        )
        assert orchestrator.queue.get_job(job_id).state == JobState.WAITING

    def test_generation_store_failure_removes_job(self, orchestrator, make_video, monkeypatch):
        make_video("V1", status=VideoStatus.FAILED)

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("database is locked")

        monkeypatch.setattr(orchestrator.store, "transition", unavailable)
        with pytest.raises(StorageUnavailable):
            orchestrator.enqueue_generation(generation_payload())

        assert orchestrator.get_queue_stats()[GENERATION_QUEUE]["waiting"] == 0
        assert orchestrator.store.get_video("V1").status == VideoStatus.FAILED

    def test_publish_requires_completed(self, orchestrator, make_video):
        make_video("V1")
        payload = {
            "video_id": "V1",
            "user_id": "U1",
            "artifact_url": ARTIFACT,
            "publish_settings": {"credential_ref": "acct-1"},
        }
        with pytest.raises(DataIntegrityError):
            orchestrator.enqueue_publish(payload)

        orchestrator.store.transition("V1", VideoStatus.GENERATING)
        orchestrator.store.transition("V1", VideoStatus.COMPLETED, video_url=ARTIFACT)
        job_id = orchestrator.enqueue_publish(payload)

        job = orchestrator.queue.get_job(job_id)
        assert job.queue_name == PUBLISH_QUEUE
        assert job.priority == PUBLISH_PRIORITY

    def test_publish_unknown_credential_ref(self, orchestrator, make_video):
        make_video("V1", status=VideoStatus.COMPLETED, video_url=ARTIFACT)
        payload = {
            "video_id": "V1",
            "user_id": "U1",
            "artifact_url": ARTIFACT,
            "publish_settings": {"credential_ref": "acct-unknown"},
        }

        with pytest.raises(CredentialNotFound, match="acct-unknown"):
            orchestrator.enqueue_publish(payload)
        assert orchestrator.get_queue_stats()[PUBLISH_QUEUE]["waiting"] == 0


class TestChaining:
    def test_success_chains_exactly_one_publish(self, orchestrator, make_video):
        make_video("V1")
        orchestrator.enqueue_generation(generation_payload())

        _, result = run_next(orchestrator, GENERATION_QUEUE)

        assert result.ok
        stats = orchestrator.get_queue_stats()
        assert stats[PUBLISH_QUEUE]["waiting"] == 1
        publish_job = orchestrator.queue.get_job(result.value["publish_job_id"])
        assert publish_job.payload["artifact_url"] == ARTIFACT
        assert publish_job.payload["publish_settings"]["caption"] == "Surf's up"
        assert publish_job.priority == PUBLISH_PRIORITY

    def test_failed_generation_chains_nothing(self, orchestrator, make_video, provider):
        make_video("V1")
        provider.statuses = [("failed", "moderation")]
        orchestrator.enqueue_generation(generation_payload())

        _, result = run_next(orchestrator, GENERATION_QUEUE)

        assert not result.ok
        assert orchestrator.get_queue_stats()[PUBLISH_QUEUE]["waiting"] == 0
        assert orchestrator.store.get_video("V1").status == VideoStatus.FAILED

    def test_cancelled_active_job_does_not_chain(self, orchestrator, make_video):
        make_video("V1")
        job_id = orchestrator.enqueue_generation(generation_payload())
        job = orchestrator.queue.lease(GENERATION_QUEUE)

        assert orchestrator.cancel_job(job_id, GENERATION_QUEUE) is False
        result = orchestrator.generation_handler(job)

        assert result.ok
        assert "publish_job_id" not in result.value
        assert orchestrator.get_queue_stats()[PUBLISH_QUEUE]["waiting"] == 0

    def test_publish_job_posts_video(self, orchestrator, make_video, platform):
        make_video("V1")
        orchestrator.enqueue_generation(generation_payload())
        run_next(orchestrator, GENERATION_QUEUE)

        _, result = run_next(orchestrator, PUBLISH_QUEUE)

        assert result.ok
        video = orchestrator.store.get_video("V1")
        assert video.status == VideoStatus.POSTED
        assert video.instagram_post_id == "P1"
        assert platform.tokens == ["token-abc"]
        assert platform.created[0]["caption"].startswith("Surf's up\n\n")


class TestEndToEnd:
    def test_workers_generate_and_post(self, orchestrator, make_video, platform):
        make_video("V1")
        gen_id = orchestrator.enqueue_generation(generation_payload())

        orchestrator.start()
        assert orchestrator.is_running
        assert wait_for(lambda: orchestrator.store.get_video("V1").status == VideoStatus.POSTED)
        assert orchestrator.stop(timeout_s=5.0) is True
        assert not orchestrator.is_running

        assert orchestrator.get_job_status(gen_id, GENERATION_QUEUE)["status"] == "completed"
        stats = orchestrator.get_queue_stats()
        assert stats[PUBLISH_QUEUE]["completed"] == 1
        assert platform.published == ["M1"]

    def test_stop_halts_publish_pool_while_generation_drains(self, orchestrator, make_video):
        provider = BlockingProvider()
        orchestrator.generation_handler.provider = provider
        make_video("V1")
        make_video("V2", status=VideoStatus.COMPLETED, video_url=ARTIFACT)
        orchestrator.enqueue_generation(generation_payload(publish_settings=None))

        orchestrator.start()
        assert provider.polling.wait(timeout=5.0)

        publish_slots = list(orchestrator.pools[PUBLISH_QUEUE]._threads)
        drained = []
        stopper = threading.Thread(target=lambda: drained.append(orchestrator.stop(timeout_s=5.0)))
        stopper.start()
        assert wait_for(lambda: not any(t.is_alive() for t in publish_slots))
        assert not orchestrator.is_running

        job_id = orchestrator.enqueue_publish(
            {
                "video_id": "V2",
                "user_id": "U1",
                "artifact_url": ARTIFACT,
                "publish_settings": {"credential_ref": "acct-1"},
            }
        )
        time.sleep(0.2)
        assert orchestrator.queue.get_job(job_id).state == JobState.WAITING
        assert orchestrator.store.get_video("V2").status == VideoStatus.COMPLETED

        provider.release.set()
        stopper.join(timeout=5.0)
        assert drained == [True]
        assert orchestrator.store.get_video("V1").status == VideoStatus.COMPLETED

    def test_start_reclaims_expired_leases(self, orchestrator, make_video, clock):
        make_video("V1")
        job_id = orchestrator.enqueue_generation(generation_payload())
        orchestrator.queue.lease(GENERATION_QUEUE, worker_id="crashed")
        clock.advance(3600)

        assert orchestrator.recover() == 1
        job = orchestrator.queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.attempts == 0


class TestQueries:
    def test_job_status_fields(self, orchestrator, make_video):
        make_video("V1")
        job_id = orchestrator.enqueue_generation(generation_payload())

        status = orchestrator.get_job_status(job_id, GENERATION_QUEUE)

        assert status["id"] == job_id
        assert status["status"] == "waiting"
        assert status["attempts"] == 0
        assert status["max_attempts"] == 3
        assert status["timestamp"] is not None
        assert status["finished_on"] is None

    def test_job_status_wrong_queue(self, orchestrator, make_video):
        make_video("V1")
        job_id = orchestrator.enqueue_generation(generation_payload())

        assert orchestrator.get_job_status(job_id, PUBLISH_QUEUE) == {"status": "not_found"}
        assert orchestrator.get_job_status("missing", GENERATION_QUEUE) == {"status": "not_found"}

    def test_cancel_waiting_job(self, orchestrator, make_video):
        make_video("V1")
        job_id = orchestrator.enqueue_generation(generation_payload())

        assert orchestrator.cancel_job(job_id, PUBLISH_QUEUE) is False
        assert orchestrator.cancel_job(job_id, GENERATION_QUEUE) is True
        assert orchestrator.get_job_status(job_id, GENERATION_QUEUE) == {"status": "not_found"}

    def test_active_summary(self, orchestrator, make_video):
        make_video("V1")
        make_video("V2")
        orchestrator.enqueue_generation(generation_payload("V1"))
        orchestrator.enqueue_generation(generation_payload("V2"))
        orchestrator.queue.lease(GENERATION_QUEUE)

        summary = orchestrator.get_active_summary()

        assert summary["active_jobs"] == 1
        assert summary["waiting_jobs"] == 1
        assert summary["delayed_jobs"] == 0
        assert set(summary["queues"]) == {GENERATION_QUEUE, PUBLISH_QUEUE}

    def test_clean_queues_uses_retention(self, orchestrator, make_video, clock):
        make_video("V1")
        orchestrator.enqueue_generation(generation_payload())
        run_next(orchestrator, GENERATION_QUEUE)

        assert orchestrator.clean_queues() == {GENERATION_QUEUE: 0, PUBLISH_QUEUE: 0}
        clock.advance(25 * 3600)
        assert orchestrator.clean_queues() == {GENERATION_QUEUE: 1, PUBLISH_QUEUE: 0}

    def test_clean_queues_explicit_window(self, orchestrator, make_video, clock):
        make_video("V1")
        orchestrator.enqueue_generation(generation_payload())
        run_next(orchestrator, GENERATION_QUEUE)
        clock.advance(2 * 3600)

        assert orchestrator.clean_queues(older_than_hours=1)[GENERATION_QUEUE] == 1
