import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from reelcast.api.main import create_app
from reelcast.credentials import CredentialResolver
from reelcast.models import (
    GenerationConfig,
    MediaStatus,
    ProviderTaskStatus,
    PublishingConfig,
    ReelcastConfig,
    Video,
    WorkerConfig,
)
from reelcast.orchestrator import Orchestrator
from reelcast.queue.sqlite_backend import SQLiteQueue
from reelcast.store import SQLiteVideoStore

from fakes import FakeClock, FakeGenerationProvider, FakePlatform


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_reelcast.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(temp_db, clock):
    """SQLiteQueue with the default generation/publish queues."""
    q = SQLiteQueue(temp_db, clock=clock)
    yield q
    q.close()


@pytest.fixture
def store(temp_db):
    s = SQLiteVideoStore(temp_db)
    yield s
    s.close()


@pytest.fixture
def make_video(store):
    """Factory inserting a video record."""

    def _make(video_id="V1", user_id="U1", **fields):
        return store.create_video(Video(id=video_id, user_id=user_id, **fields))

    return _make


@pytest.fixture
def fast_config(temp_db):
    """Config with no waiting between polls."""
    return ReelcastConfig(
        database_path=temp_db,
        worker=WorkerConfig(poll_interval_s=0.05, heartbeat_interval_s=1.0, shutdown_timeout_s=5.0),
        generation=GenerationConfig(poll_interval_s=0.0, max_poll_attempts=5),
        publishing=PublishingConfig(poll_interval_s=0.0, max_poll_attempts=5),
        credentials={"acct-1": "TEST_IG_TOKEN"},
    )


@pytest.fixture
def credentials():
    return CredentialResolver({"acct-1": "TEST_IG_TOKEN"}, environ={"TEST_IG_TOKEN": "token-abc"})


@pytest.fixture
def provider():
    return FakeGenerationProvider(
        [ProviderTaskStatus.RUNNING, ProviderTaskStatus.RUNNING, ("succeeded", "https://cdn.test/U.mp4")]
    )


@pytest.fixture
def platform():
    return FakePlatform(statuses=[MediaStatus.IN_PROGRESS, MediaStatus.FINISHED])


@pytest.fixture
def orchestrator(fast_config, queue, store, provider, platform, credentials):
    """Orchestrator wired to fakes; worker pools are not started."""

    def platform_factory(token):
        platform.tokens.append(token)
        return platform

    orch = Orchestrator(
        fast_config,
        queue,
        store,
        provider,
        platform_factory,
        credentials,
        sleep=lambda s: None,
    )
    yield orch
    if orch.is_running:
        orch.stop(timeout_s=5.0)


@pytest.fixture(scope="function")
async def client(orchestrator):
    app = create_app(orchestrator=orchestrator)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
