import pytest
from fakes import (
    FakeBranchRepository,
    FakeComponentRepository,
    FakeIndexer,
    FakeIssueRepository,
    FakeRedis,
    FakeSnapshotRepository,
    FakeTaskQueue,
)

from issuesync.config import get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def branches():
    return FakeBranchRepository()


@pytest.fixture
def snapshots():
    return FakeSnapshotRepository()


@pytest.fixture
def components():
    return FakeComponentRepository()


@pytest.fixture
def issues():
    return FakeIssueRepository()


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def task_queue():
    return FakeTaskQueue()


@pytest.fixture
def fake_redis():
    return FakeRedis()
