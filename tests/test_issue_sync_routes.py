"""HTTP tests for the issue sync routes, with in-memory collaborators."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from fakes import make_branch
from httpx import ASGITransport, AsyncClient

from issuesync.api import create_app
from issuesync.events import ISSUE_SYNC_CHANNEL
from issuesync.models import ActivityStatus, TaskType
from issuesync.progress import IssueSyncProgressChecker
from issuesync.routes.issue_sync import get_issue_sync_trigger, get_progress_checker
from issuesync.trigger import IssueSyncTrigger


@pytest.fixture
def db_infra():
    infra = MagicMock()
    infra.is_initialized = True
    infra.get_manager.return_value.fetch_value = AsyncMock(return_value=1)
    return infra


@pytest_asyncio.fixture
async def client(db_infra, fake_redis, branches, snapshots, task_queue):
    app = create_app(db_infra=db_infra, redis=fake_redis)
    app.dependency_overrides[get_issue_sync_trigger] = lambda: IssueSyncTrigger(
        branches, snapshots, task_queue
    )
    app.dependency_overrides[get_progress_checker] = lambda: IssueSyncProgressChecker(
        branches, task_queue
    )
    with patch("issuesync.api.configure_logging"):
        async with LifespanManager(app):
            async with AsyncClient(
                transport=ASGITransport(app=app), base_url="http://test"
            ) as ac:
                yield ac


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "checks": {"redis": "ok", "database": "ok"}}


@pytest.mark.asyncio
async def test_health_reports_database_error(client, db_infra):
    db_infra.get_manager.return_value.fetch_value = AsyncMock(side_effect=Exception("boom"))

    resp = await client.get("/health")

    assert resp.json()["status"] == "unhealthy"
    assert resp.json()["checks"]["database"] == "error: boom"


@pytest.mark.asyncio
async def test_status(client, branches, task_queue):
    branches.add(make_branch(need_issue_sync=False))
    branches.add(make_branch(need_issue_sync=True))
    task_queue.add_activity(TaskType.BRANCH_ISSUE_SYNC, ActivityStatus.FAILED)

    resp = await client.get("/v1/issue-sync/status")

    assert resp.status_code == 200
    assert resp.json() == {
        "is_completed": False,
        "percent_completed": 50,
        "has_failures": True,
        "completed": 1,
        "total": 2,
    }


@pytest.mark.asyncio
async def test_trigger_pending(client, branches, task_queue, fake_redis):
    branches.add(make_branch())
    branches.add(make_branch(need_issue_sync=False))

    resp = await client.post("/v1/issue-sync/trigger", json={"scope": "pending"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["tasks_submitted"] == 1
    assert data["task_uuids"] == [s.uuid for s in task_queue.submitted]

    channel, message = fake_redis.published[0]
    assert channel == ISSUE_SYNC_CHANNEL
    assert json.loads(message)["type"] == "issue_sync.triggered"


@pytest.mark.asyncio
async def test_trigger_without_body_defaults_to_pending(client, branches):
    branches.add(make_branch(need_issue_sync=False))

    resp = await client.post("/v1/issue-sync/trigger")

    assert resp.status_code == 200
    assert resp.json()["tasks_submitted"] == 0


@pytest.mark.asyncio
async def test_trigger_all(client, branches):
    branches.add(make_branch(need_issue_sync=False))
    branches.add(make_branch(need_issue_sync=False))

    resp = await client.post("/v1/issue-sync/trigger", json={"scope": "all"})

    assert resp.json()["tasks_submitted"] == 2


@pytest.mark.asyncio
async def test_trigger_rejects_unknown_scope(client):
    resp = await client.post("/v1/issue-sync/trigger", json={"scope": "everything"})

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_project_routes(client, branches):
    branches.add(make_branch(project_uuid="p1", need_issue_sync=False))

    resp = await client.get("/v1/issue-sync/projects/p1")
    assert resp.json() == {"project_uuid": "p1", "needs_issue_sync": False}

    resp = await client.post("/v1/issue-sync/projects/p1")
    assert resp.json()["tasks_submitted"] == 1

    resp = await client.get("/v1/issue-sync/projects/p1")
    assert resp.json()["needs_issue_sync"] is True


@pytest.mark.asyncio
async def test_check_returns_503_while_sync_in_progress(client, branches):
    branches.add(make_branch(project_uuid="p1", need_issue_sync=True))
    branches.add(make_branch(project_uuid="p2", need_issue_sync=False))

    resp = await client.get("/v1/issue-sync/check")
    assert resp.status_code == 503
    assert "Indexing of issues is in progress" in resp.json()["detail"]

    resp = await client.get("/v1/issue-sync/check", params={"project_uuid": ["p2"]})
    assert resp.status_code == 200

    resp = await client.get("/v1/issue-sync/check", params={"project_uuid": ["p1", "p2"]})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_stream_rejects_unknown_event_types(client):
    resp = await client.get("/v1/issue-sync/stream", params={"event_types": "bead"})

    assert resp.status_code == 422


def test_library_mode_requires_both_connections(db_infra):
    with pytest.raises(ValueError, match="Library mode requires both"):
        create_app(db_infra=db_infra)


def test_library_mode_requires_initialized_db(db_infra, fake_redis):
    db_infra.is_initialized = False

    with pytest.raises(ValueError, match="must be initialized"):
        create_app(db_infra=db_infra, redis=fake_redis)
