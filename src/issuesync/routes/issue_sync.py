from __future__ import annotations

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..dao.branches import PgBranchRepository
from ..dao.snapshots import PgSnapshotRepository
from ..db import CE_SCHEMA, COMPONENTS_SCHEMA, DatabaseInfra, get_db_infra
from ..events import IssueSyncTriggeredEvent, publish_event, stream_events
from ..progress import IssueSyncProgressChecker
from ..queue import PgTaskQueue
from ..redis_client import get_redis
from ..trigger import IssueSyncTrigger, TriggerResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/issue-sync", tags=["issue-sync"])

VALID_EVENT_TYPES = {"issue_sync.triggered", "issue_sync.task_finished"}


def get_issue_sync_trigger(db_infra: DatabaseInfra = Depends(get_db_infra)) -> IssueSyncTrigger:
    components_db = db_infra.get_manager(COMPONENTS_SCHEMA)
    return IssueSyncTrigger(
        PgBranchRepository(components_db),
        PgSnapshotRepository(components_db),
        PgTaskQueue(db_infra.get_manager(CE_SCHEMA)),
    )


def get_progress_checker(
    db_infra: DatabaseInfra = Depends(get_db_infra),
) -> IssueSyncProgressChecker:
    return IssueSyncProgressChecker(
        PgBranchRepository(db_infra.get_manager(COMPONENTS_SCHEMA)),
        PgTaskQueue(db_infra.get_manager(CE_SCHEMA)),
    )


class SyncStatusResponse(BaseModel):
    is_completed: bool
    percent_completed: int
    has_failures: bool
    completed: int
    total: int


class TriggerRequest(BaseModel):
    scope: Literal["pending", "all"] = "pending"


class TriggerResponse(BaseModel):
    branches: int
    projects: int
    pending_tasks_deleted: int
    completed_tasks_deleted: int
    tasks_submitted: int
    task_uuids: List[str] = Field(default_factory=list)


class ProjectSyncResponse(BaseModel):
    project_uuid: str
    needs_issue_sync: bool


class SyncCheckResponse(BaseModel):
    status: str = "ok"


def _trigger_response(result: TriggerResult) -> TriggerResponse:
    return TriggerResponse(
        branches=result.branches,
        projects=result.projects,
        pending_tasks_deleted=result.pending_tasks_deleted,
        completed_tasks_deleted=result.completed_tasks_deleted,
        tasks_submitted=result.tasks_submitted,
        task_uuids=result.submitted_task_uuids,
    )


async def _publish_triggered(
    redis: Redis, result: TriggerResult, scope: str, project_uuid: Optional[str] = None
) -> None:
    event = IssueSyncTriggeredEvent(
        scope=scope,
        project_uuid=project_uuid,
        branches=result.branches,
        projects=result.projects,
        tasks_submitted=result.tasks_submitted,
    )
    try:
        await publish_event(redis, event)
    except RedisError:
        # Tasks are already queued; the event is informational.
        logger.warning("Failed to publish %s", event.type, exc_info=True)


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    checker: IssueSyncProgressChecker = Depends(get_progress_checker),
) -> SyncStatusResponse:
    progress = await checker.get_sync_progress()
    return SyncStatusResponse(
        is_completed=progress.is_completed,
        percent_completed=progress.percent_completed,
        has_failures=progress.has_failures,
        completed=progress.completed,
        total=progress.total,
    )


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_sync(
    payload: Optional[TriggerRequest] = None,
    trigger: IssueSyncTrigger = Depends(get_issue_sync_trigger),
    redis: Redis = Depends(get_redis),
) -> TriggerResponse:
    """Queue issue sync tasks.

    ``pending`` queues the branches already flagged as needing sync; ``all``
    flags every branch first, as after a fresh index creation.
    """
    scope = payload.scope if payload is not None else "pending"
    if scope == "all":
        result = await trigger.trigger_for_all_branches()
    else:
        result = await trigger.trigger_on_index_creation()
    await _publish_triggered(redis, result, scope)
    return _trigger_response(result)


@router.post("/projects/{project_uuid}", response_model=TriggerResponse)
async def trigger_project_sync(
    project_uuid: str,
    trigger: IssueSyncTrigger = Depends(get_issue_sync_trigger),
    redis: Redis = Depends(get_redis),
) -> TriggerResponse:
    result = await trigger.trigger_for_project(project_uuid)
    await _publish_triggered(redis, result, "project", project_uuid)
    return _trigger_response(result)


@router.get("/projects/{project_uuid}", response_model=ProjectSyncResponse)
async def project_sync_status(
    project_uuid: str,
    checker: IssueSyncProgressChecker = Depends(get_progress_checker),
) -> ProjectSyncResponse:
    return ProjectSyncResponse(
        project_uuid=project_uuid,
        needs_issue_sync=await checker.does_project_need_issue_sync(project_uuid),
    )


@router.get("/check", response_model=SyncCheckResponse)
async def check_sync(
    project_uuid: Optional[List[str]] = Query(None),
    checker: IssueSyncProgressChecker = Depends(get_progress_checker),
) -> SyncCheckResponse:
    """Guard for issue search consumers.

    Responds 503 while issues of the given projects (or of any project, when
    none is given) are still being indexed.
    """
    if project_uuid:
        await checker.check_if_any_component_needs_issue_sync(project_uuid)
    else:
        await checker.check_if_issue_sync_in_progress()
    return SyncCheckResponse()


@router.get("/stream")
async def sync_stream(
    request: Request,
    event_types: Optional[str] = Query(
        None,
        description="Comma-separated event types (issue_sync.triggered, issue_sync.task_finished)",
    ),
    redis: Redis = Depends(get_redis),
) -> StreamingResponse:
    """Server-Sent Events stream of issue sync events."""
    event_type_set: Optional[set[str]] = None
    if event_types:
        event_type_set = {t.strip().lower() for t in event_types.split(",") if t.strip()}
        invalid = event_type_set - VALID_EVENT_TYPES
        if invalid:
            raise HTTPException(
                status_code=422,
                detail=f"Invalid event types: {sorted(invalid)}. "
                f"Valid types: {sorted(VALID_EVENT_TYPES)}",
            )

    return StreamingResponse(
        stream_events(redis, event_type_set, check_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
