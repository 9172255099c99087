"""Queueing of issue sync tasks after the issue index is (re)built.

The trigger only enqueues work. Each queued ``BRANCH_ISSUE_SYNC`` task is run
later by a worker (see :mod:`issuesync.steps` and :mod:`issuesync.worker`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .dao.branches import BranchRepository
from .dao.snapshots import SnapshotRepository
from .models import (
    BRANCH_KEY,
    BRANCH_TYPE_KEY,
    PULL_REQUEST_KEY,
    Branch,
    BranchType,
    QueueStatus,
    Snapshot,
    TaskComponent,
    TaskSubmit,
    TaskType,
)
from .queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    """Counts reported by one trigger run."""

    branches: int = 0
    projects: int = 0
    pending_tasks_deleted: int = 0
    completed_tasks_deleted: int = 0
    submitted_task_uuids: List[str] = field(default_factory=list)

    @property
    def tasks_submitted(self) -> int:
        return len(self.submitted_task_uuids)


def compare_by_snapshot(
    snapshot_by_project_uuid: Mapping[str, Snapshot],
) -> Callable[[str, str], int]:
    """Comparator over project uuids: most recently analyzed first.

    Projects missing from the mapping (never analyzed) compare equal to each
    other and greater than every analyzed project, which keeps the ordering
    total and transitive.
    """

    def compare(uuid1: str, uuid2: str) -> int:
        snapshot1 = snapshot_by_project_uuid.get(uuid1)
        snapshot2 = snapshot_by_project_uuid.get(uuid2)
        if snapshot1 is None and snapshot2 is None:
            return 0
        if snapshot1 is None:
            return 1
        if snapshot2 is None:
            return -1
        return (snapshot2.created_at > snapshot1.created_at) - (
            snapshot2.created_at < snapshot1.created_at
        )

    return compare


class IssueSyncTrigger:
    """Schedules one ``BRANCH_ISSUE_SYNC`` task per branch needing issue sync."""

    def __init__(
        self,
        branches: BranchRepository,
        snapshots: SnapshotRepository,
        task_queue: TaskQueue,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._branches = branches
        self._snapshots = snapshots
        self._task_queue = task_queue
        self._log = log or logger

    async def trigger_on_index_creation(self) -> TriggerResult:
        """Queue a sync task for every branch flagged as needing issue sync.

        Queued and finished sync tasks left from a previous run are deleted
        first, so each flagged branch ends up with exactly one pending task.
        """
        branches = await self._branches.select_branches_needing_issue_sync()
        self._log.info("%d branch found in need of issue sync.", len(branches))
        if not branches:
            return TriggerResult()

        result = await self._remove_existing_indexation_tasks()
        return await self._submit(branches, result)

    async def trigger_for_all_branches(self) -> TriggerResult:
        """Flag every branch as needing issue sync, then trigger.

        Used when the issue index did not exist before, so nothing in it can be
        trusted.
        """
        updated = await self._branches.update_all_need_issue_sync()
        self._log.info("%d branches flagged for issue sync.", updated)
        return await self.trigger_on_index_creation()

    async def trigger_for_project(self, project_uuid: str) -> TriggerResult:
        """Flag and resync the branches of a single project.

        Only sync tasks targeting this project's branches are removed.
        """
        await self._branches.update_need_issue_sync_for_project(project_uuid)
        branches = [
            branch
            for branch in await self._branches.select_by_project_uuid(project_uuid)
            if branch.need_issue_sync
        ]
        self._log.info(
            "%d branch found in need of issue sync for project %s.", len(branches), project_uuid
        )
        if not branches:
            return TriggerResult()

        result = await self._remove_existing_indexation_tasks(
            component_uuids=[branch.uuid for branch in branches]
        )
        return await self._submit(branches, result)

    async def _submit(self, branches: List[Branch], result: TriggerResult) -> TriggerResult:
        ordered = await self._sort_by_last_analysis(branches)
        result.branches = len(ordered)
        result.projects = len({branch.project_uuid for branch in ordered})
        self._log.info("%d projects found in need of issue sync.", result.projects)

        submits = [self._build_task_submit(branch) for branch in ordered]
        result.submitted_task_uuids = list(await self._task_queue.mass_submit(submits))
        self._log.info("%d issue sync tasks submitted.", result.tasks_submitted)
        return result

    async def _sort_by_last_analysis(self, branches: List[Branch]) -> List[Branch]:
        project_uuids = list(dict.fromkeys(branch.project_uuid for branch in branches))
        snapshots = await self._snapshots.select_last_analyses_by_project_uuids(project_uuids)
        snapshot_by_project_uuid: Dict[str, Snapshot] = {
            snapshot.component_uuid: snapshot for snapshot in snapshots
        }
        # sorted() is stable: never-analyzed projects keep their input order.
        compare = compare_by_snapshot(snapshot_by_project_uuid)
        return sorted(
            branches,
            key=cmp_to_key(lambda b1, b2: compare(b1.project_uuid, b2.project_uuid)),
        )

    async def _remove_existing_indexation_tasks(
        self, component_uuids: Optional[Sequence[str]] = None
    ) -> TriggerResult:
        queued = await self._task_queue.select_queued(
            TaskType.BRANCH_ISSUE_SYNC, component_uuids=component_uuids
        )
        # Tasks already picked up by a worker are left to finish.
        queued_uuids = [task.uuid for task in queued if task.status == QueueStatus.PENDING]
        self._log.info("%d pending indexation task found to be deleted...", len(queued_uuids))

        activities = await self._task_queue.select_activities(
            TaskType.BRANCH_ISSUE_SYNC, component_uuids=component_uuids
        )
        activity_uuids = [activity.uuid for activity in activities]
        self._log.info(
            "%d completed indexation task found to be deleted...", len(activity_uuids)
        )

        self._log.info("Deleting tasks characteristics...")
        deleted = await self._task_queue.delete_tasks(queued_uuids, activity_uuids)
        self._log.info("Indexation task deletion complete.")
        self._log.info("Tasks characteristics deletion complete.")

        return TriggerResult(
            pending_tasks_deleted=deleted.queued,
            completed_tasks_deleted=deleted.activities,
        )

    def _build_task_submit(self, branch: Branch) -> TaskSubmit:
        characteristics = {BRANCH_TYPE_KEY: branch.branch_type.value}
        if branch.branch_type == BranchType.BRANCH:
            characteristics[BRANCH_KEY] = branch.key
        else:
            characteristics[PULL_REQUEST_KEY] = branch.key

        builder = self._task_queue.prepare_submit()
        builder.task_type = TaskType.BRANCH_ISSUE_SYNC
        builder.component = TaskComponent(
            uuid=branch.uuid, main_component_uuid=branch.project_uuid
        )
        builder.characteristics = characteristics
        return builder.build()
