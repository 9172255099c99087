"""Read-side view of issue sync progress."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .dao.branches import BranchRepository
from .errors import IssueSyncInProgressError
from .models import IssueSyncProgress, TaskType
from .queue import TaskQueue

logger = logging.getLogger(__name__)


class IssueSyncProgressChecker:
    def __init__(
        self,
        branches: BranchRepository,
        task_queue: TaskQueue,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._branches = branches
        self._task_queue = task_queue
        self._log = log or logger

    async def get_sync_progress(self) -> IssueSyncProgress:
        """Count synced branches against all branches.

        The counts are read without a shared snapshot, so a worker finishing in
        between can make them slightly inconsistent.
        """
        completed = await self._branches.count_by_need_issue_sync(False)
        total = await self._branches.count_all()
        pending = await self._branches.count_by_need_issue_sync(True)
        has_failures = await self._task_queue.has_any_failed(TaskType.BRANCH_ISSUE_SYNC)
        progress = IssueSyncProgress(
            completed=completed, total=total, has_failures=has_failures, pending=pending
        )
        self._log.debug(
            "Issue sync progress: %d/%d (%d%%), failures=%s",
            completed,
            total,
            progress.percent_completed,
            has_failures,
        )
        return progress

    async def is_issue_sync_in_progress(self) -> bool:
        return await self._branches.has_any_branch_where_need_issue_sync(True)

    async def check_if_issue_sync_in_progress(self) -> None:
        if await self.is_issue_sync_in_progress():
            raise IssueSyncInProgressError()

    async def does_project_need_issue_sync(self, project_uuid: str) -> bool:
        return bool(await self.find_project_uuids_with_issues_sync_need([project_uuid]))

    async def find_project_uuids_with_issues_sync_need(
        self, project_uuids: Sequence[str]
    ) -> List[str]:
        return await self._branches.select_project_uuids_with_issues_need_sync(project_uuids)

    async def check_if_any_component_needs_issue_sync(self, project_uuids: Sequence[str]) -> None:
        """Raise IssueSyncInProgressError when any of the projects is not yet synced."""
        if await self.find_project_uuids_with_issues_sync_need(project_uuids):
            raise IssueSyncInProgressError()
