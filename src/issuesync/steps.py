"""Computation steps run by workers for ``BRANCH_ISSUE_SYNC`` tasks."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import FrozenSet, List, Optional, Protocol, Sequence, Type

from .dao.branches import BranchRepository
from .dao.components import ComponentRepository
from .errors import BranchNotFoundError, ConfigurationError
from .indexer import IssueIndexer
from .models import QueuedTask, TaskType

logger = logging.getLogger(__name__)


class StepContext:
    """State shared by the steps of one task run."""

    def __init__(self, task: QueuedTask) -> None:
        self.task = task
        self._stopped = False

    def stop(self) -> None:
        """Skip every step after the current one."""
        self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped


def require_component_uuid(task: QueuedTask) -> str:
    if not task.component_uuid:
        raise ConfigurationError("component not found in task")
    return task.component_uuid


def require_main_component_uuid(task: QueuedTask) -> str:
    if not task.main_component_uuid:
        raise ConfigurationError("main component not found in task")
    return task.main_component_uuid


class ComputationStep(ABC):
    description: str = ""

    @abstractmethod
    async def execute(self, context: StepContext) -> None: ...


class IgnoreOrphanBranchStep(ComputationStep):
    """Drops sync tasks whose project was deleted after the task was queued.

    The branch left behind gets its ``exclude_from_purge`` and
    ``need_issue_sync`` flags cleared so it no longer counts as pending, and
    the remaining steps are skipped.
    """

    description = "Ignore orphan component"

    def __init__(
        self,
        branches: BranchRepository,
        components: ComponentRepository,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._branches = branches
        self._components = components
        self._log = log or logger

    async def execute(self, context: StepContext) -> None:
        main_component_uuid = require_main_component_uuid(context.task)
        component_uuid = require_component_uuid(context.task)

        project = await self._components.select_by_uuid(main_component_uuid)
        if project is not None:
            return

        self._log.info(
            "reindexation task has been trigger on an orphan branch. "
            "removing any exclude_from_purge flag, and skip the indexation"
        )
        await self._branches.clear_issue_sync_flags(component_uuid)
        context.stop()


class IndexIssuesStep(ComputationStep):
    description = "Index issues"

    def __init__(
        self,
        branches: BranchRepository,
        indexer: IssueIndexer,
        *,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._branches = branches
        self._indexer = indexer
        self._log = log or logger

    async def execute(self, context: StepContext) -> None:
        branch_uuid = require_component_uuid(context.task)
        branch = await self._branches.select_by_uuid(branch_uuid)
        if branch is None:
            raise BranchNotFoundError(branch_uuid)

        if not branch.need_issue_sync:
            self._log.info("Issue sync not required")
            return

        self._log.info("indexing issues of branch %s", branch_uuid)
        await self._indexer.index_on_analysis(branch_uuid)
        await self._branches.update_need_issue_sync(branch_uuid, False)


class SyncComputationSteps:
    """The fixed step sequence of an issue sync task.

    The orphan check always runs before indexing.
    """

    _ORDERED_STEP_CLASSES: Sequence[Type[ComputationStep]] = (
        IgnoreOrphanBranchStep,
        IndexIssuesStep,
    )

    def __init__(
        self,
        branches: Optional[BranchRepository],
        components: Optional[ComponentRepository],
        indexer: Optional[IssueIndexer],
    ) -> None:
        missing = [
            name
            for name, value in (
                ("branches", branches),
                ("components", components),
                ("indexer", indexer),
            )
            if value is None
        ]
        if missing:
            raise ConfigurationError(
                f"Cannot build issue sync steps, missing: {', '.join(missing)}"
            )
        assert branches is not None and components is not None and indexer is not None
        self._branches = branches
        self._components = components
        self._indexer = indexer

    @classmethod
    def ordered_step_classes(cls) -> List[Type[ComputationStep]]:
        return list(cls._ORDERED_STEP_CLASSES)

    def instances(self) -> List[ComputationStep]:
        steps: List[ComputationStep] = []
        for step_class in self.ordered_step_classes():
            if step_class is IgnoreOrphanBranchStep:
                steps.append(IgnoreOrphanBranchStep(self._branches, self._components))
            elif step_class is IndexIssuesStep:
                steps.append(IndexIssuesStep(self._branches, self._indexer))
            else:
                raise ConfigurationError(f"No factory for step {step_class.__name__}")
        return steps


class TaskProcessor(Protocol):
    handled_task_types: FrozenSet[str]

    async def process(self, task: QueuedTask) -> None: ...


class IssueSyncTaskProcessor:
    handled_task_types: FrozenSet[str] = frozenset({TaskType.BRANCH_ISSUE_SYNC})

    def __init__(self, steps: SyncComputationSteps) -> None:
        self._steps = steps

    async def process(self, task: QueuedTask) -> None:
        """Run the sync steps in order. A failing step aborts the task."""
        context = StepContext(task)
        for step in self._steps.instances():
            if context.stopped:
                logger.debug("Skipping step '%s' of task %s", step.description, task.uuid)
                continue
            started = time.monotonic()
            status = "FAILED"
            try:
                await step.execute(context)
                status = "SUCCESS"
            finally:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                logger.info("%s | status=%s | time=%dms", step.description, status, elapsed_ms)
