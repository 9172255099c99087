"""Domain records shared by the repositories, the task queue and the sync core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class BranchType(str, Enum):
    BRANCH = "BRANCH"
    PULL_REQUEST = "PULL_REQUEST"


class TaskType:
    """Closed set of background task types handled by the queue."""

    REPORT = "REPORT"
    BRANCH_ISSUE_SYNC = "BRANCH_ISSUE_SYNC"
    AUDIT_PURGE = "AUDIT_PURGE"

    ALL = frozenset({REPORT, BRANCH_ISSUE_SYNC, AUDIT_PURGE})


# Characteristic keys attached to queued tasks.
BRANCH_TYPE_KEY = "branchType"
BRANCH_KEY = "branch"
PULL_REQUEST_KEY = "pullRequest"


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"


class ActivityStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


SNAPSHOT_STATUS_PROCESSED = "P"
SNAPSHOT_STATUS_UNPROCESSED = "U"


@dataclass
class Branch:
    """A project branch or pull request, with its issue sync flags."""

    uuid: str
    project_uuid: str
    key: str
    branch_type: BranchType = BranchType.BRANCH
    need_issue_sync: bool = False
    exclude_from_purge: bool = False

    @property
    def is_pull_request(self) -> bool:
        return self.branch_type == BranchType.PULL_REQUEST


@dataclass(frozen=True)
class Project:
    uuid: str
    key: str
    name: str = ""


@dataclass(frozen=True)
class Snapshot:
    """One analysis of a project. ``created_at`` is in epoch milliseconds."""

    uuid: str
    component_uuid: str
    created_at: int
    last: bool = False
    status: str = SNAPSHOT_STATUS_PROCESSED


@dataclass(frozen=True)
class Issue:
    key: str
    branch_uuid: str
    project_uuid: str
    rule_key: str
    message: str = ""
    severity: str = "MAJOR"
    status: str = "OPEN"
    issue_type: str = "CODE_SMELL"
    updated_at: int = 0


@dataclass(frozen=True)
class TaskComponent:
    """Target of a task: the branch uuid and the uuid of its project."""

    uuid: str
    main_component_uuid: str


@dataclass(frozen=True)
class TaskSubmit:
    """A task ready to be inserted in the queue."""

    uuid: str
    task_type: str
    component: Optional[TaskComponent]
    characteristics: Dict[str, str] = field(default_factory=dict)
    submitter_uuid: Optional[str] = None


@dataclass
class TaskSubmitBuilder:
    """Mutable draft returned by ``TaskQueue.prepare_submit()``."""

    uuid: str
    task_type: Optional[str] = None
    component: Optional[TaskComponent] = None
    characteristics: Dict[str, str] = field(default_factory=dict)
    submitter_uuid: Optional[str] = None

    def build(self) -> TaskSubmit:
        if not self.task_type:
            raise ValueError("task type must be set")
        if self.task_type not in TaskType.ALL:
            raise ValueError(f"Unsupported task type: {self.task_type}")
        return TaskSubmit(
            uuid=self.uuid,
            task_type=self.task_type,
            component=self.component,
            characteristics=dict(self.characteristics),
            submitter_uuid=self.submitter_uuid,
        )


@dataclass(frozen=True)
class QueuedTask:
    """A task sitting in the queue, pending or claimed by a worker."""

    uuid: str
    task_type: str
    component_uuid: Optional[str]
    main_component_uuid: Optional[str]
    status: QueueStatus = QueueStatus.PENDING
    characteristics: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    worker_uuid: Optional[str] = None


@dataclass(frozen=True)
class Activity:
    """A finished task, kept as history."""

    uuid: str
    task_type: str
    component_uuid: Optional[str]
    main_component_uuid: Optional[str]
    status: ActivityStatus
    error_message: Optional[str] = None
    submitted_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None


@dataclass(frozen=True)
class IssueSyncProgress:
    """Point-in-time view of how many branches have their issues in sync."""

    completed: int
    total: int
    has_failures: bool
    # Branches still flagged, counted directly. None when only the two totals are known.
    pending: Optional[int] = None

    @property
    def is_completed(self) -> bool:
        if self.pending is not None:
            return self.pending == 0
        return self.total - self.completed <= 0

    @property
    def percent_completed(self) -> int:
        if self.total <= 0:
            return 100
        completed = min(max(self.completed, 0), self.total)
        # Round half up, in integers: floor(100 * c / t + 1/2).
        return (200 * completed + self.total) // (2 * self.total)
