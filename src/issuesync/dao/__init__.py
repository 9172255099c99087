"""Repositories over the ``components`` schema."""

from .branches import BranchRepository, PgBranchRepository
from .components import ComponentRepository, PgComponentRepository
from .issues import IssueRepository, PgIssueRepository
from .snapshots import PgSnapshotRepository, SnapshotRepository

__all__ = [
    "BranchRepository",
    "ComponentRepository",
    "IssueRepository",
    "PgBranchRepository",
    "PgComponentRepository",
    "PgIssueRepository",
    "PgSnapshotRepository",
    "SnapshotRepository",
]
