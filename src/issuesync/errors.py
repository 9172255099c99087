"""Exceptions raised by the issue sync core."""

from __future__ import annotations


class IssueSyncError(Exception):
    """Base class for issuesync errors."""


class ConfigurationError(IssueSyncError):
    """A collaborator or a mandatory task reference is missing.

    Raised while building the step orderer, or while running a task that does
    not carry the component it targets. The task cannot proceed.
    """


class BranchNotFoundError(IssueSyncError):
    def __init__(self, branch_uuid: str) -> None:
        super().__init__(f"Branch not found: {branch_uuid}")
        self.branch_uuid = branch_uuid


class IssueSyncInProgressError(IssueSyncError):
    """Issues are still being re-indexed; search results would be incomplete."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Results are temporarily unavailable. Indexing of issues is in progress."
        )
