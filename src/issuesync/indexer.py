"""Issue search index stored in Redis.

Layout, with ``issues`` as the default prefix:

- ``issues:index:created``: marker set when the index is first created.
- ``issues:branch:<branch_uuid>``: set of issue keys indexed for a branch.
- ``issues:issue:<issue_key>``: hash holding one indexed issue.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Protocol
from urllib.parse import quote

from redis.asyncio import Redis

from .dao.issues import IssueRepository
from .models import Issue

logger = logging.getLogger(__name__)

DEFAULT_INDEX_PREFIX = "issues"


class IssueIndexer(Protocol):
    async def index_on_analysis(self, branch_uuid: str) -> int: ...


def _safe_key_component(value: str) -> str:
    """URL-encode a value so colons inside it cannot collide with key separators."""
    return quote(value, safe="")


def _issue_document(issue: Issue) -> Dict[str, str]:
    return {
        "key": issue.key,
        "branch_uuid": issue.branch_uuid,
        "project_uuid": issue.project_uuid,
        "rule_key": issue.rule_key,
        "message": issue.message,
        "severity": issue.severity,
        "status": issue.status,
        "issue_type": issue.issue_type,
        "updated_at": str(issue.updated_at),
    }


class RedisIssueIndexer:
    def __init__(
        self,
        redis: Redis,
        issues: IssueRepository,
        prefix: str = DEFAULT_INDEX_PREFIX,
    ) -> None:
        self._redis = redis
        self._issues = issues
        self._prefix = prefix

    def _marker_key(self) -> str:
        return f"{self._prefix}:index:created"

    def _branch_key(self, branch_uuid: str) -> str:
        return f"{self._prefix}:branch:{_safe_key_component(branch_uuid)}"

    def _issue_key(self, issue_key: str) -> str:
        return f"{self._prefix}:issue:{_safe_key_component(issue_key)}"

    async def ensure_index_created(self) -> bool:
        """Create the index marker; True when the index did not exist before."""
        created = await self._redis.set(
            self._marker_key(), datetime.now(timezone.utc).isoformat(), nx=True
        )
        if created:
            logger.info("Issue index created")
        return bool(created)

    async def index_on_analysis(self, branch_uuid: str) -> int:
        """Replace the indexed issues of a branch with the ones in the database.

        Returns the number of issues indexed.
        """
        issues = await self._issues.select_by_branch_uuid(branch_uuid)
        branch_key = self._branch_key(branch_uuid)

        previous = set(await self._redis.smembers(branch_key))
        current = {issue.key for issue in issues}
        stale = previous - current

        pipe = self._redis.pipeline(transaction=True)
        for issue_key in stale:
            pipe.delete(self._issue_key(issue_key))
        for issue in issues:
            pipe.hset(self._issue_key(issue.key), mapping=_issue_document(issue))
        pipe.delete(branch_key)
        if current:
            pipe.sadd(branch_key, *sorted(current))
        await pipe.execute()

        logger.debug(
            "Indexed %d issues of branch %s (%d stale removed)",
            len(issues),
            branch_uuid,
            len(stale),
        )
        return len(issues)
