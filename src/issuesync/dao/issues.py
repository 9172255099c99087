"""Issues raised by analyses; the source data of the issue search index."""

from __future__ import annotations

from typing import Any, List, Mapping, Protocol

from pgdbm import AsyncDatabaseManager

from ..models import Issue

_ISSUE_COLUMNS = (
    "kee, branch_uuid, project_uuid, rule_key, message, severity, status, issue_type, updated_at"
)


class IssueRepository(Protocol):
    async def select_by_branch_uuid(self, branch_uuid: str) -> List[Issue]: ...


def issue_from_row(row: Mapping[str, Any]) -> Issue:
    return Issue(
        key=row["kee"],
        branch_uuid=row["branch_uuid"],
        project_uuid=row["project_uuid"],
        rule_key=row["rule_key"],
        message=row["message"],
        severity=row["severity"],
        status=row["status"],
        issue_type=row["issue_type"],
        updated_at=int(row["updated_at"]),
    )


class PgIssueRepository:
    def __init__(self, db: AsyncDatabaseManager) -> None:
        self._db = db

    async def select_by_branch_uuid(self, branch_uuid: str) -> List[Issue]:
        rows = await self._db.fetch_all(
            f"""
            SELECT {_ISSUE_COLUMNS}
            FROM {{{{tables.issues}}}}
            WHERE branch_uuid = $1
            ORDER BY kee
            """,
            branch_uuid,
        )
        return [issue_from_row(row) for row in rows]
