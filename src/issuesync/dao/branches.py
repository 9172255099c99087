"""Branch and pull request records, with their issue sync flags."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Protocol, Sequence

from pgdbm import AsyncDatabaseManager

from ..db_utils import execute_large_inputs
from ..models import Branch, BranchType

_BRANCH_COLUMNS = "uuid, project_uuid, kee, branch_type, need_issue_sync, exclude_from_purge"


class BranchRepository(Protocol):
    async def select_branches_needing_issue_sync(self) -> List[Branch]: ...

    async def select_by_uuid(self, branch_uuid: str) -> Optional[Branch]: ...

    async def select_by_uuids(self, branch_uuids: Sequence[str]) -> List[Branch]: ...

    async def select_by_project_uuid(self, project_uuid: str) -> List[Branch]: ...

    async def update_need_issue_sync(self, branch_uuid: str, need_issue_sync: bool) -> int: ...

    async def update_exclude_from_purge(
        self, branch_uuid: str, exclude_from_purge: bool
    ) -> int: ...

    async def clear_issue_sync_flags(self, branch_uuid: str) -> None: ...

    async def update_all_need_issue_sync(self) -> int: ...

    async def update_need_issue_sync_for_project(self, project_uuid: str) -> int: ...

    async def count_by_need_issue_sync(self, need_issue_sync: bool) -> int: ...

    async def count_all(self) -> int: ...

    async def has_any_branch_where_need_issue_sync(self, need_issue_sync: bool) -> bool: ...

    async def select_project_uuids_with_issues_need_sync(
        self, project_uuids: Sequence[str]
    ) -> List[str]: ...


def branch_from_row(row: Mapping[str, Any]) -> Branch:
    return Branch(
        uuid=row["uuid"],
        project_uuid=row["project_uuid"],
        key=row["kee"],
        branch_type=BranchType(row["branch_type"]),
        need_issue_sync=bool(row["need_issue_sync"]),
        exclude_from_purge=bool(row["exclude_from_purge"]),
    )


class PgBranchRepository:
    """BranchRepository backed by the ``components`` schema."""

    def __init__(self, db: AsyncDatabaseManager) -> None:
        self._db = db

    async def insert(self, branch: Branch) -> None:
        await self._db.execute(
            f"""
            INSERT INTO {{{{tables.branches}}}} ({_BRANCH_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            branch.uuid,
            branch.project_uuid,
            branch.key,
            branch.branch_type.value,
            branch.need_issue_sync,
            branch.exclude_from_purge,
        )

    async def select_branches_needing_issue_sync(self) -> List[Branch]:
        rows = await self._db.fetch_all(
            f"""
            SELECT {_BRANCH_COLUMNS}
            FROM {{{{tables.branches}}}}
            WHERE need_issue_sync = TRUE
            ORDER BY created_at, uuid
            """
        )
        return [branch_from_row(row) for row in rows]

    async def select_by_uuid(self, branch_uuid: str) -> Optional[Branch]:
        row = await self._db.fetch_one(
            f"SELECT {_BRANCH_COLUMNS} FROM {{{{tables.branches}}}} WHERE uuid = $1",
            branch_uuid,
        )
        return branch_from_row(row) if row else None

    async def select_by_uuids(self, branch_uuids: Sequence[str]) -> List[Branch]:
        async def _select(chunk: List[str]) -> List[Branch]:
            rows = await self._db.fetch_all(
                f"""
                SELECT {_BRANCH_COLUMNS}
                FROM {{{{tables.branches}}}}
                WHERE uuid = ANY($1::text[])
                """,
                chunk,
            )
            return [branch_from_row(row) for row in rows]

        return await execute_large_inputs(branch_uuids, _select)

    async def select_by_project_uuid(self, project_uuid: str) -> List[Branch]:
        rows = await self._db.fetch_all(
            f"""
            SELECT {_BRANCH_COLUMNS}
            FROM {{{{tables.branches}}}}
            WHERE project_uuid = $1
            ORDER BY created_at, uuid
            """,
            project_uuid,
        )
        return [branch_from_row(row) for row in rows]

    async def update_need_issue_sync(self, branch_uuid: str, need_issue_sync: bool) -> int:
        rows = await self._db.fetch_all(
            """
            UPDATE {{tables.branches}}
            SET need_issue_sync = $2, updated_at = NOW()
            WHERE uuid = $1
            RETURNING uuid
            """,
            branch_uuid,
            need_issue_sync,
        )
        return len(rows)

    async def update_exclude_from_purge(self, branch_uuid: str, exclude_from_purge: bool) -> int:
        rows = await self._db.fetch_all(
            """
            UPDATE {{tables.branches}}
            SET exclude_from_purge = $2, updated_at = NOW()
            WHERE uuid = $1
            RETURNING uuid
            """,
            branch_uuid,
            exclude_from_purge,
        )
        return len(rows)

    async def clear_issue_sync_flags(self, branch_uuid: str) -> None:
        """Reset both ``exclude_from_purge`` and ``need_issue_sync`` in one transaction."""
        async with self._db.transaction() as tx:
            await tx.execute(
                """
                UPDATE {{tables.branches}}
                SET exclude_from_purge = FALSE, updated_at = NOW()
                WHERE uuid = $1
                """,
                branch_uuid,
            )
            await tx.execute(
                """
                UPDATE {{tables.branches}}
                SET need_issue_sync = FALSE, updated_at = NOW()
                WHERE uuid = $1
                """,
                branch_uuid,
            )

    async def update_all_need_issue_sync(self) -> int:
        rows = await self._db.fetch_all(
            """
            UPDATE {{tables.branches}}
            SET need_issue_sync = TRUE, updated_at = NOW()
            RETURNING uuid
            """
        )
        return len(rows)

    async def update_need_issue_sync_for_project(self, project_uuid: str) -> int:
        rows = await self._db.fetch_all(
            """
            UPDATE {{tables.branches}}
            SET need_issue_sync = TRUE, updated_at = NOW()
            WHERE project_uuid = $1
            RETURNING uuid
            """,
            project_uuid,
        )
        return len(rows)

    async def count_by_need_issue_sync(self, need_issue_sync: bool) -> int:
        value = await self._db.fetch_value(
            "SELECT COUNT(*) FROM {{tables.branches}} WHERE need_issue_sync = $1",
            need_issue_sync,
        )
        return int(value or 0)

    async def count_all(self) -> int:
        value = await self._db.fetch_value("SELECT COUNT(*) FROM {{tables.branches}}")
        return int(value or 0)

    async def has_any_branch_where_need_issue_sync(self, need_issue_sync: bool) -> bool:
        value = await self._db.fetch_value(
            """
            SELECT EXISTS (
                SELECT 1 FROM {{tables.branches}} WHERE need_issue_sync = $1
            )
            """,
            need_issue_sync,
        )
        return bool(value)

    async def select_project_uuids_with_issues_need_sync(
        self, project_uuids: Sequence[str]
    ) -> List[str]:
        async def _select(chunk: List[str]) -> List[str]:
            rows = await self._db.fetch_all(
                """
                SELECT DISTINCT project_uuid
                FROM {{tables.branches}}
                WHERE need_issue_sync = TRUE AND project_uuid = ANY($1::text[])
                """,
                chunk,
            )
            return [row["project_uuid"] for row in rows]

        return await execute_large_inputs(project_uuids, _select)
