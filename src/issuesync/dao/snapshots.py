"""Project analyses, used to order branches by recency."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Protocol, Sequence

from pgdbm import AsyncDatabaseManager

from ..db_utils import execute_large_inputs
from ..models import Snapshot


class SnapshotRepository(Protocol):
    async def select_latest_analysis(self, project_uuid: str) -> Optional[Snapshot]: ...

    async def select_last_analyses_by_project_uuids(
        self, project_uuids: Sequence[str]
    ) -> List[Snapshot]: ...


def snapshot_from_row(row: Mapping[str, Any]) -> Snapshot:
    return Snapshot(
        uuid=row["uuid"],
        component_uuid=row["component_uuid"],
        created_at=int(row["created_at"]),
        last=bool(row["islast"]),
        status=row["status"],
    )


class PgSnapshotRepository:
    def __init__(self, db: AsyncDatabaseManager) -> None:
        self._db = db

    async def insert(self, snapshot: Snapshot) -> None:
        await self._db.execute(
            """
            INSERT INTO {{tables.snapshots}} (uuid, component_uuid, status, islast, created_at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            snapshot.uuid,
            snapshot.component_uuid,
            snapshot.status,
            snapshot.last,
            snapshot.created_at,
        )

    async def select_latest_analysis(self, project_uuid: str) -> Optional[Snapshot]:
        row = await self._db.fetch_one(
            """
            SELECT uuid, component_uuid, status, islast, created_at
            FROM {{tables.snapshots}}
            WHERE component_uuid = $1 AND islast = TRUE
            ORDER BY created_at DESC
            LIMIT 1
            """,
            project_uuid,
        )
        return snapshot_from_row(row) if row else None

    async def select_last_analyses_by_project_uuids(
        self, project_uuids: Sequence[str]
    ) -> List[Snapshot]:
        """Latest analysis of each project; projects never analyzed are absent."""

        async def _select(chunk: List[str]) -> List[Snapshot]:
            rows = await self._db.fetch_all(
                """
                SELECT DISTINCT ON (component_uuid)
                       uuid, component_uuid, status, islast, created_at
                FROM {{tables.snapshots}}
                WHERE islast = TRUE AND component_uuid = ANY($1::text[])
                ORDER BY component_uuid, created_at DESC
                """,
                chunk,
            )
            return [snapshot_from_row(row) for row in rows]

        return await execute_large_inputs(project_uuids, _select)
