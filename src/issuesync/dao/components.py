"""Project records ("main components" of branch tasks)."""

from __future__ import annotations

from typing import Optional, Protocol

from pgdbm import AsyncDatabaseManager

from ..models import Project


class ComponentRepository(Protocol):
    async def select_by_uuid(self, project_uuid: str) -> Optional[Project]: ...


class PgComponentRepository:
    def __init__(self, db: AsyncDatabaseManager) -> None:
        self._db = db

    async def insert(self, project: Project) -> None:
        await self._db.execute(
            "INSERT INTO {{tables.projects}} (uuid, kee, name) VALUES ($1, $2, $3)",
            project.uuid,
            project.key,
            project.name,
        )

    async def select_by_uuid(self, project_uuid: str) -> Optional[Project]:
        row = await self._db.fetch_one(
            "SELECT uuid, kee, name FROM {{tables.projects}} WHERE uuid = $1",
            project_uuid,
        )
        if row is None:
            return None
        return Project(uuid=row["uuid"], key=row["kee"], name=row["name"])
