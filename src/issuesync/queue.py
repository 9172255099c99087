"""Background task queue: pending tasks, finished-task history and characteristics.

Tasks live in ``ce_queue`` while pending or running. When a worker finishes a
task, the row moves to ``ce_activity``; characteristics rows are keyed by task
uuid and survive the move.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from pgdbm import AsyncDatabaseManager

from .db_utils import execute_large_inputs, execute_large_updates, partition
from .models import (
    Activity,
    ActivityStatus,
    QueuedTask,
    QueueStatus,
    TaskSubmit,
    TaskSubmitBuilder,
)

logger = logging.getLogger(__name__)

_QUEUE_COLUMNS = (
    "uuid, task_type, component_uuid, main_component_uuid, status, "
    "created_at, started_at, worker_uuid"
)
_QUEUE_RETURNING = ", ".join("q." + column.strip() for column in _QUEUE_COLUMNS.split(","))
_ACTIVITY_COLUMNS = (
    "uuid, task_type, component_uuid, main_component_uuid, status, error_message, "
    "submitted_at, executed_at, execution_time_ms"
)


@dataclass(frozen=True)
class DeletedTasks:
    """Rows removed by :meth:`TaskQueue.delete_tasks`."""

    queued: int = 0
    activities: int = 0
    characteristics: int = 0


class TaskQueue(Protocol):
    def prepare_submit(self) -> TaskSubmitBuilder: ...

    async def mass_submit(self, submits: Sequence[TaskSubmit]) -> List[str]: ...

    async def select_queued(
        self, task_type: str, component_uuids: Optional[Sequence[str]] = None
    ) -> List[QueuedTask]: ...

    async def select_activities(
        self, task_type: str, component_uuids: Optional[Sequence[str]] = None
    ) -> List[Activity]: ...

    async def delete_tasks(
        self, queued_uuids: Sequence[str], activity_uuids: Sequence[str]
    ) -> DeletedTasks: ...

    async def reset_in_progress(self, started_before_seconds: float = 0) -> int: ...

    async def has_any_failed(self, task_type: str) -> bool: ...

    async def peek(self, worker_uuid: str) -> Optional[QueuedTask]: ...

    async def finish(
        self,
        task: QueuedTask,
        status: ActivityStatus,
        *,
        error_message: Optional[str] = None,
        execution_time_ms: Optional[int] = None,
    ) -> None: ...


def queued_task_from_row(
    row: Mapping[str, Any], characteristics: Optional[Dict[str, str]] = None
) -> QueuedTask:
    return QueuedTask(
        uuid=row["uuid"],
        task_type=row["task_type"],
        component_uuid=row["component_uuid"],
        main_component_uuid=row["main_component_uuid"],
        status=QueueStatus(row["status"]),
        characteristics=characteristics or {},
        created_at=row["created_at"],
        started_at=row["started_at"],
        worker_uuid=row["worker_uuid"],
    )


def activity_from_row(row: Mapping[str, Any]) -> Activity:
    return Activity(
        uuid=row["uuid"],
        task_type=row["task_type"],
        component_uuid=row["component_uuid"],
        main_component_uuid=row["main_component_uuid"],
        status=ActivityStatus(row["status"]),
        error_message=row["error_message"],
        submitted_at=row["submitted_at"],
        executed_at=row["executed_at"],
        execution_time_ms=row["execution_time_ms"],
    )


class PgTaskQueue:
    """TaskQueue backed by the ``ce`` schema."""

    def __init__(self, db: AsyncDatabaseManager) -> None:
        self._db = db

    def prepare_submit(self) -> TaskSubmitBuilder:
        return TaskSubmitBuilder(uuid=str(uuid.uuid4()))

    async def submit(self, submit: TaskSubmit) -> str:
        uuids = await self.mass_submit([submit])
        return uuids[0]

    async def mass_submit(self, submits: Sequence[TaskSubmit]) -> List[str]:
        """Insert every task and its characteristics in one transaction.

        Tasks are queued in the order given; workers pick them up in that order.
        """
        if not submits:
            return []

        async with self._db.transaction() as tx:
            for chunk in partition(submits):
                await tx.execute(
                    """
                    INSERT INTO {{tables.ce_queue}}
                        (uuid, task_type, component_uuid, main_component_uuid, submitter_uuid)
                    SELECT t.uuid, t.task_type, t.component_uuid, t.main_component_uuid,
                           t.submitter_uuid
                    FROM unnest($1::text[], $2::text[], $3::text[], $4::text[], $5::text[])
                         WITH ORDINALITY
                         AS t(uuid, task_type, component_uuid, main_component_uuid,
                              submitter_uuid, ord)
                    ORDER BY t.ord
                    """,
                    [s.uuid for s in chunk],
                    [s.task_type for s in chunk],
                    [s.component.uuid if s.component else None for s in chunk],
                    [s.component.main_component_uuid if s.component else None for s in chunk],
                    [s.submitter_uuid for s in chunk],
                )

            characteristics = [
                (str(uuid.uuid4()), s.uuid, key, value)
                for s in submits
                for key, value in s.characteristics.items()
            ]
            for chunk in partition(characteristics):
                await tx.execute(
                    """
                    INSERT INTO {{tables.ce_task_characteristics}} (uuid, task_uuid, kee, text_value)
                    SELECT * FROM unnest($1::text[], $2::text[], $3::text[], $4::text[])
                    """,
                    [c[0] for c in chunk],
                    [c[1] for c in chunk],
                    [c[2] for c in chunk],
                    [c[3] for c in chunk],
                )

        logger.debug("Submitted %d tasks", len(submits))
        return [s.uuid for s in submits]

    async def select_queued(
        self, task_type: str, component_uuids: Optional[Sequence[str]] = None
    ) -> List[QueuedTask]:
        if component_uuids is None:
            rows = await self._db.fetch_all(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM {{{{tables.ce_queue}}}}
                WHERE task_type = $1
                ORDER BY seq
                """,
                task_type,
            )
            return [queued_task_from_row(row) for row in rows]

        async def _select(chunk: List[str]) -> List[QueuedTask]:
            rows = await self._db.fetch_all(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM {{{{tables.ce_queue}}}}
                WHERE task_type = $1 AND component_uuid = ANY($2::text[])
                ORDER BY seq
                """,
                task_type,
                chunk,
            )
            return [queued_task_from_row(row) for row in rows]

        return await execute_large_inputs(component_uuids, _select)

    async def select_activities(
        self, task_type: str, component_uuids: Optional[Sequence[str]] = None
    ) -> List[Activity]:
        if component_uuids is None:
            rows = await self._db.fetch_all(
                f"""
                SELECT {_ACTIVITY_COLUMNS}
                FROM {{{{tables.ce_activity}}}}
                WHERE task_type = $1
                ORDER BY executed_at
                """,
                task_type,
            )
            return [activity_from_row(row) for row in rows]

        async def _select(chunk: List[str]) -> List[Activity]:
            rows = await self._db.fetch_all(
                f"""
                SELECT {_ACTIVITY_COLUMNS}
                FROM {{{{tables.ce_activity}}}}
                WHERE task_type = $1 AND component_uuid = ANY($2::text[])
                ORDER BY executed_at
                """,
                task_type,
                chunk,
            )
            return [activity_from_row(row) for row in rows]

        return await execute_large_inputs(component_uuids, _select)

    async def delete_tasks(
        self, queued_uuids: Sequence[str], activity_uuids: Sequence[str]
    ) -> DeletedTasks:
        """Delete queued tasks, activities and their characteristics in one transaction.

        Only PENDING queued rows are deleted. A task claimed by a worker after
        it was selected keeps its queue row and its characteristics.
        """
        if not queued_uuids and not activity_uuids:
            return DeletedTasks()

        async with self._db.transaction() as tx:

            async def _delete_pending(chunk: List[str]) -> List[str]:
                rows = await tx.fetch_all(
                    """
                    DELETE FROM {{tables.ce_queue}}
                    WHERE uuid = ANY($1::text[]) AND status = 'PENDING'
                    RETURNING uuid
                    """,
                    chunk,
                )
                return [row["uuid"] for row in rows]

            async def _delete_activities(chunk: List[str]) -> List[str]:
                rows = await tx.fetch_all(
                    "DELETE FROM {{tables.ce_activity}} WHERE uuid = ANY($1::text[]) RETURNING uuid",
                    chunk,
                )
                return [row["uuid"] for row in rows]

            async def _delete_characteristics(chunk: List[str]) -> int:
                rows = await tx.fetch_all(
                    """
                    DELETE FROM {{tables.ce_task_characteristics}}
                    WHERE task_uuid = ANY($1::text[])
                    RETURNING uuid
                    """,
                    chunk,
                )
                return len(rows)

            deleted_queued = await execute_large_inputs(queued_uuids, _delete_pending)
            deleted_activities = await execute_large_inputs(activity_uuids, _delete_activities)
            deleted_characteristics = await execute_large_updates(
                deleted_queued + deleted_activities, _delete_characteristics
            )

        return DeletedTasks(
            queued=len(deleted_queued),
            activities=len(deleted_activities),
            characteristics=deleted_characteristics,
        )

    async def reset_in_progress(self, started_before_seconds: float = 0) -> int:
        """Put IN_PROGRESS tasks started more than ``started_before_seconds`` ago back to PENDING.

        Their worker is assumed gone. Returns the number of tasks reset.
        """
        rows = await self._db.fetch_all(
            """
            UPDATE {{tables.ce_queue}}
            SET status = 'PENDING', worker_uuid = NULL, started_at = NULL, updated_at = NOW()
            WHERE status = 'IN_PROGRESS'
              AND started_at <= NOW() - ($1::float8 * INTERVAL '1 second')
            RETURNING uuid
            """,
            started_before_seconds,
        )
        if rows:
            logger.warning("Reset %d in-progress tasks to pending", len(rows))
        return len(rows)

    async def select_characteristics(self, task_uuid: str) -> Dict[str, str]:
        rows = await self._db.fetch_all(
            """
            SELECT kee, text_value
            FROM {{tables.ce_task_characteristics}}
            WHERE task_uuid = $1
            """,
            task_uuid,
        )
        return {row["kee"]: row["text_value"] for row in rows}

    async def has_any_failed(self, task_type: str) -> bool:
        value = await self._db.fetch_value(
            """
            SELECT EXISTS (
                SELECT 1 FROM {{tables.ce_activity}}
                WHERE task_type = $1 AND status = $2
            )
            """,
            task_type,
            ActivityStatus.FAILED.value,
        )
        return bool(value)

    async def peek(self, worker_uuid: str) -> Optional[QueuedTask]:
        """Claim the oldest pending task for ``worker_uuid``.

        A task is skipped while another task on the same component is running.
        Concurrent workers never claim the same row (SKIP LOCKED).
        """
        row = await self._db.fetch_one(
            f"""
            UPDATE {{{{tables.ce_queue}}}} q
            SET status = 'IN_PROGRESS', worker_uuid = $1, started_at = NOW(), updated_at = NOW()
            WHERE q.uuid = (
                SELECT p.uuid
                FROM {{{{tables.ce_queue}}}} p
                WHERE p.status = 'PENDING'
                  AND NOT EXISTS (
                      SELECT 1 FROM {{{{tables.ce_queue}}}} r
                      WHERE r.status = 'IN_PROGRESS'
                        AND r.component_uuid IS NOT DISTINCT FROM p.component_uuid
                        AND p.component_uuid IS NOT NULL
                  )
                ORDER BY p.seq
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {_QUEUE_RETURNING}
            """,
            worker_uuid,
        )
        if row is None:
            return None
        characteristics = await self.select_characteristics(row["uuid"])
        return queued_task_from_row(row, characteristics)

    async def finish(
        self,
        task: QueuedTask,
        status: ActivityStatus,
        *,
        error_message: Optional[str] = None,
        execution_time_ms: Optional[int] = None,
    ) -> None:
        """Move ``task`` from the queue to the activity history."""
        async with self._db.transaction() as tx:
            await tx.execute(
                """
                INSERT INTO {{tables.ce_activity}} (
                    uuid, task_type, component_uuid, main_component_uuid, status,
                    submitter_uuid, worker_uuid, error_message,
                    submitted_at, started_at, execution_time_ms
                )
                SELECT uuid, task_type, component_uuid, main_component_uuid, $2,
                       submitter_uuid, worker_uuid, $3,
                       created_at, started_at, $4
                FROM {{tables.ce_queue}}
                WHERE uuid = $1
                """,
                task.uuid,
                status.value,
                error_message,
                execution_time_ms,
            )
            await tx.execute("DELETE FROM {{tables.ce_queue}} WHERE uuid = $1", task.uuid)
