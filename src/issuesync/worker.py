"""Queue worker: claims pending tasks and runs the matching processor."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Dict, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .events import IssueSyncTaskFinishedEvent, publish_event
from .models import ActivityStatus, QueuedTask
from .queue import TaskQueue
from .steps import TaskProcessor

logger = logging.getLogger(__name__)


class TaskWorker:
    """Runs queued tasks one at a time.

    Several workers may share a queue: ``TaskQueue.peek`` never hands the same
    task to two of them.
    """

    def __init__(
        self,
        task_queue: TaskQueue,
        processors: Sequence[TaskProcessor],
        *,
        redis: Optional[Redis] = None,
        poll_interval: float = 2.0,
        worker_uuid: Optional[str] = None,
        stale_task_timeout: Optional[float] = None,
    ) -> None:
        self._task_queue = task_queue
        self._processors: Dict[str, TaskProcessor] = {}
        for processor in processors:
            for task_type in processor.handled_task_types:
                self._processors[task_type] = processor
        self._redis = redis
        self._poll_interval = poll_interval
        self.worker_uuid = worker_uuid or str(uuid.uuid4())
        # Seconds after which an IN_PROGRESS task is considered abandoned.
        self._stale_task_timeout = stale_task_timeout

    async def run_once(self) -> Optional[QueuedTask]:
        """Claim and run one task. Returns None when the queue had nothing to run."""
        task = await self._task_queue.peek(self.worker_uuid)
        if task is None:
            return None

        started = time.monotonic()
        status = ActivityStatus.SUCCESS
        error_message: Optional[str] = None

        processor = self._processors.get(task.task_type)
        if processor is None:
            status = ActivityStatus.FAILED
            error_message = f"No processor for task type {task.task_type}"
            logger.error("%s (task %s)", error_message, task.uuid)
        else:
            logger.info(
                "Executing task %s | type=%s | component=%s",
                task.uuid,
                task.task_type,
                task.component_uuid,
            )
            try:
                await processor.process(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                status = ActivityStatus.FAILED
                error_message = str(e) or type(e).__name__
                logger.exception("Task %s failed", task.uuid)

        execution_time_ms = int((time.monotonic() - started) * 1000)
        await self._task_queue.finish(
            task,
            status,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
        )
        logger.info(
            "Executed task %s | status=%s | time=%dms", task.uuid, status.value, execution_time_ms
        )
        await self._publish_finished(task, status, error_message, execution_time_ms)
        return task

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info("Worker %s started", self.worker_uuid)
        await self.reset_stale_tasks()
        while not stop_event.is_set():
            task = await self.run_once()
            if task is not None:
                continue
            await self.reset_stale_tasks()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker %s stopped", self.worker_uuid)

    async def reset_stale_tasks(self) -> int:
        """Requeue tasks left IN_PROGRESS by a worker that died before finishing them.

        A running task blocks every other task on its component, so an
        abandoned one would stop that branch from ever syncing again.
        """
        if self._stale_task_timeout is None:
            return 0
        return await self._task_queue.reset_in_progress(self._stale_task_timeout)

    async def _publish_finished(
        self,
        task: QueuedTask,
        status: ActivityStatus,
        error_message: Optional[str],
        execution_time_ms: int,
    ) -> None:
        if self._redis is None:
            return
        event = IssueSyncTaskFinishedEvent(
            task_uuid=task.uuid,
            task_type=task.task_type,
            component_uuid=task.component_uuid,
            status=status.value,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
        )
        try:
            await publish_event(self._redis, event)
        except RedisError:
            # The task result is already recorded; events are best effort.
            logger.warning("Failed to publish event for task %s", task.uuid, exc_info=True)
