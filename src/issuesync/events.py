"""Issue sync events over Redis pub/sub, and their SSE rendering.

The trigger routes publish ``issue_sync.triggered`` and workers publish
``issue_sync.task_finished``. Both go to a single channel that the
``/v1/issue-sync/stream`` endpoint relays to clients.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ISSUE_SYNC_CHANNEL = "events:issue-sync"


@dataclass
class Event:
    """Base class for all events."""

    type: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class IssueSyncTriggeredEvent(Event):
    """Emitted after sync tasks were submitted for one or more branches."""

    type: str = field(default="issue_sync.triggered", init=False)
    scope: str = "pending"
    project_uuid: str | None = None
    branches: int = 0
    projects: int = 0
    tasks_submitted: int = 0


@dataclass
class IssueSyncTaskFinishedEvent(Event):
    """Emitted by a worker once a task left the queue."""

    type: str = field(default="issue_sync.task_finished", init=False)
    task_uuid: str = ""
    task_type: str = ""
    component_uuid: str | None = None
    status: str = ""
    error_message: str | None = None
    execution_time_ms: int = 0


async def publish_event(redis: Redis, event: Event, channel: str = ISSUE_SYNC_CHANNEL) -> int:
    """Publish ``event``; returns the number of subscribers that received it."""
    count = await redis.publish(channel, event.to_json())
    logger.debug("Published %s to %s, %d subscribers", event.type, channel, count)
    return count


async def stream_events(
    redis: Redis,
    event_types: Optional[set[str]] = None,
    keepalive_seconds: float = 30,
    check_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    channel: str = ISSUE_SYNC_CHANNEL,
) -> AsyncIterator[str]:
    """Stream issue sync events as SSE-formatted strings.

    Args:
        redis: Redis client
        event_types: Optional set of full event types to relay
                     (e.g. {'issue_sync.task_finished'}). None relays all.
        keepalive_seconds: Seconds between keepalive comments
        check_disconnected: Optional async callback; the stream ends once it
                            returns True.
        channel: Pub/sub channel to follow

    Yields:
        SSE-formatted event strings (e.g., "data: {...}\\n\\n")
    """
    loop = asyncio.get_running_loop()

    pubsub: PubSub | None = None
    reconnect_delay_seconds = 0.1
    max_reconnect_delay_seconds = 5.0
    next_reconnect_at: float | None = None

    async def _close_pubsub(ps: PubSub | None) -> None:
        if ps is None:
            return
        try:
            await ps.unsubscribe(channel)
        except RedisError:
            logger.debug("Redis pubsub unsubscribe failed", exc_info=True)
        try:
            await ps.aclose()
        except RedisError:
            logger.debug("Redis pubsub close failed", exc_info=True)

    async def _connect_pubsub() -> PubSub:
        ps: PubSub = redis.pubsub()
        await ps.subscribe(channel)
        logger.debug("Subscribed to %s", channel)
        return ps

    def _backoff(now: float) -> None:
        nonlocal next_reconnect_at, reconnect_delay_seconds
        next_reconnect_at = now + reconnect_delay_seconds
        reconnect_delay_seconds = min(max_reconnect_delay_seconds, reconnect_delay_seconds * 2)

    try:
        pubsub = await _connect_pubsub()
        last_keepalive = loop.time()
        last_pubsub_ping = last_keepalive

        while True:
            if check_disconnected and await check_disconnected():
                logger.debug("Client disconnected, ending stream for %s", channel)
                return

            now = loop.time()

            if pubsub is None:
                if next_reconnect_at is None or now >= next_reconnect_at:
                    try:
                        pubsub = await _connect_pubsub()
                        reconnect_delay_seconds = 0.1
                        next_reconnect_at = None
                        last_keepalive = now
                        last_pubsub_ping = now
                    except RedisError:
                        logger.warning("Redis pubsub reconnect failed; will retry", exc_info=True)
                        _backoff(now)

                if now - last_keepalive >= keepalive_seconds:
                    yield ": keepalive\n\n"
                    last_keepalive = now

                await asyncio.sleep(min(1.0, keepalive_seconds))
                continue

            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisConnectionError:
                logger.info("Redis pubsub connection dropped; reconnecting", exc_info=True)
                await _close_pubsub(pubsub)
                pubsub = None
                _backoff(now)
                message = None
            except RedisError:
                logger.warning("Redis pubsub error; reconnecting", exc_info=True)
                await _close_pubsub(pubsub)
                pubsub = None
                _backoff(now)
                message = None

            current_time = loop.time()

            if message is not None and message["type"] == "message":
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")

                try:
                    event_type = json.loads(data).get("type", "")
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON in event: %s", data)
                    continue

                if event_types is None or event_type in event_types:
                    yield f"data: {data}\n\n"
                    last_keepalive = current_time

            if current_time - last_keepalive >= keepalive_seconds:
                if pubsub is not None and current_time - last_pubsub_ping >= keepalive_seconds:
                    try:
                        await pubsub.ping()
                        last_pubsub_ping = current_time
                    except RedisError:
                        logger.info("Redis pubsub ping failed; reconnecting", exc_info=True)
                        await _close_pubsub(pubsub)
                        pubsub = None
                        _backoff(current_time)

                yield ": keepalive\n\n"
                last_keepalive = current_time

    except asyncio.CancelledError:
        logger.debug("Stream cancelled for %s", channel)
        raise
    finally:
        await _close_pubsub(pubsub)
        logger.debug("Unsubscribed from %s", channel)
