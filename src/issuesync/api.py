import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.asyncio import from_url as async_redis_from_url

from .config import get_settings
from .dao.branches import PgBranchRepository
from .dao.issues import PgIssueRepository
from .dao.snapshots import PgSnapshotRepository
from .db import CE_SCHEMA, COMPONENTS_SCHEMA, DatabaseInfra
from .db import db_infra as default_db_infra
from .errors import IssueSyncInProgressError
from .indexer import RedisIssueIndexer
from .logging import configure_logging
from .queue import PgTaskQueue
from .routes.issue_sync import router as issue_sync_router
from .trigger import IssueSyncTrigger

logger = logging.getLogger(__name__)


async def bootstrap_issue_index(db_infra: DatabaseInfra, redis: Redis, index_prefix: str) -> bool:
    """Create the issue index if missing and queue a full resync when it was.

    Returns True when the index was created by this call.
    """
    components_db = db_infra.get_manager(COMPONENTS_SCHEMA)
    indexer = RedisIssueIndexer(redis, PgIssueRepository(components_db), prefix=index_prefix)
    if not await indexer.ensure_index_created():
        return False

    trigger = IssueSyncTrigger(
        PgBranchRepository(components_db),
        PgSnapshotRepository(components_db),
        PgTaskQueue(db_infra.get_manager(CE_SCHEMA)),
    )
    result = await trigger.trigger_for_all_branches()
    logger.info(
        "Issue index created, %d sync tasks queued for %d projects",
        result.tasks_submitted,
        result.projects,
    )
    return True


def _make_standalone_lifespan():
    """Create lifespan for standalone mode (creates own DB and Redis connections)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(log_level=settings.log_level, json_format=settings.log_json)
        logger.info("Starting issuesync server (standalone mode)")

        redis: Redis | None = None
        redis_connected = False
        db_initialized = False

        try:
            # Phase 1: Initialize all resources (don't set app.state yet)
            redis = await async_redis_from_url(settings.redis_url, decode_responses=True)
            await redis.ping()
            redis_connected = True
            logger.info("Connected to Redis")

            await default_db_infra.initialize()
            db_initialized = True
            logger.info("Database initialized")

            await bootstrap_issue_index(default_db_infra, redis, settings.issues_index_prefix)

            # Phase 2: Only assign to app.state after ALL initialization succeeds
            app.state.redis = redis
            app.state.db = default_db_infra

        except Exception:
            if not redis_connected:
                logger.exception("Failed to connect to Redis")
            elif not db_initialized:
                logger.exception("Failed to initialize database")
            else:
                logger.exception("Failed to bootstrap the issue index")

            # Clean up any initialized resources on failure
            if db_initialized:
                await default_db_infra.close()
            if redis is not None:
                await redis.aclose()
            raise

        try:
            yield
        finally:
            logger.info("Shutting down issuesync server")
            await redis.aclose()
            await default_db_infra.close()

    return lifespan


def _make_library_lifespan(db_infra: DatabaseInfra, redis: Redis):
    """Create lifespan for library mode (uses externally provided connections)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(log_level=settings.log_level, json_format=settings.log_json)
        logger.info("Starting issuesync server (library mode)")

        app.state.redis = redis
        app.state.db = db_infra

        try:
            yield
        finally:
            # Don't close connections in library mode - caller manages them
            logger.info("issuesync server stopping (library mode)")

    return lifespan


async def _issue_sync_in_progress_handler(
    request: Request, exc: IssueSyncInProgressError
) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(
    *,
    db_infra: Optional[DatabaseInfra] = None,
    redis: Optional[Redis] = None,
) -> FastAPI:
    """Create the issuesync FastAPI application.

    Args:
        db_infra: External DatabaseInfra instance (library mode).
                  If None, creates own connections (standalone mode).
        redis: External async Redis client (library mode).
               If None, creates own connection (standalone mode).

    Library mode requires both db_infra and redis to be provided, and leaves
    index bootstrapping to the host (see :func:`bootstrap_issue_index`).
    Standalone mode requires neither.

    Examples:
        Standalone mode::

            # Run with: uvicorn issuesync.api:create_app --factory

        Library mode (embedding in another FastAPI app)::

            db_infra = DatabaseInfra()
            await db_infra.initialize()
            redis = await Redis.from_url("redis://localhost:6379")
            main_app.mount("/issuesync", create_app(db_infra=db_infra, redis=redis))
    """
    if (db_infra is None) != (redis is None):
        raise ValueError(
            "Library mode requires both db_infra and redis, or neither for standalone mode"
        )

    if db_infra is not None:
        if not db_infra.is_initialized:
            raise ValueError(
                "db_infra must be initialized before passing to create_app() in library mode. "
                "Call 'await db_infra.initialize()' before creating the app."
            )
        assert redis is not None  # Required when db_infra is provided
        lifespan = _make_library_lifespan(db_infra, redis)
    else:
        lifespan = _make_standalone_lifespan()

    app = FastAPI(title="issuesync", version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(IssueSyncInProgressError, _issue_sync_in_progress_handler)

    @app.get("/health", tags=["internal"])
    async def health(request: Request) -> dict:
        checks = {}
        healthy = True

        try:
            redis: Redis = request.app.state.redis
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"
            healthy = False

        try:
            db_infra: DatabaseInfra = request.app.state.db
            for name in (COMPONENTS_SCHEMA, CE_SCHEMA):
                await db_infra.get_manager(name).fetch_value("SELECT 1")
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {e}"
            healthy = False

        return {"status": "ok" if healthy else "unhealthy", "checks": checks}

    app.include_router(issue_sync_router)

    return app


# Module-level app for uvicorn: `uvicorn issuesync.api:app`
app = create_app()
