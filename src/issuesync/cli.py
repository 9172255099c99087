import asyncio
import json
import os
import signal

import httpx
import typer
import uvicorn
from redis.asyncio import from_url as async_redis_from_url

from .config import get_settings
from .dao.branches import PgBranchRepository
from .dao.components import PgComponentRepository
from .dao.issues import PgIssueRepository
from .db import CE_SCHEMA, COMPONENTS_SCHEMA, DatabaseInfra
from .indexer import RedisIssueIndexer
from .logging import configure_logging
from .queue import PgTaskQueue
from .steps import IssueSyncTaskProcessor, SyncComputationSteps
from .worker import TaskWorker

app = typer.Typer(help="issuesync CLI")


def _get_api_base() -> str:
    return os.getenv("ISSUESYNC_API_URL", "http://localhost:8000")


def _handle_api_call(
    method: str,
    url: str,
    allow_statuses: set[int] | None = None,
    **kwargs,
) -> httpx.Response:
    """
    Execute an HTTP request with proper error handling.
    Handles network errors, timeouts, and HTTP status errors gracefully.

    Args:
        method: HTTP method (GET, POST)
        url: Request URL
        allow_statuses: Set of status codes to allow through (e.g., {503})
        **kwargs: Additional arguments passed to httpx
    """
    try:
        if method == "GET":
            resp = httpx.get(url, timeout=30, **kwargs)
        elif method == "POST":
            resp = httpx.post(url, timeout=30, **kwargs)
        else:
            raise ValueError(f"Unsupported method: {method}")

        if allow_statuses and resp.status_code in allow_statuses:
            return resp

        if resp.status_code >= 500:
            typer.echo(f"Error: Server error ({resp.status_code})", err=True)
            raise typer.Exit(1)
        if resp.status_code >= 400:
            typer.echo(f"Error: Request failed ({resp.status_code}): {resp.text}", err=True)
            raise typer.Exit(1)

        return resp

    except httpx.ConnectError:
        typer.echo(f"Error: Cannot connect to issuesync API at {_get_api_base()}", err=True)
        typer.echo("Is the server running? Try: issuesync serve", err=True)
        raise typer.Exit(1)
    except httpx.TimeoutException:
        typer.echo("Error: Request timed out", err=True)
        raise typer.Exit(1)
    except httpx.RequestError as e:
        typer.echo(f"Error: Network error - {e}", err=True)
        raise typer.Exit(1)


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Host interface to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
    reload: bool | None = typer.Option(None, help="Enable auto-reload (development only)"),
    log_level: str | None = typer.Option(None, help="Log level for the server"),
) -> None:
    """
    Start the issuesync API server.
    """
    settings = get_settings()

    uvicorn.run(
        "issuesync.api:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload if reload is not None else settings.reload,
        log_level=log_level or settings.log_level,
        factory=True,
    )


async def _run_worker(poll_interval: float) -> None:
    settings = get_settings()
    redis = await async_redis_from_url(settings.redis_url, decode_responses=True)
    db_infra = DatabaseInfra()
    try:
        await db_infra.initialize()
        components_db = db_infra.get_manager(COMPONENTS_SCHEMA)
        branches = PgBranchRepository(components_db)
        indexer = RedisIssueIndexer(
            redis, PgIssueRepository(components_db), prefix=settings.issues_index_prefix
        )
        steps = SyncComputationSteps(branches, PgComponentRepository(components_db), indexer)
        worker = TaskWorker(
            PgTaskQueue(db_infra.get_manager(CE_SCHEMA)),
            [IssueSyncTaskProcessor(steps)],
            redis=redis,
            poll_interval=poll_interval,
            stale_task_timeout=settings.worker_stale_task_seconds,
        )

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await worker.run_forever(stop_event)
    finally:
        await db_infra.close()
        await redis.aclose()


@app.command()
def worker(
    poll_interval: float | None = typer.Option(
        None, help="Seconds to wait when the queue is empty"
    ),
    log_level: str | None = typer.Option(None, help="Log level for the worker"),
) -> None:
    """
    Run a worker processing queued issue sync tasks until interrupted.
    """
    settings = get_settings()
    configure_logging(log_level=log_level or settings.log_level, json_format=settings.log_json)
    asyncio.run(_run_worker(poll_interval or settings.worker_poll_interval_seconds))


@app.command()
def trigger(
    all_branches: bool = typer.Option(
        False, "--all", help="Flag every branch as needing sync before triggering"
    ),
    project: str | None = typer.Option(None, "--project", help="Resync a single project"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """
    Queue issue sync tasks.
    """
    if all_branches and project:
        typer.echo("Error: --all and --project are mutually exclusive", err=True)
        raise typer.Exit(1)

    if project:
        resp = _handle_api_call("POST", f"{_get_api_base()}/v1/issue-sync/projects/{project}")
    else:
        scope = "all" if all_branches else "pending"
        resp = _handle_api_call(
            "POST", f"{_get_api_base()}/v1/issue-sync/trigger", json={"scope": scope}
        )
    data = resp.json()

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(
        f"Queued {data.get('tasks_submitted', 0)} tasks "
        f"for {data.get('branches', 0)} branches in {data.get('projects', 0)} projects"
    )
    typer.echo(
        f"Deleted {data.get('pending_tasks_deleted', 0)} pending and "
        f"{data.get('completed_tasks_deleted', 0)} completed tasks"
    )


@app.command()
def status(
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """
    Show issue sync progress.
    """
    resp = _handle_api_call("GET", f"{_get_api_base()}/v1/issue-sync/status")
    data = resp.json()

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return

    state = "completed" if data.get("is_completed") else "in progress"
    typer.echo(f"Issue sync: {state}")
    typer.echo(
        f"Branches: {data.get('completed', 0)}/{data.get('total', 0)} "
        f"({data.get('percent_completed', 0)}%)"
    )
    if data.get("has_failures"):
        typer.echo("Some sync tasks failed; check the task activity for details.")


if __name__ == "__main__":
    app()
