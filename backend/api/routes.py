"""HTTP API routes for coordinator runs and health checks.

Agent endpoints live in agent_routes.py; real-time events are handled via
WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from models.schemas import (
    CreateRunRequest,
    HealthResponse,
    RunDetailResponse,
    RunResponse,
    RunStatus,
)

if TYPE_CHECKING:
    from run_manager import RunInfo, RunManager

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_float(value: object) -> float:
    """Safely coerce a value to float for timestamp conversion."""
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def _to_status(raw_status: object) -> RunStatus:
    """Convert an untrusted status value into RunStatus."""
    if isinstance(raw_status, str):
        try:
            return RunStatus(raw_status)
        except ValueError:
            logger.warning("invalid_persisted_status", status=raw_status)
    return RunStatus.ERROR


def _to_optional_string(value: object) -> str | None:
    """Return non-empty strings as-is, otherwise None."""
    if isinstance(value, str) and value:
        return value
    return None


def _run_detail(run: RunInfo) -> RunDetailResponse:
    return RunDetailResponse(
        run_id=run.run_id,
        status=run.status,
        context=run.context,
        todo_list=run.todo_list,
        rounds=run.rounds,
        created_at=run.created_at,
        completed_at=run.completed_at,
        error_message=run.error_message,
    )


def _persisted_detail(row: dict[str, Any]) -> RunDetailResponse:
    todo_list = row.get("todo_list")
    return RunDetailResponse(
        run_id=str(row.get("id")),
        status=_to_status(row.get("status")),
        context=row.get("context") or "",
        todo_list=todo_list if isinstance(todo_list, dict) else {},
        rounds=int(row.get("rounds") or 0),
        created_at=_to_float(row.get("created_at")),
        completed_at=_to_float(row.get("completed_at")) or None,
        error_message=_to_optional_string(row.get("error_message")),
    )


# Run manager dependency (set during application startup)
_run_manager: RunManager | None = None


def set_run_manager(manager: RunManager | None) -> None:
    """Set the run manager instance for the routes.

    This should be called during application startup to inject the run
    manager dependency.
    """
    global _run_manager
    _run_manager = manager
    logger.info("run_manager_configured")


def get_run_manager() -> RunManager:
    """Get the run manager instance.

    Raises:
        RuntimeError: If the run manager has not been configured.
    """
    if _run_manager is None:
        logger.error("run_manager_not_configured")
        raise RuntimeError("RunManager not configured. Call set_run_manager() during startup.")
    return _run_manager


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/runs",
    response_model=RunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a coordinator run",
    description="Start a workflow coordinator run for the given context and todo list.",
)
async def create_run(request: CreateRunRequest) -> RunResponse:
    """Create a run and start the coordinator in the background.

    Returns:
        RunResponse with run_id, websocket_url, and initial status.

    Raises:
        HTTPException: If run creation fails.
    """
    run_manager = get_run_manager()

    try:
        run_id = await run_manager.create_run(
            context=request.context,
            todo_list=request.todo_list,
        )
    except Exception as e:
        logger.error("run_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create run: {e}",
        ) from e

    run = run_manager.get_run(run_id)
    return RunResponse(
        run_id=run_id,
        websocket_url=f"/ws/{run_id}",
        status=run.status if run else RunStatus.RUNNING,
    )


@router.get(
    "/api/runs",
    response_model=list[RunDetailResponse],
    summary="List runs",
    description="List recent runs, newest first, including persisted history.",
)
async def list_runs(
    limit: Annotated[int, Query(description="Maximum runs to return", ge=1, le=200)] = 25,
) -> list[RunDetailResponse]:
    run_manager = get_run_manager()
    runs = sorted(run_manager.get_all_runs(), key=lambda r: r.created_at, reverse=True)[:limit]
    response = [_run_detail(run) for run in runs]

    if len(response) >= limit or run_manager.run_store is None:
        return response

    # Fall back to persisted runs to keep history after process restarts.
    existing_run_ids = {item.run_id for item in response}
    for row in await run_manager.run_store.list_runs(limit=limit):
        if row.get("id") in existing_run_ids:
            continue
        response.append(_persisted_detail(row))
        if len(response) >= limit:
            break
    return response


@router.get(
    "/api/runs/{run_id}",
    response_model=RunDetailResponse,
    summary="Get run details",
)
async def get_run(
    run_id: Annotated[str, Path(description="The run ID")],
) -> RunDetailResponse:
    run_manager = get_run_manager()
    run = run_manager.get_run(run_id)
    if run is not None:
        return _run_detail(run)

    if run_manager.run_store is not None:
        row = await run_manager.run_store.get_run(run_id)
        if row is not None:
            return _persisted_detail(row)

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Run {run_id} not found",
    )


@router.post(
    "/api/runs/{run_id}/stop",
    response_model=RunDetailResponse,
    summary="Stop a run",
    description="Request a cooperative stop. The round in progress completes first.",
)
async def stop_run(
    run_id: Annotated[str, Path(description="The run ID")],
) -> RunDetailResponse:
    run_manager = get_run_manager()
    try:
        run = await run_manager.stop_run(run_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        ) from None
    return _run_detail(run)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    active_runs = _run_manager.active_run_count if _run_manager is not None else 0
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_runs=active_runs,
    )
