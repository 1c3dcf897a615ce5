"""FastAPI application entry point for the planner agent backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured. The same app serves the agent
endpoints the sub-agents call, so a coordinator can run entirely
in-process.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.agent_routes import router as agent_router
from api.routes import router
from api.routes import set_run_manager as set_routes_run_manager
from api.websocket import set_run_manager as set_websocket_run_manager
from api.websocket import websocket_router
from config import settings
from events import get_event_bus
from models.database import RunStore
from models.task_store import get_task_store
from run_manager import RunManager

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Handles initialization of the task store, run store and run manager,
    and cancels active runs on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        model=settings.default_model,
    )

    event_bus = get_event_bus()

    task_store = get_task_store()
    await task_store.init()

    run_store: RunStore | None = None
    try:
        run_store = RunStore(settings.database_path)
        await run_store.init()
    except Exception as e:
        # Keep the API available even if run persistence fails to initialize.
        logger.warning("run_store_init_failed", error=str(e))
        run_store = None

    run_manager = RunManager(event_bus, run_store=run_store)

    set_routes_run_manager(run_manager)
    set_websocket_run_manager(run_manager)

    app.state.run_manager = run_manager
    app.state.run_store = run_store
    app.state.task_store = task_store

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await run_manager.cleanup_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Planner Agent",
    description="Backend API for an LLM-driven task planning agent that gathers "
    "calendar state, plans and executes function calls, or writes sandboxed code "
    "until the todo list is complete.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["runs"])
app.include_router(agent_router, tags=["agents"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Planner Agent API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
