"""SQLite-based run persistence using aiosqlite.

This module provides the RunStore class for persisting coordinator run
records to a SQLite database. All operations are async and designed to fail
gracefully -- a database error should never crash a running workflow.

Tables:
    runs: Run metadata (id, status, context, todo list, rounds, error, timestamps).

Usage:
    >>> from models.database import RunStore
    >>> store = RunStore("./data/planner.db")
    >>> await store.init()
    >>> await store.save_run(
    ...     run_id="run_abc123",
    ...     context="I have a dentist appointment at 3pm.",
    ...     todo_list={"Schedule the dentist visit": False},
    ...     status="running",
    ... )
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


def _decode_row(row: aiosqlite.Row) -> dict[str, Any]:
    run = dict(row)
    try:
        run["todo_list"] = json.loads(run["todo_list"]) if run.get("todo_list") else {}
    except json.JSONDecodeError:
        run["todo_list"] = {}
    return run


class RunStore:
    """Async SQLite store for run records.

    All public methods catch exceptions internally and log errors rather
    than propagating them, ensuring that database issues never break an
    active run. ``init`` is the exception: a store that cannot create its
    table is a startup failure.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the run store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create the runs table if it does not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS runs (
                        id TEXT PRIMARY KEY,
                        status TEXT NOT NULL DEFAULT 'running',
                        context TEXT NOT NULL,
                        todo_list TEXT NOT NULL DEFAULT '{}',
                        rounds INTEGER NOT NULL DEFAULT 0,
                        error_message TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL,
                        completed_at REAL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_runs_created_at
                    ON runs(created_at DESC)
                """)
                await db.commit()
            logger.info("run_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "run_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def save_run(
        self,
        run_id: str,
        context: str,
        todo_list: dict[str, bool],
        status: str,
        created_at: float | None = None,
    ) -> None:
        """Insert a new run record.

        Args:
            run_id: Unique run identifier (e.g. "run_abc123").
            context: The initial context the run was started with.
            todo_list: Initial todo list (stored as JSON).
            status: Initial status string.
            created_at: Unix timestamp of creation (defaults to now).
        """
        now = time.time()
        created_at = created_at or now

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO runs
                        (id, status, context, todo_list, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, status, context, json.dumps(todo_list), created_at, now),
                )
                await db.commit()
            logger.debug("run_saved", run_id=run_id, status=status)
        except Exception as e:
            logger.error("run_save_failed", run_id=run_id, error=str(e))

    async def update_run(
        self,
        run_id: str,
        status: str,
        *,
        rounds: int | None = None,
        todo_list: dict[str, bool] | None = None,
        error_message: str | None = None,
        completed_at: float | None = None,
    ) -> None:
        """Update status and progress for a run.

        Fields left as None keep their stored value.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE runs
                    SET status = ?,
                        rounds = COALESCE(?, rounds),
                        todo_list = COALESCE(?, todo_list),
                        error_message = COALESCE(?, error_message),
                        completed_at = COALESCE(?, completed_at),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        status,
                        rounds,
                        json.dumps(todo_list) if todo_list is not None else None,
                        error_message,
                        completed_at,
                        time.time(),
                        run_id,
                    ),
                )
                await db.commit()
            logger.debug("run_updated", run_id=run_id, status=status, rounds=rounds)
        except Exception as e:
            logger.error("run_update_failed", run_id=run_id, error=str(e))

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        """Retrieve a single run by its ID, or None if not found."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
                row = await cursor.fetchone()
                return _decode_row(row) if row else None
        except Exception as e:
            logger.error("run_get_failed", run_id=run_id, error=str(e))
            return None

    async def list_runs(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        """List recent runs ordered by creation time (newest first)."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT * FROM runs
                    ORDER BY created_at DESC
                    LIMIT ? OFFSET ?
                    """,
                    (limit, offset),
                )
                return [_decode_row(row) for row in await cursor.fetchall()]
        except Exception as e:
            logger.error("run_list_failed", error=str(e))
            return []

    async def clear_all(self) -> int:
        """Delete all persisted runs.

        Returns:
            Number of rows removed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("DELETE FROM runs")
                await db.commit()
                deleted_count = cursor.rowcount
            logger.info("run_store_cleared", deleted_count=deleted_count)
            return deleted_count
        except Exception as e:
            logger.error("run_store_clear_failed", error=str(e))
            return 0
