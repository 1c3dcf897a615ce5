"""SQLite-backed task data using aiosqlite.

Tasks live in two kinds of documents, each a JSON array of tasks:

    days:    one row per ISO date, holding that day's ordered task list.
    backlog: a single row holding the ordered list of unscheduled tasks.

Unlike the RunStore, every failure here propagates: callers (the function
call processor and the code sandbox) report a failed action back to the
model, so swallowing errors would turn a failed write into a silent success.

Usage:
    >>> store = TaskStore("./data/planner.db")
    >>> await store.init()
    >>> task = await store.create_task("2026-10-19", "Write report", start_time="09:00")
    >>> await store.mark_task_completed(task.id)
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from config import settings
from models.tasks import CalendarItem, CalendarTime, Day, Importance, Subtask, Task, Urgency

logger = structlog.get_logger(__name__)

BACKLOG_ID = "backlog"

# Fields an update is never allowed to overwrite.
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


class TaskNotFoundError(KeyError):
    """Raised when a day, task or subtask does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def _calendar_item(
    day: str,
    start_time: str | None,
    end_time: str | None = None,
    duration_minutes: int | None = None,
) -> CalendarItem | None:
    """Build a calendar slot from a date plus ``HH:MM`` times."""
    if not start_time:
        return None
    try:
        start = datetime.fromisoformat(f"{day}T{start_time}")
    except ValueError as e:
        raise ValueError(f"Invalid start time {start_time!r} on {day}") from e

    end: datetime | None = None
    if end_time:
        try:
            end = datetime.fromisoformat(f"{day}T{end_time}")
        except ValueError as e:
            raise ValueError(f"Invalid end time {end_time!r} on {day}") from e
    elif duration_minutes:
        end = start + timedelta(minutes=duration_minutes)

    return CalendarItem(
        start=CalendarTime(date_time=start.isoformat()),
        end=CalendarTime(date_time=end.isoformat() if end else None),
    )


def _apply_updates(task: Task, updates: dict[str, Any]) -> Task:
    data = task.model_dump()
    data.update({k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS})
    updated = Task.model_validate(data)
    updated.touch()
    return updated


def _reorder(tasks: list[Task], task_ids: list[str]) -> list[Task]:
    """Order tasks by ``task_ids``; ids not present are dropped, like the UI does."""
    by_id = {t.id: t for t in tasks}
    return [by_id[task_id] for task_id in task_ids if task_id in by_id]


class TaskStore:
    """Async SQLite store for day and backlog task documents.

    Mutations take an asyncio.Lock so concurrent read-modify-write cycles on
    the same document cannot interleave.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str, today: Callable[[], date] | None = None) -> None:
        """Initialize the task store.

        Args:
            db_path: Filesystem path to the SQLite database file.
            today: Clock used by get_today/get_future_tasks (defaults to date.today).
        """
        self.db_path = db_path
        self._today = today or date.today
        self._lock = asyncio.Lock()
        self._initialized = False

    async def init(self) -> None:
        """Create tables if they do not exist. Runs lazily on first use."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS days (
                    date TEXT PRIMARY KEY,
                    tasks TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS backlog (
                    id TEXT PRIMARY KEY,
                    tasks TEXT NOT NULL DEFAULT '[]',
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()
        self._initialized = True
        logger.info("task_store_initialized", db_path=self.db_path)

    def today(self) -> str:
        return self._today().isoformat()

    # -----------------------------------------------------------------
    # Document helpers
    # -----------------------------------------------------------------

    @staticmethod
    def _row_to_day(row: aiosqlite.Row) -> Day:
        return Day(
            id=row["date"],
            date=row["date"],
            tasks=[Task.model_validate(t) for t in json.loads(row["tasks"])],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def _load_day(self, db: aiosqlite.Connection, day: str) -> Day | None:
        cursor = await db.execute("SELECT * FROM days WHERE date = ?", (day,))
        row = await cursor.fetchone()
        return self._row_to_day(row) if row else None

    async def _save_day(self, db: aiosqlite.Connection, day: Day) -> None:
        now = datetime.now().isoformat()
        tasks_json = json.dumps([t.model_dump(mode="json") for t in day.tasks])
        await db.execute(
            """
            INSERT INTO days (date, tasks, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(date) DO UPDATE SET tasks = excluded.tasks,
                                            updated_at = excluded.updated_at
            """,
            (day.date, tasks_json, day.created_at, now),
        )

    async def _require_day(self, db: aiosqlite.Connection, day: str) -> Day:
        loaded = await self._load_day(db, day)
        if loaded is None:
            raise TaskNotFoundError(f"Day {day} not found")
        return loaded

    async def _find_task(self, db: aiosqlite.Connection, task_id: str) -> tuple[Day, int]:
        """Locate a scheduled task by id across all days."""
        cursor = await db.execute("SELECT * FROM days ORDER BY date")
        for row in await cursor.fetchall():
            day = self._row_to_day(row)
            for index, task in enumerate(day.tasks):
                if task.id == task_id:
                    return day, index
        raise TaskNotFoundError(f"Task {task_id} not found")

    async def _load_backlog(self, db: aiosqlite.Connection) -> list[Task]:
        cursor = await db.execute("SELECT tasks FROM backlog WHERE id = ?", (BACKLOG_ID,))
        row = await cursor.fetchone()
        if row is None:
            return []
        return [Task.model_validate(t) for t in json.loads(row["tasks"])]

    async def _save_backlog(self, db: aiosqlite.Connection, tasks: list[Task]) -> None:
        await db.execute(
            """
            INSERT INTO backlog (id, tasks, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET tasks = excluded.tasks,
                                          updated_at = excluded.updated_at
            """,
            (
                BACKLOG_ID,
                json.dumps([t.model_dump(mode="json") for t in tasks]),
                datetime.now().isoformat(),
            ),
        )

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        if not self._initialized:
            await self.init()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    async def get_day(self, day: str) -> Day | None:
        _parse_date(day)
        async with self._connect() as db:
            return await self._load_day(db, day)

    async def get_days_by_date_range(self, start_date: str, end_date: str) -> list[Day]:
        """Return existing day documents with ``start_date <= date <= end_date``."""
        start, end = _parse_date(start_date), _parse_date(end_date)
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM days WHERE date >= ? AND date <= ? ORDER BY date",
                (start.isoformat(), end.isoformat()),
            )
            return [self._row_to_day(row) for row in await cursor.fetchall()]

    async def get_today(self) -> Day:
        """Return today's document, or an empty day if nothing is scheduled."""
        today = self.today()
        async with self._connect() as db:
            day = await self._load_day(db, today)
        return day or Day(id=today, date=today)

    async def get_backlog_tasks(self) -> list[Task]:
        async with self._connect() as db:
            return await self._load_backlog(db)

    async def get_incomplete_tasks(self, start_date: str, end_date: str) -> dict[str, Day]:
        """Incomplete tasks keyed by date for ``start_date <= date < end_date``."""
        start, end = _parse_date(start_date), _parse_date(end_date)
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM days WHERE date >= ? AND date < ? ORDER BY date",
                (start.isoformat(), end.isoformat()),
            )
            rows = await cursor.fetchall()

        result: dict[str, Day] = {}
        for row in rows:
            day = self._row_to_day(row)
            day.tasks = [t for t in day.tasks if not t.completed]
            result[day.date] = day
        return result

    async def get_future_tasks(self) -> dict[str, Day]:
        """Incomplete tasks on every date after today, keyed by date."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM days WHERE date > ? ORDER BY date",
                (self.today(),),
            )
            rows = await cursor.fetchall()

        result: dict[str, Day] = {}
        for row in rows:
            day = self._row_to_day(row)
            pending = [t for t in day.tasks if not t.completed]
            if pending:
                day.tasks = pending
                result[day.date] = day
        return result

    # -----------------------------------------------------------------
    # Day task mutations
    # -----------------------------------------------------------------

    async def add_task(self, day: str, task: Task, insert_index: int | None = None) -> Task:
        """Insert ``task`` into a day, creating the day document if needed."""
        _parse_date(day)
        async with self._lock, self._connect() as db:
            doc = await self._load_day(db, day) or Day(id=day, date=day)
            if insert_index is None:
                doc.tasks.append(task)
            else:
                doc.tasks.insert(insert_index, task)
            await self._save_day(db, doc)
            await db.commit()
        logger.debug("task_added", date=day, task_id=task.id)
        return task

    async def create_task(
        self,
        day: str,
        title: str,
        *,
        description: str | None = None,
        start_time: str | None = None,
        duration_minutes: int | None = None,
        subtasks: list[str] | None = None,
        urgency: Urgency | None = None,
        importance: Importance | None = None,
    ) -> Task:
        """Build a task from loose arguments and add it to ``day``."""
        _parse_date(day)
        task = Task(
            title=title,
            description=description,
            subtasks=[Subtask(text=text) for text in subtasks or []],
            duration_minutes=duration_minutes,
            calendar_item=_calendar_item(day, start_time, duration_minutes=duration_minutes),
            urgency=urgency,
            importance=importance,
        )
        return await self.add_task(day, task)

    async def update_task(self, day: str, task_id: str, updates: dict[str, Any]) -> Task:
        async with self._lock, self._connect() as db:
            doc = await self._require_day(db, day)
            for index, task in enumerate(doc.tasks):
                if task.id == task_id:
                    doc.tasks[index] = _apply_updates(task, updates)
                    await self._save_day(db, doc)
                    await db.commit()
                    return doc.tasks[index]
        raise TaskNotFoundError(f"Task {task_id} not found on {day}")

    async def delete_task(self, day: str, task_id: str) -> None:
        async with self._lock, self._connect() as db:
            doc = await self._require_day(db, day)
            remaining = [t for t in doc.tasks if t.id != task_id]
            if len(remaining) == len(doc.tasks):
                raise TaskNotFoundError(f"Task {task_id} not found on {day}")
            doc.tasks = remaining
            await self._save_day(db, doc)
            await db.commit()
        logger.debug("task_deleted", date=day, task_id=task_id)

    async def mark_task_completed(self, task_id: str) -> Task:
        async with self._lock, self._connect() as db:
            doc, index = await self._find_task(db, task_id)
            task = doc.tasks[index]
            task.completed = True
            task.touch()
            await self._save_day(db, doc)
            await db.commit()
        return task

    async def mark_tasks_completed(self, date_ids: dict[str, list[str]]) -> int:
        """Mark tasks completed, grouped by date. Unknown ids are skipped.

        Returns:
            Number of tasks marked.

        Raises:
            TaskNotFoundError: If a listed date has no document.
        """
        marked = 0
        async with self._lock, self._connect() as db:
            for day, task_ids in date_ids.items():
                doc = await self._require_day(db, day)
                wanted = set(task_ids)
                for task in doc.tasks:
                    if task.id in wanted:
                        task.completed = True
                        task.touch()
                        marked += 1
                await self._save_day(db, doc)
            await db.commit()
        return marked

    async def mark_subtask_completed(self, task_id: str, subtask_id: str) -> Task:
        async with self._lock, self._connect() as db:
            doc, index = await self._find_task(db, task_id)
            task = doc.tasks[index]
            for subtask in task.subtasks:
                if subtask.id == subtask_id:
                    subtask.completed = True
                    break
            else:
                raise TaskNotFoundError(f"Subtask {subtask_id} not found on task {task_id}")
            task.touch()
            await self._save_day(db, doc)
            await db.commit()
        return task

    async def move_task(
        self,
        task_id: str,
        new_date: str,
        new_start_time: str | None = None,
        new_end_time: str | None = None,
    ) -> Task:
        """Move a scheduled task to ``new_date``, optionally rescheduling its slot."""
        _parse_date(new_date)
        async with self._lock, self._connect() as db:
            source, index = await self._find_task(db, task_id)
            task = source.tasks.pop(index)
            if new_start_time:
                task.calendar_item = _calendar_item(
                    new_date, new_start_time, new_end_time, task.duration_minutes
                )
            task.touch()

            if source.date == new_date:
                target = source
            else:
                await self._save_day(db, source)
                target = await self._load_day(db, new_date) or Day(id=new_date, date=new_date)
            target.tasks.append(task)
            await self._save_day(db, target)
            await db.commit()
        logger.debug("task_moved", task_id=task_id, from_date=source.date, to_date=new_date)
        return task

    async def reorder_day_tasks(self, day: str, task_ids: list[str]) -> None:
        async with self._lock, self._connect() as db:
            doc = await self._require_day(db, day)
            doc.tasks = _reorder(doc.tasks, task_ids)
            await self._save_day(db, doc)
            await db.commit()

    # -----------------------------------------------------------------
    # Backlog mutations
    # -----------------------------------------------------------------

    async def add_backlog_task(self, task: Task, insert_index: int | None = None) -> Task:
        async with self._lock, self._connect() as db:
            tasks = await self._load_backlog(db)
            if insert_index is None:
                tasks.append(task)
            else:
                tasks.insert(insert_index, task)
            await self._save_backlog(db, tasks)
            await db.commit()
        logger.debug("backlog_task_added", task_id=task.id)
        return task

    async def create_backlog_task(
        self,
        title: str,
        *,
        description: str | None = None,
        duration_minutes: int | None = None,
        subtasks: list[str] | None = None,
        urgency: Urgency | None = None,
        importance: Importance | None = None,
    ) -> Task:
        task = Task(
            title=title,
            description=description,
            duration_minutes=duration_minutes,
            subtasks=[Subtask(text=text) for text in subtasks or []],
            urgency=urgency,
            importance=importance,
        )
        return await self.add_backlog_task(task)

    async def update_backlog_task(self, task_id: str, updates: dict[str, Any]) -> Task:
        async with self._lock, self._connect() as db:
            tasks = await self._load_backlog(db)
            for index, task in enumerate(tasks):
                if task.id == task_id:
                    tasks[index] = _apply_updates(task, updates)
                    await self._save_backlog(db, tasks)
                    await db.commit()
                    return tasks[index]
        raise TaskNotFoundError(f"Backlog task {task_id} not found")

    async def delete_backlog_task(self, task_id: str) -> None:
        async with self._lock, self._connect() as db:
            tasks = await self._load_backlog(db)
            remaining = [t for t in tasks if t.id != task_id]
            if len(remaining) == len(tasks):
                raise TaskNotFoundError(f"Backlog task {task_id} not found")
            await self._save_backlog(db, remaining)
            await db.commit()

    async def reorder_backlog_tasks(self, task_ids: list[str]) -> None:
        async with self._lock, self._connect() as db:
            tasks = await self._load_backlog(db)
            await self._save_backlog(db, _reorder(tasks, task_ids))
            await db.commit()

    async def schedule_backlog_task(
        self,
        task_id: str,
        day: str,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> Task:
        """Move a backlog task onto ``day``, optionally giving it a slot."""
        _parse_date(day)
        async with self._lock, self._connect() as db:
            backlog = await self._load_backlog(db)
            for index, task in enumerate(backlog):
                if task.id == task_id:
                    break
            else:
                raise TaskNotFoundError(f"Backlog task {task_id} not found")

            task = backlog.pop(index)
            if start_time:
                task.calendar_item = _calendar_item(
                    day, start_time, end_time, task.duration_minutes
                )
            task.touch()

            doc = await self._load_day(db, day) or Day(id=day, date=day)
            doc.tasks.append(task)
            await self._save_backlog(db, backlog)
            await self._save_day(db, doc)
            await db.commit()
        logger.debug("backlog_task_scheduled", task_id=task_id, date=day)
        return task


_task_store: TaskStore | None = None


def get_task_store() -> TaskStore:
    """Get the process-wide TaskStore, created from settings on first use."""
    global _task_store
    if _task_store is None:
        _task_store = TaskStore(settings.database_path)
    return _task_store


def set_task_store(store: TaskStore | None) -> None:
    """Replace the process-wide TaskStore (None resets it)."""
    global _task_store
    _task_store = store
