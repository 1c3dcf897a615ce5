"""Render task data as compact prompt text.

Entity ids are replaced by short ``#N`` references registered in the run's
IdMapping, so the model can refer back to a task or subtask cheaply and the
Execute agent can translate the reference back before dispatch.
"""

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from models.tasks import Day, Task
from models.workflow import IdMapping


def _clock(value: str | None) -> str | None:
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return None
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{moment.hour % 12 or 12}:{moment.minute:02d} {suffix}"


def _metadata(task: Task) -> list[str]:
    metadata: list[str] = []
    if task.urgency:
        metadata.append(f"Urgency: {task.urgency.value}")
    if task.importance:
        metadata.append(f"Importance: {task.importance.value}")
    if task.duration_minutes:
        metadata.append(f"Duration: {task.duration_minutes}m")
    if task.tags:
        metadata.append(f"Tags: {', '.join(task.tags)}")
    if task.calendar_item:
        start = _clock(task.calendar_item.start.date_time)
        end = _clock(task.calendar_item.end.date_time)
        if start:
            metadata.append(f"Time: {start} - {end}" if end else f"Time: {start}")
    return metadata


def format_task(task: Task, mapping: IdMapping) -> str:
    """Render one task (and its subtasks) as an indented checklist entry."""
    mark = "x" if task.completed else " "
    lines = [f"  - [{mark}] #{mapping.register(task.id)} {task.title}"]
    if task.description:
        lines.append(f"    Description: {task.description}")
    metadata = _metadata(task)
    if metadata:
        lines.append(f"    ({' | '.join(metadata)})")
    if task.subtasks:
        lines.append("    Subtasks:")
        for subtask in task.subtasks:
            sub_mark = "x" if subtask.completed else " "
            lines.append(
                f"    - [{sub_mark}] #{mapping.register(subtask.id)} {subtask.text}"
            )
    return "\n".join(lines)


def format_tasks_context(title: str, tasks: Iterable[Task], mapping: IdMapping) -> str:
    """Render a titled task section, or "" when there are no tasks.

    Every task and subtask id is registered in ``mapping``.
    """
    tasks = list(tasks)
    if not tasks:
        return ""
    body = "\n".join(format_task(task, mapping) for task in tasks)
    return f"\n{title}:\n{body}\n"


def format_days(days: Iterable[Day], mapping: IdMapping) -> str:
    """Render one section per day, skipping days without tasks."""
    return "".join(
        format_tasks_context(f"Tasks for {day.date}", day.tasks, mapping) for day in days
    )


def format_function_result(name: str, result: Any, mapping: IdMapping) -> str:
    """Render a function-call result for the model's context.

    Returns "" for a result that carries no information (None), so callers
    can skip it.
    """
    if result is None:
        return ""
    if isinstance(result, Task):
        return format_tasks_context(f"Result of {name}", [result], mapping)
    if isinstance(result, Day):
        return format_days([result], mapping) or f"\nNo tasks on {result.date}.\n"
    if isinstance(result, dict) and all(isinstance(v, Day) for v in result.values()):
        return format_days(result.values(), mapping) or f"\n{name}: no tasks found.\n"
    if isinstance(result, list) and all(isinstance(v, Day) for v in result):
        return format_days(result, mapping) or f"\n{name}: no tasks found.\n"
    if isinstance(result, list) and all(isinstance(v, Task) for v in result):
        title = "Backlog" if name == "get_backlog_tasks" else f"Result of {name}"
        return format_tasks_context(title, result, mapping) or f"\n{name}: no tasks found.\n"
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
