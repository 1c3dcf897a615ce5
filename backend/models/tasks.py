"""Task, subtask and day documents managed by the TaskStore.

Days are keyed by ISO date (``YYYY-MM-DD``) and hold an ordered task list.
The backlog is a single ordered list of unscheduled tasks.
"""

import time
import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return datetime.fromtimestamp(time.time()).isoformat()


class Urgency(StrEnum):
    """How soon a task needs attention."""

    IMMEDIATE = "immediate"
    SOON = "soon"
    LATER = "later"
    SOMEDAY = "someday"


class Importance(StrEnum):
    """How much a task matters."""

    CRITICAL = "critical"
    SIGNIFICANT = "significant"
    VALUABLE = "valuable"
    OPTIONAL = "optional"


class CalendarTime(BaseModel):
    date_time: str | None = Field(
        default=None,
        description="ISO 8601 local date-time",
        examples=["2026-10-19T09:30:00"],
    )
    time_zone: str | None = None


class CalendarItem(BaseModel):
    """Scheduled slot for a task."""

    start: CalendarTime = Field(default_factory=CalendarTime)
    end: CalendarTime = Field(default_factory=CalendarTime)


class Subtask(BaseModel):
    id: str = Field(default_factory=_new_id)
    text: str
    completed: bool = False


class Task(BaseModel):
    """A single task on a day or in the backlog."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    title: str
    description: str | None = None
    subtasks: list[Subtask] = Field(default_factory=list)
    completed: bool = False
    tags: list[str] = Field(default_factory=list)
    urgency: Urgency | None = None
    importance: Importance | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    calendar_item: CalendarItem | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    def touch(self) -> None:
        self.updated_at = _now_iso()


class Day(BaseModel):
    """The ordered tasks scheduled on one date."""

    id: str
    date: str = Field(description="ISO date", examples=["2026-10-19"])
    tasks: list[Task] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
