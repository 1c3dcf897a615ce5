"""Function-call registry and dispatcher for tool calls proposed by the model.

The registry is closed: every callable function has a FunctionName member and
a pydantic argument model. The JSON schemas sent to the model are generated
from those argument models, so the advertised and the validated shapes
cannot drift apart.

Gather uses the read-only functions; Plan proposes the mutating ones, which
the Execute agent later dispatches.
"""

from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agents.llm import normalize_tool_args
from models.task_store import TaskStore
from models.tasks import Importance, Urgency
from models.workflow import IdMapping

logger = structlog.get_logger()


class FunctionName(StrEnum):
    GET_CALENDAR_FOR_DATE_RANGE = "get_calendar_for_date_range"
    GET_BACKLOG_TASKS = "get_backlog_tasks"
    GET_INCOMPLETE_TASKS = "get_incomplete_tasks"
    GET_FUTURE_TASKS = "get_future_tasks"
    CREATE_TASK = "create_task"
    CREATE_BACKLOG_TASK = "create_backlog_task"
    MOVE_TASK = "move_task"
    MARK_TASK_COMPLETED = "mark_task_completed"
    MARK_TASKS_COMPLETED = "mark_tasks_completed"
    MARK_SUBTASK_COMPLETED = "mark_subtask_completed"
    SCHEDULE_BACKLOG_TASK = "schedule_backlog_task"


class UnknownFunctionError(ValueError):
    """Raised when a tool call names a function outside the registry."""


class FunctionArgumentError(ValueError):
    """Raised when tool-call arguments fail validation."""


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class _Args(BaseModel):
    # Unknown fields are dropped so calls stay resilient to model drift.
    model_config = ConfigDict(extra="ignore")


class DateRangeArgs(_Args):
    start_date: str = Field(description="Start date in YYYY-MM-DD format")
    end_date: str = Field(description="End date in YYYY-MM-DD format")


class NoArgs(_Args):
    pass


class CreateTaskArgs(_Args):
    title: str = Field(description="The title of the task")
    date: str = Field(description="Date for the task in YYYY-MM-DD format")
    description: str | None = Field(default=None, description="Optional details about the task")
    start_time: str | None = Field(default=None, description="Start time in HH:MM (24-hour) format")
    duration_minutes: int | None = Field(default=None, ge=0, description="Expected duration in minutes")
    subtasks: list[str] | None = Field(default=None, description="Subtask descriptions")
    urgency: Urgency | None = None
    importance: Importance | None = None


class CreateBacklogTaskArgs(_Args):
    title: str = Field(description="The title of the task")
    description: str | None = Field(default=None, description="Optional details about the task")
    duration_minutes: int | None = Field(default=None, ge=0, description="Expected duration in minutes")
    subtasks: list[str] | None = Field(default=None, description="Subtask descriptions")
    urgency: Urgency | None = None
    importance: Importance | None = None


class MoveTaskArgs(_Args):
    task_id: str = Field(description="Task reference, e.g. '#3'")
    new_date: str = Field(description="New date in YYYY-MM-DD format")
    new_start_time: str | None = Field(default=None, description="New start time in HH:MM format")
    new_end_time: str | None = Field(default=None, description="New end time in HH:MM format")


class MarkTaskCompletedArgs(_Args):
    task_id: str = Field(description="Task reference, e.g. '#3'")


class MarkTasksCompletedArgs(_Args):
    date_ids: dict[str, list[str]] = Field(
        description="Map of YYYY-MM-DD dates to the task references to complete on that date",
    )


class MarkSubtaskCompletedArgs(_Args):
    task_id: str = Field(description="Parent task reference, e.g. '#3'")
    subtask_id: str = Field(description="Subtask reference, e.g. '#4'")


class ScheduleBacklogTaskArgs(_Args):
    task_id: str = Field(description="Backlog task reference, e.g. '#3'")
    date: str = Field(description="Date to schedule on, YYYY-MM-DD")
    start_time: str | None = Field(default=None, description="Start time in HH:MM format")
    end_time: str | None = Field(default=None, description="End time in HH:MM format")


FUNCTION_ARGUMENTS: dict[FunctionName, type[_Args]] = {
    FunctionName.GET_CALENDAR_FOR_DATE_RANGE: DateRangeArgs,
    FunctionName.GET_BACKLOG_TASKS: NoArgs,
    FunctionName.GET_INCOMPLETE_TASKS: DateRangeArgs,
    FunctionName.GET_FUTURE_TASKS: NoArgs,
    FunctionName.CREATE_TASK: CreateTaskArgs,
    FunctionName.CREATE_BACKLOG_TASK: CreateBacklogTaskArgs,
    FunctionName.MOVE_TASK: MoveTaskArgs,
    FunctionName.MARK_TASK_COMPLETED: MarkTaskCompletedArgs,
    FunctionName.MARK_TASKS_COMPLETED: MarkTasksCompletedArgs,
    FunctionName.MARK_SUBTASK_COMPLETED: MarkSubtaskCompletedArgs,
    FunctionName.SCHEDULE_BACKLOG_TASK: ScheduleBacklogTaskArgs,
}

FUNCTION_DESCRIPTIONS: dict[FunctionName, str] = {
    FunctionName.GET_CALENDAR_FOR_DATE_RANGE: (
        "Retrieves tasks scheduled within a date range (inclusive) from the calendar"
    ),
    FunctionName.GET_BACKLOG_TASKS: "Retrieves all unscheduled tasks in the backlog",
    FunctionName.GET_INCOMPLETE_TASKS: (
        "Retrieves incomplete tasks grouped by date, from start_date up to but "
        "not including end_date"
    ),
    FunctionName.GET_FUTURE_TASKS: "Retrieves incomplete tasks scheduled after today",
    FunctionName.CREATE_TASK: "Creates a new task on the user's calendar",
    FunctionName.CREATE_BACKLOG_TASK: "Creates a new unscheduled task in the backlog",
    FunctionName.MOVE_TASK: "Moves or reschedules an existing task on the calendar",
    FunctionName.MARK_TASK_COMPLETED: "Marks a specified task as completed",
    FunctionName.MARK_TASKS_COMPLETED: "Marks several tasks as completed, grouped by date",
    FunctionName.MARK_SUBTASK_COMPLETED: (
        "Marks a specific subtask as completed within a given parent task"
    ),
    FunctionName.SCHEDULE_BACKLOG_TASK: "Moves a backlog task onto a calendar date",
}

GATHER_FUNCTIONS: tuple[FunctionName, ...] = (
    FunctionName.GET_CALENDAR_FOR_DATE_RANGE,
    FunctionName.GET_BACKLOG_TASKS,
    FunctionName.GET_INCOMPLETE_TASKS,
    FunctionName.GET_FUTURE_TASKS,
)

PLAN_FUNCTIONS: tuple[FunctionName, ...] = (
    FunctionName.CREATE_TASK,
    FunctionName.CREATE_BACKLOG_TASK,
    FunctionName.MOVE_TASK,
    FunctionName.MARK_TASK_COMPLETED,
    FunctionName.MARK_TASKS_COMPLETED,
    FunctionName.MARK_SUBTASK_COMPLETED,
    FunctionName.SCHEDULE_BACKLOG_TASK,
)


def get_function_definitions_for_llm(
    names: tuple[FunctionName, ...] | list[FunctionName],
) -> list[dict[str, Any]]:
    """Get function definitions formatted for LLM tool calling.

    Returns:
        List of tool definitions in the format expected by LiteLLM.
    """
    definitions = []
    for name in names:
        schema = FUNCTION_ARGUMENTS[name].model_json_schema()
        schema.pop("title", None)
        definitions.append(
            {
                "type": "function",
                "function": {
                    "name": name.value,
                    "description": FUNCTION_DESCRIPTIONS[name],
                    "parameters": schema,
                },
            }
        )
    return definitions


def parse_function_name(name: str) -> FunctionName:
    try:
        return FunctionName(name)
    except ValueError:
        raise UnknownFunctionError(f"Unknown function call: {name}") from None


def validate_arguments(name: FunctionName, args: Any) -> _Args:
    """Validate raw arguments (dict or JSON string) against the function's model."""
    try:
        return FUNCTION_ARGUMENTS[name].model_validate(normalize_tool_args(args))
    except ValidationError as e:
        raise FunctionArgumentError(f"Invalid arguments for {name.value}: {e}") from e


def resolve_references(args: Any, mapping: IdMapping) -> Any:
    """Replace short ``#N`` references in id-bearing arguments with long ids.

    Keys ending in ``_id`` hold one reference; keys ending in ``_ids`` hold a
    list of references or a mapping whose values are such lists. Other keys
    are left untouched.
    """
    if not isinstance(args, dict):
        return args

    resolved: dict[str, Any] = {}
    for key, value in args.items():
        if key.endswith("_id"):
            resolved[key] = mapping.resolve(value)
        elif key.endswith("_ids") and isinstance(value, list):
            resolved[key] = [mapping.resolve(v) for v in value]
        elif key.endswith("_ids") and isinstance(value, dict):
            resolved[key] = {
                group: [mapping.resolve(v) for v in refs] if isinstance(refs, list) else refs
                for group, refs in value.items()
            }
        else:
            resolved[key] = value
    return resolved


class FunctionCallProcessor:
    """Validates tool calls and dispatches them to the TaskStore.

    Results are returned as domain objects (Task, Day, lists and dicts of
    them, or None for pure side effects); see agents.formatting for the text
    rendering fed back to the model.
    """

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    async def process(self, name: str, args: Any) -> Any:
        """Validate and execute one function call.

        Raises:
            UnknownFunctionError: If ``name`` is not registered.
            FunctionArgumentError: If ``args`` fail validation.
            TaskNotFoundError: If a referenced task does not exist.
        """
        function = parse_function_name(name)
        arguments = validate_arguments(function, args)
        logger.info("function_call_dispatched", function=function.value)

        handler = self._handlers[function]
        return await handler(arguments)

    @property
    def _handlers(self) -> dict[FunctionName, Any]:
        return {
            FunctionName.GET_CALENDAR_FOR_DATE_RANGE: self._get_calendar_for_date_range,
            FunctionName.GET_BACKLOG_TASKS: self._get_backlog_tasks,
            FunctionName.GET_INCOMPLETE_TASKS: self._get_incomplete_tasks,
            FunctionName.GET_FUTURE_TASKS: self._get_future_tasks,
            FunctionName.CREATE_TASK: self._create_task,
            FunctionName.CREATE_BACKLOG_TASK: self._create_backlog_task,
            FunctionName.MOVE_TASK: self._move_task,
            FunctionName.MARK_TASK_COMPLETED: self._mark_task_completed,
            FunctionName.MARK_TASKS_COMPLETED: self._mark_tasks_completed,
            FunctionName.MARK_SUBTASK_COMPLETED: self._mark_subtask_completed,
            FunctionName.SCHEDULE_BACKLOG_TASK: self._schedule_backlog_task,
        }

    async def _get_calendar_for_date_range(self, args: DateRangeArgs) -> Any:
        return await self.store.get_days_by_date_range(args.start_date, args.end_date)

    async def _get_backlog_tasks(self, args: NoArgs) -> Any:
        return await self.store.get_backlog_tasks()

    async def _get_incomplete_tasks(self, args: DateRangeArgs) -> Any:
        return await self.store.get_incomplete_tasks(args.start_date, args.end_date)

    async def _get_future_tasks(self, args: NoArgs) -> Any:
        return await self.store.get_future_tasks()

    async def _create_task(self, args: CreateTaskArgs) -> Any:
        return await self.store.create_task(
            args.date,
            args.title,
            description=args.description,
            start_time=args.start_time,
            duration_minutes=args.duration_minutes,
            subtasks=args.subtasks,
            urgency=args.urgency,
            importance=args.importance,
        )

    async def _create_backlog_task(self, args: CreateBacklogTaskArgs) -> Any:
        return await self.store.create_backlog_task(
            args.title,
            description=args.description,
            duration_minutes=args.duration_minutes,
            subtasks=args.subtasks,
            urgency=args.urgency,
            importance=args.importance,
        )

    async def _move_task(self, args: MoveTaskArgs) -> Any:
        return await self.store.move_task(
            args.task_id, args.new_date, args.new_start_time, args.new_end_time
        )

    async def _mark_task_completed(self, args: MarkTaskCompletedArgs) -> Any:
        return await self.store.mark_task_completed(args.task_id)

    async def _mark_tasks_completed(self, args: MarkTasksCompletedArgs) -> None:
        await self.store.mark_tasks_completed(args.date_ids)

    async def _mark_subtask_completed(self, args: MarkSubtaskCompletedArgs) -> Any:
        return await self.store.mark_subtask_completed(args.task_id, args.subtask_id)

    async def _schedule_backlog_task(self, args: ScheduleBacklogTaskArgs) -> Any:
        return await self.store.schedule_backlog_task(
            args.task_id, args.date, args.start_time, args.end_time
        )
