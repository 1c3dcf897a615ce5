"""Tests for agents/functions.py -- the tool-call registry and dispatcher."""

import pytest

from agents.functions import (
    GATHER_FUNCTIONS,
    PLAN_FUNCTIONS,
    FunctionArgumentError,
    FunctionCallProcessor,
    FunctionName,
    UnknownFunctionError,
    get_function_definitions_for_llm,
    parse_function_name,
    resolve_references,
    validate_arguments,
)
from models.task_store import TaskNotFoundError, TaskStore
from models.tasks import Day, Task
from models.workflow import IdMapping

# =========================================================================
# Registry
# =========================================================================


class TestRegistry:
    def test_gather_and_plan_partition_the_registry(self) -> None:
        assert set(GATHER_FUNCTIONS) | set(PLAN_FUNCTIONS) == set(FunctionName)
        assert not set(GATHER_FUNCTIONS) & set(PLAN_FUNCTIONS)

    def test_definitions_are_openai_tools(self) -> None:
        definitions = get_function_definitions_for_llm([FunctionName.MOVE_TASK])

        assert len(definitions) == 1
        tool = definitions[0]
        assert tool["type"] == "function"
        assert tool["function"]["name"] == "move_task"
        params = tool["function"]["parameters"]
        assert params["type"] == "object"
        assert set(params["required"]) == {"task_id", "new_date"}
        assert "title" not in params

    def test_no_arg_functions_have_empty_properties(self) -> None:
        (tool,) = get_function_definitions_for_llm([FunctionName.GET_BACKLOG_TASKS])
        assert tool["function"]["parameters"].get("properties", {}) == {}

    def test_parse_unknown_function(self) -> None:
        with pytest.raises(UnknownFunctionError, match="Unknown function call: rm_rf"):
            parse_function_name("rm_rf")

    def test_parse_known_function(self) -> None:
        assert parse_function_name("create_task") is FunctionName.CREATE_TASK


# =========================================================================
# Argument validation
# =========================================================================


class TestValidateArguments:
    def test_json_string_arguments(self) -> None:
        args = validate_arguments(
            FunctionName.GET_CALENDAR_FOR_DATE_RANGE,
            '{"start_date": "2026-10-19", "end_date": "2026-10-25"}',
        )
        assert args.start_date == "2026-10-19"

    def test_unknown_fields_are_ignored(self) -> None:
        args = validate_arguments(
            FunctionName.MARK_TASK_COMPLETED, {"task_id": "#1", "reason": "done"}
        )
        assert args.model_dump() == {"task_id": "#1"}

    def test_missing_required_field(self) -> None:
        with pytest.raises(FunctionArgumentError, match="create_task"):
            validate_arguments(FunctionName.CREATE_TASK, {"title": "No date"})

    def test_invalid_enum_value(self) -> None:
        with pytest.raises(FunctionArgumentError):
            validate_arguments(
                FunctionName.CREATE_BACKLOG_TASK, {"title": "x", "urgency": "yesterday"}
            )


# =========================================================================
# Reference resolution
# =========================================================================


class TestResolveReferences:
    @pytest.fixture()
    def mapping(self) -> IdMapping:
        return IdMapping.from_dict({"task-aaa": 1, "task-bbb": 2, "sub-ccc": 3})

    def test_id_keys(self, mapping: IdMapping) -> None:
        resolved = resolve_references(
            {"task_id": "#1", "subtask_id": 3, "new_date": "2026-10-20"}, mapping
        )
        assert resolved == {"task_id": "task-aaa", "subtask_id": "sub-ccc", "new_date": "2026-10-20"}

    def test_id_list_and_grouped_ids(self, mapping: IdMapping) -> None:
        assert resolve_references({"task_ids": ["#1", "2"]}, mapping) == {
            "task_ids": ["task-aaa", "task-bbb"]
        }
        assert resolve_references({"date_ids": {"2026-10-19": ["#2"]}}, mapping) == {
            "date_ids": {"2026-10-19": ["task-bbb"]}
        }

    def test_unknown_references_pass_through(self, mapping: IdMapping) -> None:
        assert resolve_references({"task_id": "#99"}, mapping) == {"task_id": "#99"}
        assert resolve_references({"task_id": "task-zzz"}, mapping) == {"task_id": "task-zzz"}

    def test_non_dict_arguments_are_untouched(self, mapping: IdMapping) -> None:
        assert resolve_references('{"task_id": "#1"}', mapping) == '{"task_id": "#1"}'

    def test_text_fields_are_not_resolved(self, mapping: IdMapping) -> None:
        assert resolve_references({"title": "#1"}, mapping) == {"title": "#1"}


# =========================================================================
# Processor
# =========================================================================


class TestFunctionCallProcessor:
    async def test_create_then_query(self, task_store: TaskStore) -> None:
        processor = FunctionCallProcessor(task_store)

        task = await processor.process(
            "create_task",
            {"title": "Dentist", "date": "2026-10-19", "start_time": "15:00", "duration_minutes": 30},
        )
        days = await processor.process(
            "get_calendar_for_date_range", {"start_date": "2026-10-19", "end_date": "2026-10-19"}
        )

        assert isinstance(task, Task)
        assert isinstance(days[0], Day)
        assert days[0].tasks[0].id == task.id

    async def test_backlog_round_trip_through_schedule(self, task_store: TaskStore) -> None:
        processor = FunctionCallProcessor(task_store)
        task = await processor.process("create_backlog_task", {"title": "Haircut"})

        scheduled = await processor.process(
            "schedule_backlog_task", {"task_id": task.id, "date": "2026-10-21"}
        )

        assert scheduled.id == task.id
        assert await processor.process("get_backlog_tasks", {}) == []

    async def test_mark_tasks_completed_returns_nothing(self, task_store: TaskStore) -> None:
        processor = FunctionCallProcessor(task_store)
        task = await task_store.create_task("2026-10-19", "A")

        result = await processor.process(
            "mark_tasks_completed", {"date_ids": {"2026-10-19": [task.id]}}
        )

        assert result is None
        assert (await task_store.get_day("2026-10-19")).tasks[0].completed is True

    async def test_unknown_task_propagates(self, task_store: TaskStore) -> None:
        processor = FunctionCallProcessor(task_store)
        with pytest.raises(TaskNotFoundError):
            await processor.process("mark_task_completed", {"task_id": "missing"})

    async def test_unknown_function_raises(self, task_store: TaskStore) -> None:
        with pytest.raises(UnknownFunctionError):
            await FunctionCallProcessor(task_store).process("delete_everything", {})
