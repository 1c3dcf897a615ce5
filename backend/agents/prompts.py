"""System prompts and forced tool definitions for the agent endpoints.

This module contains the prompt templates used by each endpoint:
- Decide: choose the next workflow phase via the forced ``decide`` tool
- Gather: call read-only functions to collect task state
- Plan: propose mutating function calls for the todo list
- Check results: reconcile the todo list via the forced ``mark_results`` tool
- Write code: produce pseudo-code plus a Python snippet for the sandbox
"""

import json
from collections.abc import Iterable
from typing import Any

from models.workflow import ActionPlanItem, AgentPhase


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic system prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def _bullets(items: Iterable[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"


def _render_plan(plan: Iterable[ActionPlanItem | dict[str, Any]]) -> list[str]:
    rendered = []
    for item in plan:
        if isinstance(item, ActionPlanItem):
            item = item.model_dump(exclude_none=True)
        params = json.dumps(item.get("parameters") or {}, default=str)
        rendered.append(f"{item.get('name')}({params})")
    return rendered


# ---------------------------------------------------------------------------
# Decide
# ---------------------------------------------------------------------------

DECIDE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "decide",
        "description": "Decide the next phase of the workflow",
        "parameters": {
            "type": "object",
            "properties": {
                "phase": {
                    "type": "string",
                    "enum": [phase.value for phase in AgentPhase],
                },
                "reason": {
                    "type": "string",
                    "description": "One or two sentences explaining the choice",
                },
            },
            "required": ["phase", "reason"],
            "additionalProperties": False,
        },
    },
}

DECIDE_USER_MESSAGE = "Please decide the next phase of the workflow."


def build_decide_prompt(
    todo_list: list[str],
    context: str,
    plan: list[ActionPlanItem] | list[dict[str, Any]],
    results: str | None,
) -> str:
    return f"""\
You are an assistant that decides the next phase of a task-planning workflow.

Todo list still to complete:
{_bullets(todo_list)}

Context:
{context}

Current action plan:
{_bullets(_render_plan(plan))}

Results so far:
{results or "(none)"}

Decide the next phase of the workflow:
- gather: more information about the user's tasks or calendar is needed
- build_plan: enough is known to propose the function calls that complete the todo list
- execute: a plan exists and should be carried out
- execute_code: the todo list is best completed by writing and running a short program"""


# ---------------------------------------------------------------------------
# Gather / Plan
# ---------------------------------------------------------------------------

GATHER_USER_MESSAGE = "Please gather all necessary information to execute this plan."
PLAN_USER_MESSAGE = "Please plan all items in the todo list using the gathered information."


def build_gather_prompt(todo_list: list[str], context: str | None) -> str:
    prompt = f"""\
You are an information gathering assistant. Your role is to gather all \
necessary information before the plan is executed.

IMPORTANT INSTRUCTIONS:
1. You have been given a todo list that needs to be completed:
{_bullets(todo_list)}

2. Gather ALL necessary information using the available query functions
3. Use get_calendar_for_date_range to check relevant dates
4. Use get_backlog_tasks, get_incomplete_tasks, and get_future_tasks to understand current task state
5. Make ALL necessary information gathering calls immediately
6. Explain briefly what information you're gathering and why
7. You will receive the results of these queries in the next stage"""
    return compose_prompt_sections(prompt, f"Additional Context:\n{context}" if context else "")


def build_plan_prompt(todo_list: list[str], context: str | None) -> str:
    prompt = f"""\
You are a task planning assistant. Your role is to propose the function calls \
that will complete the todo list using the gathered information.

IMPORTANT INSTRUCTIONS:
1. Using the context below, propose function calls that complete ALL items in the todo list:
{_bullets(todo_list)}

2. For each item, determine which function(s) best accomplish it
3. Refer to existing tasks and subtasks by their #N reference from the context
4. If an item requires multiple function calls, propose them all in order
5. If you cannot complete an item with the available functions, explain why"""
    return compose_prompt_sections(prompt, f"Additional Context:\n{context}" if context else "")


# ---------------------------------------------------------------------------
# Check results
# ---------------------------------------------------------------------------

MARK_RESULTS_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "mark_results",
        "description": "Mark the results of the execution",
        "parameters": {
            "type": "object",
            "properties": {
                "todo_list": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "task": {"type": "string"},
                            "reason": {"type": "string"},
                            "result": {"type": "boolean"},
                        },
                        "required": ["task", "reason", "result"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["todo_list"],
            "additionalProperties": False,
        },
    },
}

CHECK_RESULTS_USER_MESSAGE = "Please mark the results of the execution."


def build_check_results_prompt(todo_list: list[str], execution_results: dict[str, Any]) -> str:
    return f"""\
You are an assistant that marks the results of an execution.

IMPORTANT INSTRUCTIONS:
1. Mark each todo item as done or not done based on the execution results.
List Items:
{_bullets(todo_list)}

Results:
{json.dumps(execution_results, indent=2, default=str)}

Consider whether the execution actually completed each task and record your \
verdict for every item with the mark_results function. Use the item text verbatim \
as "task"."""


# ---------------------------------------------------------------------------
# Write code
# ---------------------------------------------------------------------------

WRITE_CODE_PROMPT = """\
You are a task execution assistant. Your role is to write a short Python \
program that completes the user's todo list.

The program runs inside a restricted sandbox:
- It is the body of an async function: use `await` directly and `return` the final value.
- `import` statements, classes, names starting with "_", eval/exec/open and str.format are rejected. Use f-strings.
- Standard builtins (len, sorted, range, dict, list, str, min, max, enumerate...) are available, as are `date`, `datetime` and `timedelta`.
- Use print() to report progress; printed lines are returned to the user.
- Execution is stopped after {timeout:g} seconds.

Available functions (all must be awaited; tasks and days are plain dicts):

User Interaction
check_with_user(message: str) -> bool
    Ask the user to confirm. Returns True to proceed.

Task Retrieval
get_backlog_tasks() -> list[dict]
get_today() -> dict                              # {{"date": ..., "tasks": [...]}}
get_days_by_date_range(start_date: str, end_date: str) -> list[dict]
get_incomplete_tasks(start_date: str, end_date: str) -> dict[str, dict]

Task Management
create_task(date: str, title: str, description: str | None = None,
            start_time: str | None = None, duration_minutes: int | None = None,
            subtasks: list[str] | None = None, urgency: str | None = None,
            importance: str | None = None) -> dict
    urgency: "immediate" | "soon" | "later" | "someday"
    importance: "critical" | "significant" | "valuable" | "optional"
add_task(date: str, task: dict, insert_index: int | None = None) -> dict
update_task(date: str, task_id: str, updates: dict) -> dict
delete_task(date: str, task_id: str) -> None

Task Status
mark_task_completed(task_id: str) -> dict
mark_tasks_completed(date_ids: dict[str, list[str]]) -> int
mark_subtask_completed(task_id: str, subtask_id: str) -> dict

Task Organization
move_task(task_id: str, new_date: str, new_start_time: str | None = None,
          new_end_time: str | None = None) -> dict
schedule_backlog_task(task_id: str, date: str, start_time: str | None = None,
                      end_time: str | None = None) -> dict
reorder_day_tasks(date: str, task_ids: list[str]) -> None

Backlog Management
add_backlog_task(task: dict, insert_index: int | None = None) -> dict
update_backlog_task(task_id: str, updates: dict) -> dict
delete_backlog_task(task_id: str) -> None
reorder_backlog_tasks(task_ids: list[str]) -> None

Dates are "YYYY-MM-DD" strings and times are "HH:MM" (24-hour).

Instructions:
1. First, provide a pseudo-code explanation of your approach.
2. Then, provide the final Python code enclosed in triple backticks (```python ... ```).
3. The code must `return` a list of strings naming the todo items it completed."""


def build_write_code_prompt(timeout_seconds: float) -> str:
    return WRITE_CODE_PROMPT.format(timeout=timeout_seconds)


def build_write_code_user_message(todo_list: list[str], context: str | None, now: str) -> str:
    return compose_prompt_sections(
        f"Here is the todo list:\n{_bullets(todo_list)}",
        f"Please note the date and time is: {now}",
        f"Here is some additional context to take note of:\n{context}" if context else "",
    )
