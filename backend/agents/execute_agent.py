"""Execute agent: dispatches an action plan and reconciles the todo list.

Each planned action is dispatched through the FunctionCallProcessor after
its short ``#N`` references are resolved. A failing action is reported and
recorded as False; the rest of the plan still runs. The collected results
are then sent to the check-results endpoint, whose per-item verdicts become
the returned todo map.

Mutations are applied as they are dispatched. A later failure in the same
round does not roll earlier ones back.
"""

from typing import Any

import httpx
import structlog

from agents.base import SubAgent
from agents.formatting import format_function_result
from agents.functions import FunctionCallProcessor, resolve_references
from events.types import AgentEventPayload, EventType
from models.task_store import TaskStore, get_task_store
from models.workflow import ActionPlanItem, IdMapping, TodoList, pending_tasks

logger = structlog.get_logger()

CHECK_RESULTS_ENDPOINT = "/api/agent/check-results"


def _result_key(name: str, results: dict[str, Any]) -> str:
    """Key for an action's result; repeated names get a ``(n)`` suffix."""
    if name not in results:
        return name
    count = 2
    while f"{name} ({count})" in results:
        count += 1
    return f"{name} ({count})"


class ExecuteAgent(SubAgent):
    role = "Execute"
    events = (
        EventType.EXECUTE_START,
        EventType.FUNCTION_CALL_ERROR,
        EventType.EXECUTE_RESULTS,
        EventType.CHECK_RESULTS_RESPONSE,
        EventType.EXECUTE_COMPLETE,
        EventType.EXECUTE_ERROR,
    )
    error_event = EventType.EXECUTE_ERROR

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        store: TaskStore | None = None,
    ) -> None:
        super().__init__(client)
        self.processor = FunctionCallProcessor(store or get_task_store())

    async def _run_action(self, action: ActionPlanItem, mapping: IdMapping) -> str | bool:
        parameters = resolve_references(action.parameters or {}, mapping)
        try:
            result = await self.processor.process(action.name, parameters)
        except Exception as e:
            logger.warning("action_failed", action=action.name, error=str(e))
            self.emit(
                EventType.FUNCTION_CALL_ERROR,
                AgentEventPayload(
                    error=str(e),
                    functionCall={"name": action.name, "parameters": action.parameters},
                ),
            )
            return False
        if result is None:
            return True
        return format_function_result(action.name, result, mapping) or True

    async def execute(
        self,
        todo_list: TodoList,
        plan: list[ActionPlanItem],
        mapping: IdMapping,
        round: int,
    ) -> dict[str, bool]:
        """Run ``plan`` and return ``{todo item: done}`` as judged by the endpoint."""
        self.emit(EventType.EXECUTE_START, AgentEventPayload(plan=plan, round=round))

        # Formatting registers new entities; keep those off the caller's mapping.
        mapping = mapping.copy()
        execution_results: dict[str, Any] = {}
        # The plan belongs to the coordinator; results are only collected here.
        for action in plan:
            result = await self._run_action(action, mapping)
            execution_results[_result_key(action.name, execution_results)] = result

        self.emit(
            EventType.EXECUTE_RESULTS,
            AgentEventPayload(execution_results=execution_results),
        )

        data = await self.post(
            CHECK_RESULTS_ENDPOINT,
            {
                "todo_list": pending_tasks(todo_list),
                "execution_results": execution_results,
            },
        )
        self.emit(
            EventType.CHECK_RESULTS_RESPONSE,
            AgentEventPayload(checkResultsResponse=data),
        )

        results: dict[str, bool] = {}
        for item in data.get("results") or []:
            if isinstance(item, dict) and item.get("task"):
                results[item["task"]] = bool(item.get("result"))

        logger.info(
            "execute_complete",
            round=round,
            actions=len(plan),
            failed_actions=sum(1 for value in execution_results.values() if value is False),
            todo_results=results,
        )
        self.emit(
            EventType.EXECUTE_COMPLETE,
            AgentEventPayload(execution_results=execution_results, results=results),
        )
        return results
