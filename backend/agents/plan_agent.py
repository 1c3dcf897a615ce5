"""Plan agent: turns the plan endpoint's tool calls into an action plan."""

import structlog

from agents.base import SubAgent
from agents.llm import normalize_tool_args
from events.types import AgentEventPayload, EventType
from models.workflow import ActionPlanItem, TodoList, pending_tasks

logger = structlog.get_logger()

PLAN_ENDPOINT = "/api/agent/plan"


class PlanAgent(SubAgent):
    role = "Plan"
    events = (
        EventType.PLAN_BUILD_START,
        EventType.PLAN_BUILD_COMPLETE,
        EventType.PLAN_BUILD_ERROR,
    )
    error_event = EventType.PLAN_BUILD_ERROR

    async def build_plan(self, context: str, todo_list: TodoList) -> list[ActionPlanItem]:
        """Return one ActionPlanItem per proposed tool call, in order.

        Nothing is executed here; the Execute agent dispatches the plan.
        """
        self.emit(
            EventType.PLAN_BUILD_START,
            AgentEventPayload(context=context, todo=dict(todo_list)),
        )

        data = await self.post(
            PLAN_ENDPOINT,
            {"context": context, "todo_list": pending_tasks(todo_list)},
        )
        message = data.get("message") or {}

        plan = [
            ActionPlanItem(
                name=(tool_call.get("function") or {}).get("name", ""),
                parameters=normalize_tool_args((tool_call.get("function") or {}).get("arguments")),
            )
            for tool_call in message.get("tool_calls") or []
        ]

        logger.info("plan_built", actions=[item.name for item in plan])
        self.emit(EventType.PLAN_BUILD_COMPLETE, AgentEventPayload(plan=plan))
        return plan
