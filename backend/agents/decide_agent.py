"""Decide agent: asks the decide endpoint which phase runs next."""

from typing import Any

import structlog

from agents.base import SubAgent
from events.types import AgentEventPayload, EventType
from models.workflow import ActionPlanItem, AgentPhase, DecideResult, TodoList, pending_tasks

logger = structlog.get_logger()

DECIDE_ENDPOINT = "/api/agent/decide"


def plan_to_wire(plan: list[ActionPlanItem]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json", exclude_none=True) for item in plan]


class DecideAgent(SubAgent):
    role = "Decide"
    events = (EventType.DECIDE_START, EventType.DECIDE_COMPLETE, EventType.DECIDE_ERROR)
    error_event = EventType.DECIDE_ERROR

    async def decide(
        self,
        todo_list: TodoList,
        plan: list[ActionPlanItem],
        context: str,
        results: str,
    ) -> DecideResult:
        """Return the phase the decide endpoint selected.

        Raises:
            AgentRequestError: If the request fails, the endpoint reports
                ``success: false`` or the decision is missing or unknown.
        """
        self.emit(EventType.DECIDE_START, AgentEventPayload(todo=dict(todo_list)))

        data = await self.post(
            DECIDE_ENDPOINT,
            {
                "todo_list": pending_tasks(todo_list),
                "plan": plan_to_wire(plan),
                "context": context,
                "results": results,
            },
        )

        if data.get("success") is False:
            self.fail(DECIDE_ENDPOINT, 200, data.get("message") or "Decision failed")

        try:
            decision = AgentPhase(data.get("decision"))
        except ValueError:
            self.fail(DECIDE_ENDPOINT, 200, f"Invalid decision: {data.get('decision')!r}")

        reason = data.get("reason") or ""
        logger.info("phase_decided", decision=decision.value, reason=reason)
        self.emit(
            EventType.DECIDE_COMPLETE,
            AgentEventPayload(decision=decision, reason=reason),
        )
        return DecideResult(decision=decision, reason=reason)
