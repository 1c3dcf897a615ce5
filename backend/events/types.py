"""Event type definitions for the planner agent event system.

This module defines the event vocabulary emitted by the sub-agents and the
workflow coordinator. The string values are the wire contract consumed by the
UI, so they keep the camelCase names the frontend listens for.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.workflow import ActionPlanItem, AgentPhase


class EventType(StrEnum):
    """All event types in the planner agent system.

    Events are categorized by:
    - Coordinator: Round lifecycle, phase decisions, stop/finish/error
    - Decide: Phase selection requests
    - Gather: Information gathering and tool-call processing
    - Plan: Action plan construction
    - Execute: Plan execution and result reconciliation
    - ExecuteCode: Generated code and sandboxed execution
    - Bus: Sentinels that never leave the backend
    """

    # Coordinator
    ROUND_START = "roundStart"
    PHASE_DECISION = "phaseDecision"
    ROUND_END = "roundEnd"
    ROUND_LIMIT = "roundLimit"
    STOP = "STOP"
    FINISHED = "finished"
    ERROR = "error"

    # Decide
    DECIDE_START = "decideStart"
    DECIDE_COMPLETE = "decideComplete"
    DECIDE_ERROR = "decideError"

    # Gather
    GATHER_START = "gatherStart"
    TOOL_CALLS_RECEIVED = "toolCallsReceived"
    FUNCTION_CALL_ERROR = "functionCallError"
    FUNCTION_CALLS_PROCESSED = "functionCallsProcessed"
    GATHER_COMPLETE = "gatherComplete"
    GATHER_ERROR = "gatherError"

    # Plan
    PLAN_BUILD_START = "planBuildStart"
    PLAN_BUILD_COMPLETE = "planBuildComplete"
    PLAN_BUILD_ERROR = "planBuildError"

    # Execute
    EXECUTE_START = "executeStart"
    EXECUTE_RESULTS = "executeResults"
    CHECK_RESULTS_RESPONSE = "checkResultsResponse"
    EXECUTE_COMPLETE = "executeComplete"
    EXECUTE_ERROR = "executeError"

    # ExecuteCode
    EXECUTE_CODE_START = "executeCodeStart"
    PSEUDO_CODE = "pseudoCode"
    CODE = "code"
    EXECUTE_CODE_COMPLETE = "executeCodeComplete"
    EXECUTE_CODE_ERROR = "executeCodeError"

    # Bus
    RUN_CLOSED = "runClosed"


class AgentEventPayload(BaseModel):
    """Round-stamped payload carried by every event.

    Only the fields relevant to an event are set; the rest stay None and are
    dropped on serialization. Extra keys (``toolCalls``, ``functionCall``,
    ``mapping``...) are accepted for sub-agent specific detail.

    Payload fields by event type:

    ROUND_START / ROUND_END / FINISHED / STOP:
        - round, context, todo, plan (ROUND_START also carries results)

    PHASE_DECISION:
        - round, decision, reason

    GATHER_COMPLETE:
        - new_info, mapping

    PLAN_BUILD_COMPLETE:
        - plan

    EXECUTE_RESULTS / EXECUTE_COMPLETE:
        - execution_results

    PSEUDO_CODE / CODE:
        - pseudo_code / code

    ERROR and *_ERROR:
        - error (plus todo and context on the coordinator's ERROR)
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    round: int | None = None
    context: str | None = None
    todo: dict[str, bool] | None = None
    plan: list[ActionPlanItem] | None = None
    pseudo_code: str | None = None
    code: str | None = None
    decision: AgentPhase | None = None
    reason: str | None = None
    new_info: str | None = None
    execution_results: dict[str, Any] | None = None
    error: str | None = None
    results: Any = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AgentEvent(BaseModel):
    """An event published on the bus for a coordinator run.

    Attributes:
        type: The category of event (from EventType enum)
        timestamp: Unix timestamp when the event occurred
        run_id: Which coordinator run this event belongs to
        agent_role: Human-readable source (e.g. "Coordinator", "Gather")
        payload: The round-stamped event payload
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    agent_role: str | None = None
    payload: AgentEventPayload = Field(default_factory=AgentEventPayload)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "phaseDecision",
                    "timestamp": 1699876543.123,
                    "run_id": "run_abc123def456",
                    "agent_role": "Coordinator",
                    "payload": {
                        "round": 1,
                        "decision": "gather",
                        "reason": "Need today's tasks before planning.",
                    },
                }
            ]
        }
    }

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the WebSocket, with the payload in wire format."""
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "agent_role": self.agent_role,
            "payload": self.payload.to_wire(),
        }
