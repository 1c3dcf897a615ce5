"""Pydantic schemas for API request/response models.

This module defines the data models used by the agent endpoints, the run API
and the WebSocket handler. All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from models.workflow import AgentPhase

# -----------------------------------------------------------------------------
# Agent endpoints
# -----------------------------------------------------------------------------


class DecideRequest(BaseModel):
    """Request body for the decide endpoint.

    Fields are optional at the schema level so the route can answer a
    missing field with a 400 rather than a validation error.
    """

    todo_list: list[str] | None = Field(
        default=None,
        description="Descriptions of todo items that are not done yet",
        examples=[["Schedule the dentist visit"]],
    )
    plan: list[dict[str, Any]] | None = Field(
        default=None,
        description="Current action plan as {name, parameters} items",
    )
    context: str | None = Field(
        default=None,
        description="Accumulated run context",
    )
    results: str | None = Field(
        default=None,
        description="Results of earlier rounds, one line each",
    )


class DecideResponse(BaseModel):
    """Phase decision returned by the decide endpoint."""

    decision: AgentPhase = Field(description="Phase to run next")
    reason: str = Field(default="", description="Why the phase was chosen")
    success: bool = Field(default=True)
    message: str = Field(default="Decision made")


class AgentRequest(BaseModel):
    """Request body shared by the gather and plan endpoints."""

    context: str = Field(
        default="",
        description="Accumulated run context",
        examples=["I have a dentist appointment at 3pm.\nToday's date is 2025-03-14."],
    )
    todo_list: list[str] = Field(
        description="Descriptions of todo items that are not done yet",
        examples=[["Schedule the dentist visit"]],
    )


class ToolCallFunction(BaseModel):
    name: str
    arguments: str = Field(description="JSON-encoded call arguments")


class ToolCall(BaseModel):
    """A tool call in OpenAI wire format."""

    id: str
    type: Literal["function"] = "function"
    function: ToolCallFunction


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)


class AgentMessageResponse(BaseModel):
    """Response of the gather and plan endpoints."""

    message: AssistantMessage


class CheckResultsRequest(BaseModel):
    todo_list: list[str] = Field(
        description="Descriptions of todo items that are not done yet",
    )
    execution_results: dict[str, Any] = Field(
        default_factory=dict,
        description="Per-action outcome of the executed plan",
    )


class TodoResult(BaseModel):
    """Verdict for a single todo item."""

    task: str = Field(description="Todo item text")
    reason: str = Field(default="", description="Why the item is (not) done")
    result: bool = Field(description="True when the item is done")


class CheckResultsResponse(BaseModel):
    results: list[TodoResult] = Field(default_factory=list)
    success: bool = Field(default=True)
    message: str = Field(default="Results marked")


class WriteCodeRequest(BaseModel):
    todo_list: list[str] = Field(
        description="Descriptions of todo items that are not done yet",
    )
    context: str = Field(default="", description="Accumulated run context")


class WriteCodeResponse(BaseModel):
    """Pseudo-code and sandbox code produced by the model."""

    model_config = ConfigDict(populate_by_name=True)

    pseudo_code: str = Field(
        alias="pseudoCode",
        description="Plain-language outline of the program",
    )
    code: str = Field(description="Python code to run in the sandbox")


class ExecuteCodeRequest(BaseModel):
    code: str = Field(default="", description="Python code to run in the sandbox")


class ExecuteCodeResponse(BaseModel):
    """Outcome of a sandboxed code run."""

    result: str = Field(description="Returned value, JSON-encoded for containers")
    outputs: list[str] = Field(
        default_factory=list,
        description="Lines printed by the code",
    )


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


class RunStatus(StrEnum):
    """Run lifecycle status."""

    RUNNING = "running"
    COMPLETE = "complete"
    STOPPED = "stopped"
    ERROR = "error"


class CreateRunRequest(BaseModel):
    """Request body for starting a coordinator run."""

    context: str = Field(
        default="",
        max_length=20000,
        description="Initial context for the run",
        examples=["I have a dentist appointment at 3pm."],
    )
    todo_list: list[str] = Field(
        min_length=1,
        description="Todo items the run should complete",
        examples=[["Schedule the dentist visit", "Move my gym session to Friday"]],
    )


class RunResponse(BaseModel):
    """Response for run creation."""

    run_id: str = Field(
        description="Unique run identifier",
        examples=["run_abc123def456"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/run_abc123def456"],
    )
    status: RunStatus = Field(description="Current run status")


class RunDetailResponse(BaseModel):
    """Detailed run information."""

    run_id: str = Field(description="Unique run identifier")
    status: RunStatus = Field(description="Current run status")
    context: str = Field(description="Initial context of the run")
    todo_list: dict[str, bool] = Field(description="Todo items and their done flags")
    rounds: int = Field(default=0, ge=0, description="Rounds completed so far")
    created_at: float = Field(description="Unix timestamp of run creation")
    completed_at: float | None = Field(
        default=None,
        description="Unix timestamp when the run ended",
    )
    error_message: str | None = Field(
        default=None,
        description="Error message if the run failed",
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_runs: int = Field(
        default=0,
        description="Number of coordinator runs in progress",
    )
