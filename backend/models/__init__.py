"""Models module for Pydantic schemas, task data and persistence.

This module exposes the request/response models used by the API and the
workflow types shared by the coordinator and its sub-agents.
"""

from models.schemas import (
    AgentMessageResponse,
    AgentRequest,
    CheckResultsRequest,
    CheckResultsResponse,
    CreateRunRequest,
    DecideRequest,
    DecideResponse,
    ExecuteCodeRequest,
    ExecuteCodeResponse,
    HealthResponse,
    RunDetailResponse,
    RunResponse,
    RunStatus,
    WriteCodeRequest,
    WriteCodeResponse,
)
from models.tasks import Day, Importance, Subtask, Task, Urgency
from models.workflow import (
    ActionPlanItem,
    AgentPhase,
    IdMapping,
    TodoList,
    is_finished,
    pending_tasks,
)

__all__ = [
    # API schemas
    "AgentMessageResponse",
    "AgentRequest",
    "CheckResultsRequest",
    "CheckResultsResponse",
    "CreateRunRequest",
    "DecideRequest",
    "DecideResponse",
    "ExecuteCodeRequest",
    "ExecuteCodeResponse",
    "HealthResponse",
    "RunDetailResponse",
    "RunResponse",
    "RunStatus",
    "WriteCodeRequest",
    "WriteCodeResponse",
    # Tasks
    "Day",
    "Importance",
    "Subtask",
    "Task",
    "Urgency",
    # Workflow
    "ActionPlanItem",
    "AgentPhase",
    "IdMapping",
    "TodoList",
    "is_finished",
    "pending_tasks",
]
