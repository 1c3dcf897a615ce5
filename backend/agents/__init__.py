"""Workflow coordinator, sub-agents, prompts and LLM integration.

This module exports the key components needed to run the planner workflow:
- WorkflowCoordinator driving the decide/phase round loop
- Sub-agents that call the agent endpoints over HTTP
- Function definitions and the processor applying them to the task store
- LLM client utilities with retry logic
"""

from agents.base import AgentRequestError, SubAgent, create_agent_client
from agents.coordinator import (
    CoordinatorBusyError,
    WorkflowCoordinator,
    WorkflowState,
    merge_todo_results,
)
from agents.decide_agent import DecideAgent
from agents.execute_agent import ExecuteAgent
from agents.execute_code_agent import ExecuteCodeAgent
from agents.functions import (
    GATHER_FUNCTIONS,
    PLAN_FUNCTIONS,
    FunctionCallProcessor,
    FunctionName,
    get_function_definitions_for_llm,
)
from agents.gather_agent import GatherAgent
from agents.llm import LLMClient, LLMResponse, MockLLMClient, ToolCallData
from agents.plan_agent import PlanAgent

__all__ = [
    # Coordinator
    "CoordinatorBusyError",
    "WorkflowCoordinator",
    "WorkflowState",
    "merge_todo_results",
    # Sub-agents
    "AgentRequestError",
    "SubAgent",
    "create_agent_client",
    "DecideAgent",
    "GatherAgent",
    "PlanAgent",
    "ExecuteAgent",
    "ExecuteCodeAgent",
    # Functions
    "GATHER_FUNCTIONS",
    "PLAN_FUNCTIONS",
    "FunctionCallProcessor",
    "FunctionName",
    "get_function_definitions_for_llm",
    # LLM
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
]
