"""HTTP endpoints backing the workflow sub-agents.

Each agent endpoint performs one LLM round-trip:

- POST /api/agent/decide: forced ``decide`` tool call selecting the next phase
- POST /api/agent/gather: read-only function calls, tool_choice "auto"
- POST /api/agent/plan: mutating function calls, tool_choice "required"
- POST /api/agent/check-results: forced ``mark_results`` tool call
- POST /api/agent/write-code: pseudo-code plus a fenced Python program

POST /api/execute-code runs a program in the CodeSandbox against the task
store; a rejected or failing program is answered with 400 ``{"error": ...}``.
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from agents.functions import (
    GATHER_FUNCTIONS,
    PLAN_FUNCTIONS,
    get_function_definitions_for_llm,
)
from agents.llm import (
    LLMClient,
    LLMResponse,
    ToolCallData,
    parse_code_response,
    tool_calls_to_message,
)
from agents.prompts import (
    CHECK_RESULTS_USER_MESSAGE,
    DECIDE_TOOL,
    DECIDE_USER_MESSAGE,
    GATHER_USER_MESSAGE,
    MARK_RESULTS_TOOL,
    PLAN_USER_MESSAGE,
    build_check_results_prompt,
    build_decide_prompt,
    build_gather_prompt,
    build_plan_prompt,
    build_write_code_prompt,
    build_write_code_user_message,
)
from config import settings
from models.schemas import (
    AgentMessageResponse,
    AgentRequest,
    AssistantMessage,
    CheckResultsRequest,
    CheckResultsResponse,
    DecideRequest,
    DecideResponse,
    ExecuteCodeRequest,
    ExecuteCodeResponse,
    TodoResult,
    WriteCodeRequest,
    WriteCodeResponse,
)
from models.task_store import get_task_store
from models.workflow import AgentPhase
from sandbox.interpreter import (
    CodeSandbox,
    SandboxRuntimeError,
    SandboxTimeoutError,
    SandboxValidationError,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

# LLM client dependency (replaced in tests or at startup)
_llm_client: LLMClient | None = None


def set_llm_client(client: LLMClient | None) -> None:
    """Set the LLM client used by the agent endpoints (None restores the default)."""
    global _llm_client
    _llm_client = client


def get_llm_client() -> LLMClient:
    """Get the LLM client, creating the default one on first use."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client


def _forced_tool_choice(name: str) -> dict[str, Any]:
    return {"type": "function", "function": {"name": name}}


def _find_tool_call(response: LLMResponse, name: str) -> ToolCallData | None:
    for tool_call in response.tool_calls:
        if tool_call.name == name:
            return tool_call
    return None


async def _call_llm(
    endpoint: str,
    system_prompt: str,
    user_message: str,
    tools: list[dict[str, Any]] | None = None,
    tool_choice: str | dict[str, Any] | None = None,
) -> LLMResponse:
    """Run one completion, translating LLM failures into a 500."""
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_message},
    ]
    try:
        return await get_llm_client().call(messages, tools=tools, tool_choice=tool_choice)
    except Exception as e:
        logger.error(
            "agent_llm_call_failed",
            endpoint=endpoint,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"LLM call failed: {e}",
        ) from e


def _message_response(response: LLMResponse) -> AgentMessageResponse:
    message = tool_calls_to_message(response.content, response.tool_calls)
    return AgentMessageResponse(message=AssistantMessage.model_validate(message))


# -----------------------------------------------------------------------------
# Agent endpoints
# -----------------------------------------------------------------------------


@router.post(
    "/api/agent/decide",
    response_model=DecideResponse,
    summary="Decide the next workflow phase",
)
async def decide(request: DecideRequest) -> DecideResponse:
    if not request.context or request.todo_list is None or request.plan is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields",
        )

    response = await _call_llm(
        "decide",
        build_decide_prompt(request.todo_list, request.context, request.plan, request.results),
        DECIDE_USER_MESSAGE,
        tools=[DECIDE_TOOL],
        tool_choice=_forced_tool_choice("decide"),
    )

    tool_call = _find_tool_call(response, "decide")
    if tool_call is None:
        logger.warning("decide_without_tool_call", content_preview=response.content[:80])
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No phase decision was made",
        )

    try:
        phase = AgentPhase(tool_call.args.get("phase"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid phase: {tool_call.args.get('phase')!r}",
        ) from None

    reason = str(tool_call.args.get("reason") or "")
    logger.info("decide_endpoint_complete", decision=phase.value)
    return DecideResponse(decision=phase, reason=reason, success=True, message="Decision made")


@router.post(
    "/api/agent/gather",
    response_model=AgentMessageResponse,
    summary="Propose information-gathering function calls",
)
async def gather(request: AgentRequest) -> AgentMessageResponse:
    response = await _call_llm(
        "gather",
        build_gather_prompt(request.todo_list, request.context),
        GATHER_USER_MESSAGE,
        tools=get_function_definitions_for_llm(GATHER_FUNCTIONS),
        tool_choice="auto",
    )
    logger.info("gather_endpoint_complete", tool_calls=len(response.tool_calls))
    return _message_response(response)


@router.post(
    "/api/agent/plan",
    response_model=AgentMessageResponse,
    summary="Propose the function calls that complete the todo list",
)
async def plan(request: AgentRequest) -> AgentMessageResponse:
    response = await _call_llm(
        "plan",
        build_plan_prompt(request.todo_list, request.context),
        PLAN_USER_MESSAGE,
        tools=get_function_definitions_for_llm(PLAN_FUNCTIONS),
        tool_choice="required",
    )
    logger.info("plan_endpoint_complete", tool_calls=len(response.tool_calls))
    return _message_response(response)


@router.post(
    "/api/agent/check-results",
    response_model=CheckResultsResponse,
    summary="Judge which todo items the execution completed",
)
async def check_results(request: CheckResultsRequest) -> CheckResultsResponse:
    response = await _call_llm(
        "check-results",
        build_check_results_prompt(request.todo_list, request.execution_results),
        CHECK_RESULTS_USER_MESSAGE,
        tools=[MARK_RESULTS_TOOL],
        tool_choice=_forced_tool_choice("mark_results"),
    )

    tool_call = _find_tool_call(response, "mark_results")
    if tool_call is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No results were marked",
        )

    results = [
        TodoResult.model_validate(item)
        for item in tool_call.args.get("todo_list") or []
        if isinstance(item, dict)
    ]
    logger.info(
        "check_results_endpoint_complete",
        done=sum(1 for item in results if item.result),
        total=len(results),
    )
    return CheckResultsResponse(results=results, success=True, message="Results marked")


@router.post(
    "/api/agent/write-code",
    response_model=WriteCodeResponse,
    summary="Write a sandbox program for the todo list",
)
async def write_code(request: WriteCodeRequest) -> WriteCodeResponse:
    response = await _call_llm(
        "write-code",
        build_write_code_prompt(settings.code_execution_timeout_seconds),
        build_write_code_user_message(
            request.todo_list,
            request.context,
            datetime.now().isoformat(timespec="minutes"),
        ),
    )
    pseudo_code, code = parse_code_response(response.content)
    logger.info("write_code_endpoint_complete", code_length=len(code))
    return WriteCodeResponse(pseudo_code=pseudo_code, code=code)


# -----------------------------------------------------------------------------
# Sandbox
# -----------------------------------------------------------------------------


def _sandbox_error(message: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@router.post(
    "/api/execute-code",
    response_model=ExecuteCodeResponse,
    summary="Run a program in the task sandbox",
)
async def execute_code(request: ExecuteCodeRequest) -> ExecuteCodeResponse | JSONResponse:
    if not request.code.strip():
        return _sandbox_error("No code provided")

    sandbox = CodeSandbox(get_task_store())
    try:
        result = await sandbox.run(request.code)
    except SandboxValidationError as e:
        return _sandbox_error(f"Validation Error: {e}")
    except SandboxTimeoutError as e:
        return _sandbox_error(f"Timeout Error: {e}")
    except SandboxRuntimeError as e:
        return _sandbox_error(f"Runtime Error: {e}")

    return ExecuteCodeResponse(result=result.result, outputs=result.outputs)
