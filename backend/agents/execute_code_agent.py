"""ExecuteCode agent: has the model write a program, then runs it in the sandbox."""

import structlog

from agents.base import SubAgent
from events.types import AgentEventPayload, EventType
from models.workflow import ExecuteCodeResult, IdMapping, TodoList, pending_tasks

logger = structlog.get_logger()

WRITE_CODE_ENDPOINT = "/api/agent/write-code"
EXECUTE_CODE_ENDPOINT = "/api/execute-code"


def format_execution_output(result: str, outputs: list[str]) -> str:
    """Render a sandbox run as context text: the result, then printed lines."""
    if not outputs:
        return result
    printed = "\n".join(outputs)
    return f"{result}\n\nOutput:\n{printed}"


class ExecuteCodeAgent(SubAgent):
    role = "ExecuteCode"
    events = (
        EventType.EXECUTE_CODE_START,
        EventType.PSEUDO_CODE,
        EventType.CODE,
        EventType.EXECUTE_CODE_COMPLETE,
        EventType.EXECUTE_CODE_ERROR,
    )
    error_event = EventType.EXECUTE_CODE_ERROR

    async def execute_code(
        self,
        round: int,
        context: str,
        todo_list: TodoList,
        mapping: IdMapping,
    ) -> ExecuteCodeResult:
        """Generate code for the pending todo items and execute it.

        Raises:
            AgentRequestError: If code generation fails or the sandbox
                rejects or fails to run the code.
        """
        self.emit(
            EventType.EXECUTE_CODE_START,
            AgentEventPayload(context=context, todo=dict(todo_list), round=round),
        )

        generated = await self.post(
            WRITE_CODE_ENDPOINT,
            {"context": context, "todo_list": pending_tasks(todo_list)},
        )
        pseudo_code = generated.get("pseudoCode") or ""
        code = generated.get("code") or ""
        self.emit(EventType.PSEUDO_CODE, AgentEventPayload(pseudo_code=pseudo_code, round=round))
        self.emit(EventType.CODE, AgentEventPayload(code=code, round=round))

        executed = await self.post(EXECUTE_CODE_ENDPOINT, {"code": code})
        new_info = format_execution_output(
            str(executed.get("result", "")),
            [str(line) for line in executed.get("outputs") or []],
        )

        logger.info("code_executed", round=round, code_length=len(code))
        self.emit(
            EventType.EXECUTE_CODE_COMPLETE,
            AgentEventPayload(new_info=new_info, round=round),
        )
        return ExecuteCodeResult(
            new_info=new_info,
            mapping=mapping.copy(),
            pseudo_code=pseudo_code,
            code=code,
        )
