"""Gather agent: runs the read-only tool calls proposed by the gather endpoint.

The endpoint answers with an assistant message whose tool calls are executed
locally, in the order they were returned. Each result is rendered as prompt
text using a copy of the run's IdMapping, so newly seen tasks get short ids.
"""

import httpx
import structlog

from agents.base import SubAgent
from agents.formatting import format_function_result
from agents.functions import FunctionCallProcessor
from agents.llm import normalize_tool_args
from events.types import AgentEventPayload, EventType
from models.task_store import TaskStore, get_task_store
from models.workflow import GatherResult, IdMapping, TodoList, pending_tasks

logger = structlog.get_logger()

GATHER_ENDPOINT = "/api/agent/gather"


class GatherAgent(SubAgent):
    role = "Gather"
    events = (
        EventType.GATHER_START,
        EventType.TOOL_CALLS_RECEIVED,
        EventType.FUNCTION_CALL_ERROR,
        EventType.FUNCTION_CALLS_PROCESSED,
        EventType.GATHER_COMPLETE,
        EventType.GATHER_ERROR,
    )
    error_event = EventType.GATHER_ERROR

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        store: TaskStore | None = None,
    ) -> None:
        super().__init__(client)
        self.processor = FunctionCallProcessor(store or get_task_store())

    async def gather(
        self,
        context: str,
        todo_list: TodoList,
        mapping: IdMapping,
    ) -> GatherResult:
        """Collect information for the pending todo items.

        Returns:
            GatherResult whose ``new_info`` is every non-empty formatted
            tool result (each followed by a newline) and then the message
            content, and whose ``mapping`` is the updated copy.
        """
        self.emit(
            EventType.GATHER_START,
            AgentEventPayload(context=context, todo=dict(todo_list)),
        )

        data = await self.post(
            GATHER_ENDPOINT,
            {"context": context, "todo_list": pending_tasks(todo_list)},
        )
        message = data.get("message") or {}
        tool_calls = message.get("tool_calls") or []

        mapping = mapping.copy()
        results: list[str] = []
        if tool_calls:
            self.emit(EventType.TOOL_CALLS_RECEIVED, AgentEventPayload(toolCalls=tool_calls))
            for tool_call in tool_calls:
                function = tool_call.get("function") or {}
                name = function.get("name", "")
                try:
                    result = await self.processor.process(
                        name, normalize_tool_args(function.get("arguments"))
                    )
                except Exception as e:
                    logger.warning("function_call_failed", function=name, error=str(e))
                    self.emit(
                        EventType.FUNCTION_CALL_ERROR,
                        AgentEventPayload(error=str(e), functionCall=function),
                    )
                    continue
                formatted = format_function_result(name, result, mapping)
                if formatted:
                    results.append(formatted)
            self.emit(EventType.FUNCTION_CALLS_PROCESSED, AgentEventPayload(results=results))

        new_info = "".join(f"{result}\n" for result in results) + (message.get("content") or "")
        logger.info(
            "gather_complete",
            tool_calls=len(tool_calls),
            results=len(results),
            mapping_size=len(mapping),
        )
        self.emit(
            EventType.GATHER_COMPLETE,
            AgentEventPayload(new_info=new_info, mapping=mapping.as_dict()),
        )
        return GatherResult(new_info=new_info, mapping=mapping)
