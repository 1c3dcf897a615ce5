"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a temporary TaskStore, scripted LLM responses
and HTTP clients backed by httpx.MockTransport so tests never touch real
LLM APIs or the configured database.
"""

import json
import os
import sys
from collections.abc import AsyncGenerator, Callable
from datetime import date
from typing import Any

import httpx
import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

# Use litellm's bundled model cost map instead of fetching it over the
# network at import time (offline fetch failures can deadlock the import).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from agents.llm import LLMResponse, ToolCallData  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.emitter import EventEmitter  # noqa: E402
from events.types import AgentEventPayload, EventType  # noqa: E402
from models.task_store import TaskStore, set_task_store  # noqa: E402

TODAY = date(2026, 10, 19)

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Task Store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def task_store(tmp_path: Any) -> AsyncGenerator[TaskStore, None]:
    """A TaskStore on a temporary database whose "today" is fixed.

    It is also installed as the process-wide store for the duration of the
    test, so endpoints and agents built without an explicit store use it.
    """
    store = TaskStore(str(tmp_path / "tasks.db"), today=lambda: TODAY)
    await store.init()
    set_task_store(store)
    yield store
    set_task_store(None)


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


def make_message(
    content: str | None = None,
    tool_calls: list[tuple[str, dict[str, Any]]] | None = None,
) -> dict[str, Any]:
    """Create an agent endpoint ``{"message": ...}`` body in OpenAI format."""
    return {
        "message": {
            "role": "assistant",
            "content": content,
            "tool_calls": [
                {
                    "id": f"call_{index}",
                    "type": "function",
                    "function": {"name": name, "arguments": json.dumps(args)},
                }
                for index, (name, args) in enumerate(tool_calls or [])
            ],
        }
    }


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

Route = dict[str, Any] | tuple[int, dict[str, Any]] | Callable[[dict[str, Any]], Any]


class RecordingTransport(httpx.MockTransport):
    """MockTransport answering POSTs by path from a route table.

    A route value is a JSON body (status 200), a ``(status, body)`` tuple or
    a callable taking the decoded request body. Every request is recorded
    in ``requests`` as ``(path, body)``.
    """

    def __init__(self, routes: dict[str, Route]) -> None:
        self.routes = routes
        self.requests: list[tuple[str, dict[str, Any]]] = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body))
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        if callable(route):
            route = route(body)
        if isinstance(route, tuple):
            status_code, payload = route
            return httpx.Response(status_code, json=payload)
        return httpx.Response(200, json=route)

    def bodies(self, path: str) -> list[dict[str, Any]]:
        return [body for request_path, body in self.requests if request_path == path]


def make_agent_client(transport: httpx.MockTransport) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=transport, base_url="http://planner.test")


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


def record_events(
    emitter: EventEmitter,
    event_types: Any = None,
) -> list[tuple[EventType, AgentEventPayload]]:
    """Subscribe to ``event_types`` (all by default) and collect emissions in order."""
    recorded: list[tuple[EventType, AgentEventPayload]] = []
    for event_type in event_types or EventType:

        def listener(payload: AgentEventPayload, event_type: EventType = event_type) -> None:
            recorded.append((event_type, payload))

        emitter.on(event_type, listener)
    return recorded
