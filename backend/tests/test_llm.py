"""Tests for agents/llm.py -- argument normalization, code parsing and retries."""

from types import SimpleNamespace
from typing import Any

import pytest
from litellm.exceptions import AuthenticationError, RateLimitError

from agents.llm import (
    LLMClient,
    MockLLMClient,
    normalize_tool_args,
    parse_code_response,
    tool_calls_to_message,
)
from tests.conftest import make_llm_response, make_tool_call


def _model_response(content: str | None = "ok", tool_calls: Any = None) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
    )


def _rate_limited() -> RateLimitError:
    return RateLimitError(message="slow down", llm_provider="openai", model="gpt-4o-mini")


class ScriptedClient(LLMClient):
    """LLMClient whose transport replays ``outcomes`` (responses or exceptions)."""

    def __init__(self, outcomes: list[Any], **kwargs: Any) -> None:
        super().__init__(default_model="test-model", **kwargs)
        self.outcomes = list(outcomes)
        self.requests: list[dict[str, Any]] = []
        self.sleeps: list[float] = []

    async def _make_request(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def _async_sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


# =========================================================================
# normalize_tool_args
# =========================================================================


class TestNormalizeToolArgs:
    def test_dict_passthrough(self) -> None:
        args = {"task_id": "#1"}
        assert normalize_tool_args(args) is args

    def test_json_string_dict(self) -> None:
        assert normalize_tool_args('{"a": 1}') == {"a": 1}

    def test_json_string_non_dict_wrapped(self) -> None:
        assert normalize_tool_args("[1, 2]") == {"value": [1, 2]}

    def test_invalid_json_string_wrapped_as_raw(self) -> None:
        assert normalize_tool_args("{oops") == {"raw": "{oops"}

    def test_none_returns_empty_dict(self) -> None:
        assert normalize_tool_args(None) == {}

    def test_other_values_wrapped(self) -> None:
        assert normalize_tool_args(7) == {"value": 7}


# =========================================================================
# parse_code_response
# =========================================================================


class TestParseCodeResponse:
    def test_prose_then_fenced_block(self) -> None:
        content = (
            "1. Load the backlog\n2. Return titles\n"
            "```python\ntasks = await get_backlog_tasks()\nreturn tasks\n```\n"
            "Let me know if that helps."
        )
        pseudo_code, code = parse_code_response(content)
        assert pseudo_code == "1. Load the backlog\n2. Return titles"
        assert code == "tasks = await get_backlog_tasks()\nreturn tasks"

    def test_bare_fence(self) -> None:
        assert parse_code_response("```\nreturn 1\n```") == ("", "return 1")

    def test_only_first_block_is_code(self) -> None:
        _, code = parse_code_response("```py\nreturn 1\n```\n```py\nreturn 2\n```")
        assert code == "return 1"

    def test_unfenced_text_is_code(self) -> None:
        assert parse_code_response("  return 42\n") == ("", "return 42")


# =========================================================================
# tool_calls_to_message
# =========================================================================


class TestToolCallsToMessage:
    def test_openai_format(self) -> None:
        message = tool_calls_to_message(
            "", [make_tool_call("move_task", {"task_id": "#2", "new_date": "2026-10-20"})]
        )
        assert message == {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": "tc_1",
                    "type": "function",
                    "function": {
                        "name": "move_task",
                        "arguments": '{"task_id": "#2", "new_date": "2026-10-20"}',
                    },
                }
            ],
        }

    def test_content_kept(self) -> None:
        assert tool_calls_to_message("Thinking", [])["content"] == "Thinking"


# =========================================================================
# LLMClient
# =========================================================================


class TestLLMClient:
    async def test_parses_content_and_tool_calls(self) -> None:
        tool_call = SimpleNamespace(
            id="call_1",
            function=SimpleNamespace(name="get_backlog_tasks", arguments="{}"),
        )
        client = ScriptedClient([_model_response(content=None, tool_calls=[tool_call])])

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == ""
        assert response.tool_calls[0].name == "get_backlog_tasks"
        assert response.tool_calls[0].args == {}
        assert response.usage is not None
        assert response.usage.input_tokens == 12
        assert client.requests[0]["model"] == "test-model"

    async def test_retries_transient_errors_with_backoff(self) -> None:
        client = ScriptedClient(
            [_rate_limited(), _rate_limited(), _model_response("done")],
            retry_attempts=3,
            retry_delay=1.0,
        )

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == "done"
        assert client.sleeps == [1.0, 2.0]

    async def test_gives_up_after_retries(self) -> None:
        client = ScriptedClient([_rate_limited(), _rate_limited()], retry_attempts=1)
        with pytest.raises(RateLimitError):
            await client.call([{"role": "user", "content": "hi"}])
        assert len(client.requests) == 2

    async def test_auth_errors_are_not_retried(self) -> None:
        error = AuthenticationError(message="bad key", llm_provider="openai", model="m")
        client = ScriptedClient([error, _model_response()], retry_attempts=3)
        with pytest.raises(AuthenticationError):
            await client.call([{"role": "user", "content": "hi"}])
        assert client.sleeps == []


# =========================================================================
# MockLLMClient
# =========================================================================


class TestMockLLMClient:
    async def test_replays_and_records(self) -> None:
        client = MockLLMClient([make_llm_response("first"), make_llm_response("second")])

        first = await client.call([{"role": "user", "content": "a"}], tool_choice="required")
        second = await client.call([{"role": "user", "content": "b"}])

        assert (first.content, second.content) == ("first", "second")
        assert client.call_history[0]["tool_choice"] == "required"

    async def test_exhausted(self) -> None:
        client = MockLLMClient([])
        with pytest.raises(IndexError):
            await client.call([])

    async def test_reset(self) -> None:
        client = MockLLMClient([make_llm_response("only")])
        await client.call([])
        client.reset()
        assert (await client.call([])).content == "only"
