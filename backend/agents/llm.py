"""LLM client used by the agent endpoints.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic and exponential backoff
- MockLLMClient: Scripted client for tests
- normalize_tool_args: Coerce raw tool-call arguments into a dict
- parse_code_response: Split a write-code completion into pseudo-code and code
- tool_calls_to_message: Render tool calls in OpenAI message format
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings

logger = structlog.get_logger()

# "auto", "required", "none" or a forced {"type": "function", ...} choice.
ToolChoice = str | dict[str, Any]


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). This helper guarantees downstream dispatch
    always receives a dict-like payload.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the function to call
        args: Arguments to pass to the function
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        usage: Token usage and latency
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str = "stop"
    usage: LLMUsage | None = None
    raw_response: ModelResponse | None = field(default=None, repr=False)


def tool_calls_to_message(content: str, tool_calls: list[ToolCallData]) -> dict[str, Any]:
    """Render an assistant message with tool calls in OpenAI wire format.

    Arguments are re-serialized to JSON strings, matching what the
    completions API returns.
    """
    return {
        "role": "assistant",
        "content": content or None,
        "tool_calls": [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ],
    }


_LANGUAGE_TAG = re.compile(r"^(?:python3?|py)?[ \t]*\n")


def parse_code_response(content: str) -> tuple[str, str]:
    """Split a write-code completion into ``(pseudo_code, code)``.

    The model is asked for prose followed by one fenced code block. The text
    before the first fence is the pseudo-code and the first fenced block is
    the code (minus any language tag). A response without a complete fence is
    treated as code only.
    """
    parts = content.split("```")
    if len(parts) >= 3:
        return parts[0].strip(), _LANGUAGE_TAG.sub("", parts[1], count=1).strip()

    logger.warning("code_response_unfenced", content_preview=content[:80])
    return "", content.strip()


class LLMClient:
    """Wrapper around LiteLLM with retry logic.

    The LLMClient provides:
    - Multi-provider support via LiteLLM
    - Automatic retry on transient failures with exponential backoff
    - Tool calling with configurable tool_choice
    - Token counting and latency tracking in logs

    Attributes:
        default_model: Default model to use if not specified
        retry_attempts: Number of retry attempts for failed calls
        retry_delay: Base delay between retry attempts in seconds
    """

    def __init__(
        self,
        default_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize the LLM client.

        Args:
            default_model: Model to use if not specified in calls
            retry_attempts: Number of retries (defaults to config llm_max_retries)
            retry_delay: Base seconds between retries (exponential backoff applied)
        """
        self.default_model = default_model or settings.default_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retry logic.

        Retries on: RateLimitError (429), ServiceUnavailableError (500/502/503),
        Timeout errors.
        Does NOT retry on: AuthenticationError (401/403), BadRequestError (400),
        or other 4xx errors.

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            tool_choice: How the model may use tools (defaults to "auto")
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature, provider default when None
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse with content and tool calls

        Raises:
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            Exception: After all retries are exhausted
        """
        model = model or self.default_model
        start_time = time.time()
        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    tool_choice=tool_choice,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )

                latency_ms = int((time.time() - start_time) * 1000)
                llm_response = self._parse_response(response, model, latency_ms)

                logger.info(
                    "llm_call_complete",
                    model=model,
                    input_tokens=llm_response.usage.input_tokens if llm_response.usage else 0,
                    output_tokens=llm_response.usage.output_tokens if llm_response.usage else 0,
                    latency_ms=latency_ms,
                    tool_calls=len(llm_response.tool_calls),
                    attempt=attempt + 1,
                )
                return llm_response

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)  # Cap backoff at 4s
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        raise last_exception or Exception("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
        model: str,
        temperature: float | None,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice or "auto"

        if temperature is not None:
            kwargs["temperature"] = temperature

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        kwargs["timeout"] = settings.llm_request_timeout_seconds

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            usage=LLMUsage(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
            ),
            raw_response=response,
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.
        """
        await asyncio.sleep(seconds)


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Usage:
        >>> client = MockLLMClient(responses=[LLMResponse(content="Hello", tool_calls=[])])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return the next predefined response, recording the call.

        Raises:
            IndexError: If no more responses available
        """
        self.call_history.append({
            "messages": messages,
            "tools": tools,
            "tool_choice": tool_choice,
            "model": model or self.default_model,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
