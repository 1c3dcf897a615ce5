"""Common plumbing for the workflow sub-agents.

Each sub-agent wraps one POST to an agent endpoint and reports its progress
through EventEmitter events. A non-2xx response emits the agent's error event
and raises AgentRequestError; there are no retries at this layer.
"""

from typing import Any, NoReturn

import httpx
import structlog

from config import settings
from events.emitter import EventEmitter
from events.types import AgentEventPayload, EventType

logger = structlog.get_logger()

# Base URL used for in-process requests through the ASGI transport.
_LOCAL_BASE_URL = "http://planner.local"


class AgentRequestError(RuntimeError):
    """Raised when an agent endpoint returns a failure.

    Attributes:
        endpoint: Path that was requested (e.g. "/api/agent/gather").
        status_code: HTTP status, or None when no response was received.
        message: Error text reported by the endpoint.
    """

    def __init__(self, endpoint: str, status_code: int | None, message: str) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_agent_client(
    base_url: str | None = None,
    timeout: float | None = None,
) -> httpx.AsyncClient:
    """Create the HTTP client the sub-agents post through.

    With no base URL configured the client is bound to the FastAPI app via
    ``httpx.ASGITransport``, so requests never leave the process.
    """
    base_url = base_url if base_url is not None else settings.agent_api_base_url
    if timeout is None:
        timeout = settings.agent_request_timeout_seconds

    if base_url:
        return httpx.AsyncClient(base_url=base_url, timeout=timeout)

    from main import app

    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url=_LOCAL_BASE_URL,
        timeout=timeout,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return response.text


class SubAgent(EventEmitter):
    """Base class for the Decide, Gather, Plan, Execute and ExecuteCode agents.

    Subclasses declare the events they may emit in ``events`` (the
    coordinator forwards exactly those) and the one emitted on failure in
    ``error_event``.
    """

    role: str = "Agent"
    events: tuple[EventType, ...] = ()
    error_event: EventType = EventType.ERROR

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        super().__init__()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_agent_client()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def fail(self, endpoint: str, status_code: int | None, message: str) -> NoReturn:
        """Emit the error event and raise AgentRequestError."""
        logger.warning(
            "agent_request_failed",
            agent=self.role,
            endpoint=endpoint,
            status_code=status_code,
            error=message,
        )
        self.emit(self.error_event, AgentEventPayload(error=message))
        raise AgentRequestError(endpoint, status_code, message)

    async def post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST ``body`` as JSON and return the decoded response.

        Raises:
            AgentRequestError: On a transport failure or a non-2xx response.
        """
        try:
            response = await self.client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            self.fail(endpoint, None, f"{type(e).__name__}: {e}")

        if not response.is_success:
            self.fail(endpoint, response.status_code, _error_message(response))

        try:
            data = response.json()
        except ValueError:
            self.fail(endpoint, response.status_code, "Response body is not JSON")
        if not isinstance(data, dict):
            self.fail(endpoint, response.status_code, "Response body is not an object")
        return data
