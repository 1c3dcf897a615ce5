"""Event system for planner agent communication.

Two layers:

- EventEmitter: synchronous observer registry. Sub-agents emit lifecycle
  events on it; the WorkflowCoordinator subscribes to its sub-agents and
  re-emits their events stamped with the current round.
- EventBus: async pub/sub keyed by run id. The RunManager bridges coordinator
  events onto it and WebSocket handlers drain per-subscriber queues.

Usage:
    >>> from events import EventBus, EventType, AgentEvent, AgentEventPayload
    >>>
    >>> bus = EventBus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(AgentEvent(
    ...     type=EventType.PHASE_DECISION,
    ...     run_id="run_123",
    ...     payload=AgentEventPayload(round=1, decision="gather"),
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.emitter import EventEmitter, Listener
from events.types import (
    AgentEvent,
    AgentEventPayload,
    EventType,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    "AgentEventPayload",
    # Emitter
    "EventEmitter",
    "Listener",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
