"""Synchronous observer registry used by the sub-agents and the coordinator.

Listeners are plain callables invoked in registration order on the emitting
coroutine, before ``emit`` returns. This keeps event order aligned with the
state mutation that triggered it: a listener always observes the state the
emitter had at the moment of emission.
"""

from collections import defaultdict
from collections.abc import Callable

import structlog

from events.types import AgentEventPayload, EventType

logger = structlog.get_logger()

Listener = Callable[[AgentEventPayload], None]


class _Once:
    """Registration entry for a listener added with ``once``."""

    __slots__ = ("listener",)

    def __init__(self, listener: Listener) -> None:
        self.listener = listener


class EventEmitter:
    """Minimal observer interface keyed by EventType.

    Usage:
        >>> emitter = EventEmitter()
        >>> seen = []
        >>> emitter.on(EventType.ROUND_START, seen.append)
        >>> emitter.emit(EventType.ROUND_START, AgentEventPayload(round=1))
        True
        >>> seen[0].round
        1

    A listener that raises is logged and skipped; the remaining listeners
    still run and the emitter never sees the exception.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener | _Once]] = defaultdict(list)

    def on(self, event: EventType, listener: Listener) -> Listener:
        """Register ``listener`` for every future ``event``."""
        self._listeners[event].append(listener)
        return listener

    def once(self, event: EventType, listener: Listener) -> Listener:
        """Register ``listener`` for the next ``event`` only.

        Each call is a separate registration that is dropped once it fires.
        """
        self._listeners[event].append(_Once(listener))
        return listener

    def off(self, event: EventType, listener: Listener) -> None:
        """Remove the earliest registration of ``listener``. Unknown listeners are ignored."""
        entries = self._listeners.get(event)
        if not entries:
            return
        for index, entry in enumerate(entries):
            target = entry.listener if isinstance(entry, _Once) else entry
            if target == listener:
                del entries[index]
                return

    def listener_count(self, event: EventType) -> int:
        return len(self._listeners.get(event, []))

    def _discard(self, event: EventType, entry: _Once) -> None:
        entries = self._listeners.get(event, [])
        for index, current in enumerate(entries):
            if current is entry:
                del entries[index]
                return

    def emit(self, event: EventType, payload: AgentEventPayload | None = None) -> bool:
        """Dispatch ``payload`` to the listeners of ``event``.

        Returns:
            True if at least one listener was registered.
        """
        entries = list(self._listeners.get(event, []))
        if not entries:
            return False

        payload = payload or AgentEventPayload()
        for entry in entries:
            if isinstance(entry, _Once):
                self._discard(event, entry)
                listener = entry.listener
            else:
                listener = entry
            try:
                listener(payload)
            except Exception as e:
                logger.warning(
                    "event_listener_failed",
                    event_type=event.value,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                )
        return True
