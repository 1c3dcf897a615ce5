"""Async event bus fanning coordinator events out to WebSocket consumers.

The coordinator emits events synchronously through its EventEmitter; the
RunManager bridges them onto this bus, which delivers them to any number of
subscribers per run via asyncio.Queue.

The event bus supports:
- Multiple subscribers per run
- Buffering of events published before the first subscriber connects
- Bounded per-run history for replay on reconnect
- Run lifecycle management (close_run terminates all subscribers)
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for coordinator events.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately. This covers the window between starting a
        run and the UI opening its WebSocket.

    Thread Safety:
        Registry access is guarded by a threading.Lock. Queue puts always
        happen on the event loop thread.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> bus.publish_sync(AgentEvent(type=EventType.ROUND_START, run_id="run_123"))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")
    """

    # Maximum number of events to retain per run for replay on reconnect.
    MAX_HISTORY_PER_RUN = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a run.

        Buffered events (published before any subscriber connected) are
        delivered to the new queue immediately.

        Args:
            run_id: The run to subscribe to

        Returns:
            An asyncio.Queue that receives AgentEvent objects
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        buffered_events: list[AgentEvent] = []

        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])
            if run_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(run_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Remove a queue from a run's subscribers. Unknown queues are a no-op."""
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues:
                return
            try:
                queues.remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            if not queues:
                del self._subscribers[run_id]
            logger.info(
                "subscriber_removed",
                run_id=run_id,
                subscriber_count=len(queues),
            )

    def _record(self, event: AgentEvent) -> list[asyncio.Queue[AgentEvent]]:
        """Store history and return the current subscribers (buffering if none).

        Must be called with the lock held.
        """
        if event.type != EventType.RUN_CLOSED:
            history = self._event_history[event.run_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_RUN:
                self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

        subscribers = list(self._subscribers.get(event.run_id, []))
        if not subscribers:
            self._event_buffer[event.run_id].append(event)
            logger.debug(
                "event_buffered",
                run_id=event.run_id,
                event_type=event.type.value,
                buffer_size=len(self._event_buffer[event.run_id]),
            )
        return subscribers

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers for its run.

        Events without subscribers are buffered. Every event except the
        RUN_CLOSED sentinel is also kept in the run's history.

        Args:
            event: The AgentEvent to publish
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)
        if not subscribers:
            return

        # Bounded wait so a stalled consumer cannot block the run
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    run_id=event.run_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def publish_sync(self, event: AgentEvent) -> None:
        """Publish from synchronous code such as EventEmitter listeners.

        asyncio.Queue is not thread-safe, so a caller off the bus loop has the
        put scheduled on it with call_soon_threadsafe. On the loop thread the
        put happens immediately, keeping order with a later close_run().

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop
        if not subscribers:
            return

        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if loop is not None and loop is not running_loop and not loop.is_closed():
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                queue.put_nowait(event)

        logger.debug(
            "event_published_sync",
            run_id=event.run_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, run_id: str) -> list[AgentEvent]:
        """Return stored events for a run in chronological order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Close a run and notify all subscribers.

        Each subscriber queue receives a RUN_CLOSED sentinel so its reader can
        exit cleanly. Buffered events are dropped; history is preserved for
        late reconnects.

        Args:
            run_id: The run to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            buffered = self._event_buffer.pop(run_id, [])

        for queue in queues_to_signal:
            await queue.put(AgentEvent(type=EventType.RUN_CLOSED, run_id=run_id))

        logger.info(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def clear_event_history(self, run_id: str) -> None:
        """Forget stored history for a run that is fully gone."""
        with self._lock:
            self._event_history.pop(run_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
