"""WebSocket handler for real-time event streaming.

This module streams coordinator events for a run to the frontend and
receives commands (stop, ping) from clients.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import AgentEvent, AgentEventPayload, EventType, get_event_bus

if TYPE_CHECKING:
    from run_manager import RunManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_run_manager: "RunManager | None" = None


def set_run_manager(manager: "RunManager | None") -> None:
    """Set the run manager used by WebSocket command handlers."""
    global _run_manager
    _run_manager = manager
    logger.info("websocket_run_manager_configured")


def get_run_manager() -> "RunManager":
    """Return configured run manager for WebSocket command handlers."""
    if _run_manager is None:
        raise RuntimeError(
            "RunManager not configured for WebSocket handlers. "
            "Call set_run_manager() during startup."
        )
    return _run_manager


@websocket_router.websocket("/ws/{run_id}")
async def websocket_endpoint(websocket: WebSocket, run_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: Coordinator and sub-agent events for the run
    - Client -> Server: Commands ({"type": "stop"}, {"type": "ping"})

    Args:
        websocket: The WebSocket connection.
        run_id: The run ID to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", run_id=run_id)

    event_bus = get_event_bus()

    # Subscribe before replaying history so no event published in between
    # is lost; duplicates are filtered by timestamp below.
    queue = event_bus.subscribe(run_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(run_id)
        if history:
            logger.info(
                "replaying_event_history",
                run_id=run_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.to_wire())
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", run_id=run_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", run_id=run_id, error=str(e))
                    return

        async def send_events() -> None:
            """Forward events from the event bus to the WebSocket client."""
            try:
                while True:
                    event = await queue.get()
                    # RUN_CLOSED is the sentinel from close_run; stop sending.
                    if event.type == EventType.RUN_CLOSED:
                        logger.info("run_closed_sentinel", run_id=run_id)
                        break

                    if event.timestamp <= last_replay_timestamp:
                        logger.debug(
                            "event_skipped_duplicate",
                            run_id=run_id,
                            event_type=event.type.value,
                        )
                        continue

                    await websocket.send_json(event.to_wire())
                    logger.debug("event_sent", run_id=run_id, event_type=event.type.value)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", run_id=run_id)
            except Exception as e:
                logger.error("websocket_send_error", run_id=run_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", run_id=run_id)
                        continue
                    command_type = data.get("type")

                    logger.info("command_received", run_id=run_id, command_type=command_type)

                    if command_type == "stop":
                        await handle_stop_command(run_id)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            run_id=run_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", run_id=run_id)
            except Exception as e:
                logger.error("websocket_receive_error", run_id=run_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Either side finishing (run closed or client gone) ends the connection
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if send_task in done:
            with contextlib.suppress(Exception):
                await websocket.close()

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", run_id=run_id)
    except Exception as e:
        logger.error("websocket_error", run_id=run_id, error=str(e))
    finally:
        event_bus.unsubscribe(run_id, queue)
        logger.info("websocket_cleanup_complete", run_id=run_id)


async def handle_stop_command(run_id: str) -> None:
    """Handle a stop command from the WebSocket client.

    Args:
        run_id: The run to stop.
    """
    logger.info("stop_command_processing", run_id=run_id)

    event_bus = get_event_bus()

    try:
        await get_run_manager().stop_run(run_id)
    except KeyError:
        logger.warning("stop_command_run_not_found", run_id=run_id)
        await event_bus.publish(
            AgentEvent(
                type=EventType.ERROR,
                run_id=run_id,
                payload=AgentEventPayload(error=f"Run {run_id} not found"),
            )
        )
    except Exception as e:
        logger.error("stop_command_failed", run_id=run_id, error=str(e))
        await event_bus.publish(
            AgentEvent(
                type=EventType.ERROR,
                run_id=run_id,
                payload=AgentEventPayload(error=str(e)),
            )
        )
