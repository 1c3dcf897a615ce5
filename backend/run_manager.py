"""Run manager for coordinator runs started through the API.

This module provides the RunManager class that owns WorkflowCoordinator runs
as background asyncio tasks, bridges their events onto the EventBus for
WebSocket streaming and persists run records through the RunStore.

Usage:
    >>> from events import get_event_bus
    >>> from run_manager import RunManager
    >>>
    >>> run_manager = RunManager(get_event_bus())
    >>> run_id = await run_manager.create_run(
    ...     context="I have a dentist appointment at 3pm.",
    ...     todo_list=["Schedule the dentist visit"],
    ... )
    >>> run_manager.get_run(run_id).status
    <RunStatus.RUNNING: 'running'>
    >>> await run_manager.stop_run(run_id)
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from agents.coordinator import WorkflowCoordinator
from events import AgentEvent, AgentEventPayload, EventBus, EventType
from models.database import RunStore
from models.schemas import RunStatus
from models.workflow import TodoList

logger = structlog.get_logger()

CoordinatorFactory = Callable[[str, TodoList], WorkflowCoordinator]

# Events that are bus-internal and never bridged from a coordinator.
_UNBRIDGED_EVENTS = frozenset({EventType.RUN_CLOSED})


@dataclass
class RunInfo:
    """Information about a coordinator run.

    Attributes:
        run_id: Unique identifier for the run (e.g., "run_abc123def456")
        context: Initial context the run was started with
        todo_list: Latest todo list committed by the coordinator
        status: Current run status
        created_at: Unix timestamp when the run was created
        rounds: Rounds completed so far
        completed_at: Unix timestamp when the run ended (None while running)
        error_message: Error text if status is "error"
        stop_requested: True once a stop was requested through the API
    """

    run_id: str
    context: str
    todo_list: TodoList
    status: RunStatus
    created_at: float
    coordinator: WorkflowCoordinator = field(repr=False)
    rounds: int = 0
    completed_at: float | None = None
    error_message: str | None = None
    stop_requested: bool = False


class RunManager:
    """Manages the lifecycle of coordinator runs.

    Thread Safety:
        The run registry is guarded by an asyncio.Lock; coordinator state is
        only touched from the run's own task.

    Attributes:
        event_bus: Event bus the coordinator events are bridged to
        run_store: Optional SQLite store for run records
    """

    def __init__(
        self,
        event_bus: EventBus,
        run_store: RunStore | None = None,
        coordinator_factory: CoordinatorFactory | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.run_store = run_store
        self._coordinator_factory = coordinator_factory or WorkflowCoordinator
        self._runs: dict[str, RunInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("run_manager_initialized")

    def _generate_run_id(self) -> str:
        return f"run_{uuid.uuid4().hex[:12]}"

    def _bridge_events(self, run_info: RunInfo) -> None:
        """Publish every coordinator event on the bus under the run's id."""
        coordinator = run_info.coordinator

        for event_type in EventType:
            if event_type in _UNBRIDGED_EVENTS:
                continue

            def bridge(payload: AgentEventPayload, event_type: EventType = event_type) -> None:
                if event_type == EventType.ROUND_END:
                    run_info.rounds = payload.round or run_info.rounds
                    run_info.todo_list = dict(payload.todo or run_info.todo_list)
                self.event_bus.publish_sync(
                    AgentEvent(
                        type=event_type,
                        run_id=run_info.run_id,
                        agent_role=coordinator.event_source or "Coordinator",
                        payload=payload,
                    )
                )

            coordinator.on(event_type, bridge)

    async def _persist(self, run_info: RunInfo) -> None:
        if self.run_store is None:
            return
        await self.run_store.update_run(
            run_info.run_id,
            run_info.status.value,
            rounds=run_info.rounds,
            todo_list=run_info.todo_list,
            error_message=run_info.error_message,
            completed_at=run_info.completed_at,
        )

    async def create_run(self, context: str, todo_list: list[str]) -> str:
        """Create a coordinator run and start it in the background.

        Args:
            context: Initial context for the coordinator
            todo_list: Todo item descriptions, all initially not done

        Returns:
            The new run id
        """
        run_id = self._generate_run_id()
        todo: TodoList = {task: False for task in todo_list}
        coordinator = self._coordinator_factory(context, todo)

        run_info = RunInfo(
            run_id=run_id,
            context=context,
            todo_list=todo,
            status=RunStatus.RUNNING,
            created_at=time.time(),
            coordinator=coordinator,
        )
        self._bridge_events(run_info)

        if self.run_store is not None:
            await self.run_store.save_run(
                run_id=run_id,
                context=context,
                todo_list=todo,
                status=run_info.status.value,
                created_at=run_info.created_at,
            )

        async with self._lock:
            self._runs[run_id] = run_info
            task = asyncio.create_task(self._run(run_info), name=f"run_{run_id}")
            self._tasks[run_id] = task

            def _remove_task(t: asyncio.Task[None], rid: str = run_id) -> None:
                self._tasks.pop(rid, None)

            task.add_done_callback(_remove_task)

        logger.info("run_created", run_id=run_id, todo_count=len(todo))
        return run_id

    async def _run(self, run_info: RunInfo) -> None:
        coordinator = run_info.coordinator
        try:
            final_state = await coordinator.run()
            run_info.rounds = final_state["round"]
            run_info.todo_list = dict(final_state["todo_list"])
            run_info.status = RunStatus.STOPPED if run_info.stop_requested else RunStatus.COMPLETE
            logger.info(
                "run_finished",
                run_id=run_info.run_id,
                status=run_info.status.value,
                rounds=run_info.rounds,
            )
        except asyncio.CancelledError:
            run_info.status = RunStatus.STOPPED
            logger.info("run_cancelled", run_id=run_info.run_id)
            raise
        except Exception as e:
            run_info.status = RunStatus.ERROR
            run_info.error_message = str(e)
            logger.error(
                "run_failed",
                run_id=run_info.run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        finally:
            run_info.completed_at = time.time()
            await self._persist(run_info)
            for agent in coordinator.agents:
                try:
                    await agent.aclose()
                except Exception as e:
                    logger.warning(
                        "agent_client_close_failed",
                        run_id=run_info.run_id,
                        agent=agent.role,
                        error=str(e),
                    )
            await self.event_bus.close_run(run_info.run_id)

    async def stop_run(self, run_id: str) -> RunInfo:
        """Request a cooperative stop; the current round runs to completion.

        Raises:
            KeyError: If the run does not exist
        """
        async with self._lock:
            run_info = self._runs.get(run_id)
            if run_info is None:
                raise KeyError(f"Run '{run_id}' not found")

        if run_info.status != RunStatus.RUNNING:
            logger.info("stop_run_noop_terminal_state", run_id=run_id, status=run_info.status.value)
            return run_info

        run_info.stop_requested = True
        run_info.coordinator.stop()
        logger.info("stop_run_requested", run_id=run_id, round=run_info.coordinator.round)
        return run_info

    def get_run(self, run_id: str) -> RunInfo | None:
        return self._runs.get(run_id)

    def get_all_runs(self) -> list[RunInfo]:
        return list(self._runs.values())

    @property
    def active_run_count(self) -> int:
        return sum(1 for run in self._runs.values() if run.status == RunStatus.RUNNING)

    async def wait_for_run(self, run_id: str) -> None:
        """Wait until a run's background task has finished."""
        task = self._tasks.get(run_id)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def cleanup_all(self) -> None:
        """Cancel every active run. Called on application shutdown."""
        logger.info("cleanup_all_start", run_count=len(self._runs))

        async with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()

        for run_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("cleanup_task_cancel_failed", run_id=run_id, error=str(e))

        logger.info("cleanup_all_complete")
