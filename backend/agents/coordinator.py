"""Round-based workflow coordinator as a LangGraph state graph.

Each round decides a phase, delegates to the matching sub-agent and commits
the returned delta to the workflow state:

    START -> [continue -> start_round | end -> finish]
    start_round -> gather | build_plan | execute | execute_code  (by decision)
    <phase> -> end_round -> [continue -> start_round | limit -> round_limit | end -> finish]
    round_limit -> finish -> END

The coordinator is the only writer of the state. Sub-agent events are
re-emitted on the coordinator stamped with the round that is current when
they are forwarded.

Events emitted:
- ROUND_START, PHASE_DECISION, ROUND_END: Per-round lifecycle
- ROUND_LIMIT: The round cap stopped the run
- STOP: A stop was requested
- FINISHED: The loop exited
- ERROR: Decide or a phase sub-agent raised (the exception propagates)
"""

from datetime import date
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.base import SubAgent
from agents.decide_agent import DecideAgent
from agents.execute_agent import ExecuteAgent
from agents.execute_code_agent import ExecuteCodeAgent
from agents.gather_agent import GatherAgent
from agents.plan_agent import PlanAgent
from config import settings
from events.emitter import EventEmitter, Listener
from events.types import AgentEventPayload, EventType
from models.workflow import ActionPlanItem, AgentPhase, IdMapping, TodoList, is_finished

logger = structlog.get_logger()

# Graph steps per round: start_round, the phase node and end_round.
_STEPS_PER_ROUND = 3


class CoordinatorBusyError(RuntimeError):
    """Raised when run() is called while a run is already in progress."""


class WorkflowState(TypedDict):
    """State threaded through every node of the round graph.

    Attributes:
        context: Initial context plus everything gathered so far
        todo_list: Task description -> done flag
        action_plan: Plan awaiting execution
        round: Number of the current (or last) round
        results: One line per execute / execute_code outcome
        mapping: Short id table for entities seen in the context
        decision: Phase chosen for the current round
        reason: Decide agent's explanation for ``decision``
    """

    context: str
    todo_list: TodoList
    action_plan: list[ActionPlanItem]
    round: int
    results: list[str]
    mapping: IdMapping
    decision: AgentPhase | None
    reason: str


def merge_todo_results(todo_list: TodoList, results: dict[str, bool]) -> TodoList:
    """Mark every todo item done when all execution results are truthy.

    An empty result map changes nothing, and an item that is already done
    is never reset.
    """
    if not results or not all(results.values()):
        return dict(todo_list)
    return {task: True for task in todo_list}


def summarize_results(round_number: int, results: dict[str, bool]) -> str:
    if not results:
        return f"Round {round_number} execute: no todo items were reported."
    verdicts = ", ".join(
        f"{task}: {'done' if done else 'not done'}" for task, done in results.items()
    )
    return f"Round {round_number} execute: {verdicts}"


class WorkflowCoordinator(EventEmitter):
    """Drives the decide / gather / build_plan / execute / execute_code loop.

    Usage:
        >>> coordinator = WorkflowCoordinator(
        ...     "I have a dentist appointment at 3pm.",
        ...     {"Schedule the dentist visit": False},
        ... )
        >>> coordinator.on(EventType.ROUND_END, print)
        >>> await coordinator.run()

    A sub-agent instance must not be shared between coordinators: the
    coordinator subscribes to it at construction and stamps its events with
    its own round number.
    """

    def __init__(
        self,
        initial_context: str,
        todo_list: TodoList,
        *,
        gather_agent: GatherAgent | None = None,
        plan_agent: PlanAgent | None = None,
        execute_agent: ExecuteAgent | None = None,
        execute_code_agent: ExecuteCodeAgent | None = None,
        decide_agent: DecideAgent | None = None,
        mapping: IdMapping | dict[str, int] | None = None,
        max_rounds: int | None = None,
        today: date | None = None,
    ) -> None:
        super().__init__()
        self.gather_agent = gather_agent or GatherAgent()
        self.plan_agent = plan_agent or PlanAgent()
        self.execute_agent = execute_agent or ExecuteAgent()
        self.execute_code_agent = execute_code_agent or ExecuteCodeAgent()
        self.decide_agent = decide_agent or DecideAgent()
        if max_rounds is None:
            max_rounds = settings.max_rounds
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.max_rounds = max_rounds

        if isinstance(mapping, dict):
            mapping = IdMapping.from_dict(mapping)

        today = today or date.today()
        self._state: WorkflowState = {
            "context": f"{initial_context}\nToday's date is {today.isoformat()}.",
            "todo_list": dict(todo_list),
            "action_plan": [],
            "round": 0,
            "results": [],
            "mapping": mapping or IdMapping(),
            "decision": None,
            "reason": "",
        }
        self._stop_requested = False
        self._running = False
        self._event_source: str | None = None

        for agent in self.agents:
            self._forward_events(agent)

        self._compiled_graph = self._build_graph()

    @property
    def agents(self) -> tuple[SubAgent, ...]:
        return (
            self.decide_agent,
            self.gather_agent,
            self.plan_agent,
            self.execute_agent,
            self.execute_code_agent,
        )

    @property
    def state(self) -> WorkflowState:
        """Snapshot of the committed workflow state."""
        return {
            **self._state,
            "todo_list": dict(self._state["todo_list"]),
            "action_plan": [item.model_copy(deep=True) for item in self._state["action_plan"]],
            "results": list(self._state["results"]),
            "mapping": self._state["mapping"].copy(),
        }

    @property
    def event_source(self) -> str | None:
        """Role of the sub-agent whose event is being re-emitted, None otherwise."""
        return self._event_source

    @property
    def round(self) -> int:
        return self._state["round"]

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def is_running(self) -> bool:
        return self._running

    # -----------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------

    def _forward_events(self, agent: SubAgent) -> None:
        for event in agent.events:
            agent.on(event, self._forwarder(agent, event))

    def _forwarder(self, agent: SubAgent, event: EventType) -> Listener:
        def forward(payload: AgentEventPayload) -> None:
            if payload.round is None:
                payload = payload.model_copy(update={"round": self._state["round"]})
            previous = self._event_source
            self._event_source = agent.role
            try:
                self.emit(event, payload)
            finally:
                self._event_source = previous

        return forward

    def _snapshot_payload(self, **extra: Any) -> AgentEventPayload:
        state = self._state
        return AgentEventPayload(
            round=state["round"],
            context=state["context"],
            todo=dict(state["todo_list"]),
            plan=list(state["action_plan"]),
            **extra,
        )

    def _commit(self, **updates: Any) -> dict[str, Any]:
        """Apply a node's updates to the committed state and return them."""
        self._state.update(updates)
        return updates

    def _fail(self, error: Exception) -> None:
        logger.error(
            "round_failed",
            round=self._state["round"],
            decision=self._state["decision"],
            error_type=type(error).__name__,
            error=str(error),
        )
        self.emit(
            EventType.ERROR,
            AgentEventPayload(
                round=self._state["round"],
                error=str(error),
                todo=dict(self._state["todo_list"]),
                context=self._state["context"],
            ),
        )

    # -----------------------------------------------------------------
    # Graph
    # -----------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(WorkflowState)

        graph.add_node("start_round", self._start_round)
        graph.add_node(AgentPhase.GATHER.value, self._gather)
        graph.add_node(AgentPhase.BUILD_PLAN.value, self._build_plan)
        graph.add_node(AgentPhase.EXECUTE.value, self._execute)
        graph.add_node(AgentPhase.EXECUTE_CODE.value, self._execute_code)
        graph.add_node("end_round", self._end_round)
        graph.add_node("round_limit", self._round_limit)
        graph.add_node("finish", self._finish)

        graph.add_conditional_edges(
            START,
            self._should_continue,
            {"continue": "start_round", "limit": "round_limit", "end": "finish"},
        )
        graph.add_conditional_edges(
            "start_round",
            self._route_decision,
            {phase.value: phase.value for phase in AgentPhase},
        )
        for phase in AgentPhase:
            graph.add_edge(phase.value, "end_round")
        graph.add_conditional_edges(
            "end_round",
            self._should_continue,
            {"continue": "start_round", "limit": "round_limit", "end": "finish"},
        )
        graph.add_edge("round_limit", "finish")
        graph.add_edge("finish", END)

        return graph.compile()

    def _should_continue(self, state: WorkflowState) -> Literal["continue", "limit", "end"]:
        if is_finished(state["todo_list"]) or self._stop_requested:
            return "end"
        if state["round"] >= self.max_rounds:
            return "limit"
        return "continue"

    def _route_decision(self, state: WorkflowState) -> str:
        return AgentPhase(state["decision"]).value

    async def _start_round(self, state: WorkflowState) -> dict[str, Any]:
        round_number = state["round"] + 1
        self._commit(round=round_number, decision=None, reason="")
        self.emit(
            EventType.ROUND_START,
            self._snapshot_payload(results="\n".join(state["results"])),
        )
        logger.info("round_started", round=round_number)

        try:
            decision = await self.decide_agent.decide(
                state["todo_list"],
                state["action_plan"],
                state["context"],
                "\n".join(state["results"]),
            )
        except Exception as e:
            self._fail(e)
            raise

        self.emit(
            EventType.PHASE_DECISION,
            AgentEventPayload(
                round=round_number,
                decision=decision.decision,
                reason=decision.reason,
            ),
        )
        logger.info("phase_decided", round=round_number, decision=decision.decision.value)
        return self._commit(
            round=round_number,
            decision=decision.decision,
            reason=decision.reason,
        )

    async def _gather(self, state: WorkflowState) -> dict[str, Any]:
        try:
            result = await self.gather_agent.gather(
                state["context"], state["todo_list"], state["mapping"]
            )
        except Exception as e:
            self._fail(e)
            raise
        return self._commit(
            context=state["context"] + result.new_info,
            mapping=result.mapping,
        )

    async def _build_plan(self, state: WorkflowState) -> dict[str, Any]:
        try:
            plan = await self.plan_agent.build_plan(state["context"], state["todo_list"])
        except Exception as e:
            self._fail(e)
            raise
        return self._commit(action_plan=plan)

    async def _execute(self, state: WorkflowState) -> dict[str, Any]:
        try:
            results = await self.execute_agent.execute(
                state["todo_list"],
                state["action_plan"],
                state["mapping"],
                state["round"],
            )
        except Exception as e:
            self._fail(e)
            raise
        return self._commit(
            todo_list=merge_todo_results(state["todo_list"], results),
            action_plan=[],
            results=state["results"] + [summarize_results(state["round"], results)],
        )

    async def _execute_code(self, state: WorkflowState) -> dict[str, Any]:
        try:
            result = await self.execute_code_agent.execute_code(
                state["round"],
                state["context"],
                state["todo_list"],
                state["mapping"],
            )
        except Exception as e:
            self._fail(e)
            raise
        updates = self._commit(
            action_plan=[],
            results=state["results"] + [result.new_info],
        )
        # Generated code is expected to finish the todo list in one go.
        self.stop()
        return updates

    async def _end_round(self, state: WorkflowState) -> dict[str, Any]:
        self.emit(EventType.ROUND_END, self._snapshot_payload())
        logger.info(
            "round_completed",
            round=state["round"],
            decision=state["decision"],
            pending=sum(1 for done in state["todo_list"].values() if not done),
        )
        return {}

    async def _round_limit(self, state: WorkflowState) -> dict[str, Any]:
        logger.warning("round_limit_reached", round=state["round"], max_rounds=self.max_rounds)
        self.emit(EventType.ROUND_LIMIT, self._snapshot_payload())
        return {}

    async def _finish(self, state: WorkflowState) -> dict[str, Any]:
        self.emit(EventType.FINISHED, self._snapshot_payload())
        logger.info(
            "workflow_finished",
            rounds=state["round"],
            stopped=self._stop_requested,
            all_done=is_finished(state["todo_list"]),
        )
        return {}

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def run(self) -> WorkflowState:
        """Run rounds until the todo list is done, a stop is requested or the cap is hit.

        Returns:
            Snapshot of the final state.

        Raises:
            CoordinatorBusyError: If a run is already in progress.
            Exception: Whatever Decide or a phase sub-agent raised, after the
                ERROR event has been emitted.
        """
        if self._running:
            raise CoordinatorBusyError("A run is already in progress on this coordinator")

        self._running = True
        try:
            await self._compiled_graph.ainvoke(
                self.state,
                config={"recursion_limit": (self.max_rounds + 1) * _STEPS_PER_ROUND},
            )
        finally:
            self._running = False
        return self.state

    def stop(self) -> None:
        """Request that no further round starts.

        The round in progress, including any in-flight sub-agent call, runs
        to completion.
        """
        self.emit(EventType.STOP, self._snapshot_payload())
        self._stop_requested = True
        logger.info("stop_requested", round=self._state["round"])
