"""Tests for agents/coordinator.py -- the round-based workflow graph.

Sub-agents are replaced by scripted subclasses so the tests exercise the
coordinator's dispatch, state commits and event forwarding without any
HTTP or LLM traffic. The failure scenario uses the real DecideAgent behind
an httpx.MockTransport.
"""

import asyncio
from datetime import date
from typing import Any

import pytest

from agents.base import AgentRequestError
from agents.coordinator import (
    CoordinatorBusyError,
    WorkflowCoordinator,
    merge_todo_results,
    summarize_results,
)
from agents.decide_agent import DECIDE_ENDPOINT, DecideAgent
from agents.execute_agent import CHECK_RESULTS_ENDPOINT, ExecuteAgent
from agents.execute_code_agent import ExecuteCodeAgent
from agents.gather_agent import GatherAgent
from agents.plan_agent import PlanAgent
from config import settings
from events.types import AgentEventPayload, EventType
from models.task_store import TaskStore
from models.workflow import (
    ActionPlanItem,
    AgentPhase,
    DecideResult,
    ExecuteCodeResult,
    GatherResult,
    IdMapping,
    TodoList,
)
from tests.conftest import RecordingTransport, make_agent_client, record_events

INITIAL_CONTEXT = "I have a dentist appointment at 3pm."
TODAY = date(2026, 10, 19)
CONTEXT = f"{INITIAL_CONTEXT}\nToday's date is 2026-10-19."

# ---------------------------------------------------------------------------
# Scripted sub-agents
# ---------------------------------------------------------------------------


class ScriptedDecide(DecideAgent):
    """Returns the scripted phases in order, repeating the last one."""

    def __init__(self, *decisions: AgentPhase | Exception) -> None:
        super().__init__()
        self.decisions = list(decisions)
        self.calls: list[dict[str, Any]] = []

    async def decide(
        self,
        todo_list: TodoList,
        plan: list[ActionPlanItem],
        context: str,
        results: str,
    ) -> DecideResult:
        self.calls.append(
            {"todo_list": dict(todo_list), "plan": list(plan), "context": context, "results": results}
        )
        self.emit(EventType.DECIDE_START, AgentEventPayload(todo=dict(todo_list)))
        decision = self.decisions.pop(0) if len(self.decisions) > 1 else self.decisions[0]
        if isinstance(decision, Exception):
            raise decision
        return DecideResult(decision=decision, reason=f"chose {decision.value}")


class ScriptedGather(GatherAgent):
    def __init__(self, new_info: str = "X", mapping: dict[str, int] | None = None) -> None:
        super().__init__(store=object())  # type: ignore[arg-type]
        self.new_info = new_info
        self.mapping = mapping if mapping is not None else {"id1": 1}
        self.calls = 0

    async def gather(self, context: str, todo_list: TodoList, mapping: IdMapping) -> GatherResult:
        self.calls += 1
        self.emit(EventType.GATHER_COMPLETE, AgentEventPayload(new_info=self.new_info))
        return GatherResult(new_info=self.new_info, mapping=IdMapping.from_dict(self.mapping))


class ScriptedPlan(PlanAgent):
    def __init__(self, plan: list[ActionPlanItem] | None = None) -> None:
        super().__init__()
        self.plan = plan or [ActionPlanItem(name="create_task", parameters={"title": "Dentist"})]
        self.calls = 0

    async def build_plan(self, context: str, todo_list: TodoList) -> list[ActionPlanItem]:
        self.calls += 1
        self.emit(EventType.PLAN_BUILD_COMPLETE, AgentEventPayload(plan=self.plan))
        return list(self.plan)


class ScriptedExecute(ExecuteAgent):
    def __init__(self, *results: dict[str, bool], on_call: Any = None) -> None:
        super().__init__(store=object())  # type: ignore[arg-type]
        self.results = list(results) or [{}]
        self.on_call = on_call
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        todo_list: TodoList,
        plan: list[ActionPlanItem],
        mapping: IdMapping,
        round: int,
    ) -> dict[str, bool]:
        self.calls.append({"plan": list(plan), "round": round})
        if self.on_call is not None:
            self.on_call()
        self.emit(EventType.EXECUTE_START, AgentEventPayload(plan=plan, round=round))
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


class ScriptedExecuteCode(ExecuteCodeAgent):
    def __init__(self, new_info: str = "['buy milk']") -> None:
        super().__init__()
        self.new_info = new_info
        self.calls = 0

    async def execute_code(
        self,
        round: int,
        context: str,
        todo_list: TodoList,
        mapping: IdMapping,
    ) -> ExecuteCodeResult:
        self.calls += 1
        self.emit(
            EventType.EXECUTE_CODE_START,
            AgentEventPayload(context=context, todo=dict(todo_list), round=round),
        )
        return ExecuteCodeResult(new_info=self.new_info, mapping=mapping.copy())


def make_coordinator(
    decide: DecideAgent,
    todo_list: TodoList | None = None,
    **kwargs: Any,
) -> WorkflowCoordinator:
    kwargs.setdefault("gather_agent", ScriptedGather())
    kwargs.setdefault("plan_agent", ScriptedPlan())
    kwargs.setdefault("execute_agent", ScriptedExecute())
    kwargs.setdefault("execute_code_agent", ScriptedExecuteCode())
    return WorkflowCoordinator(
        INITIAL_CONTEXT,
        todo_list if todo_list is not None else {"buy milk": False},
        decide_agent=decide,
        today=TODAY,
        **kwargs,
    )


def _types(events: list[tuple[EventType, AgentEventPayload]]) -> list[EventType]:
    return [event_type for event_type, _ in events]


# =========================================================================
# Pure helpers
# =========================================================================


class TestMergeTodoResults:
    def test_all_truthy_marks_every_item_done(self) -> None:
        todo = {"a": False, "b": False}
        assert merge_todo_results(todo, {"x": True, "y": True}) == {"a": True, "b": True}

    def test_any_false_changes_nothing(self) -> None:
        todo = {"a": False, "b": True}
        assert merge_todo_results(todo, {"x": True, "y": False}) == todo

    def test_empty_results_change_nothing(self) -> None:
        todo = {"a": False}
        assert merge_todo_results(todo, {}) == {"a": False}

    def test_done_items_are_never_reset(self) -> None:
        todo = {"a": True, "b": False}
        merged = merge_todo_results(todo, {"x": False})
        assert merged["a"] is True

    def test_returns_new_dict(self) -> None:
        todo = {"a": False}
        assert merge_todo_results(todo, {"x": False}) is not todo


class TestSummarizeResults:
    def test_lists_verdicts(self) -> None:
        summary = summarize_results(2, {"buy milk": True, "walk dog": False})
        assert summary == "Round 2 execute: buy milk: done, walk dog: not done"

    def test_empty_results(self) -> None:
        assert "no todo items" in summarize_results(1, {})


# =========================================================================
# Construction
# =========================================================================


class TestConstruction:
    def test_initial_state(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER))
        state = coordinator.state
        assert state["context"] == CONTEXT
        assert state["todo_list"] == {"buy milk": False}
        assert state["action_plan"] == []
        assert state["round"] == 0
        assert state["mapping"] == {}
        assert not coordinator.stop_requested

    def test_mapping_dict_is_accepted(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER), mapping={"abc": 3})
        assert coordinator.state["mapping"].long_id(3) == "abc"

    def test_todo_list_is_copied(self) -> None:
        todo = {"buy milk": False}
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER), todo)
        todo["buy milk"] = True
        assert coordinator.state["todo_list"] == {"buy milk": False}

    def test_default_round_cap_comes_from_settings(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER))
        assert coordinator.max_rounds == settings.max_rounds

    @pytest.mark.parametrize("max_rounds", [0, -3])
    def test_round_cap_below_one_is_rejected(self, max_rounds: int) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            make_coordinator(ScriptedDecide(AgentPhase.GATHER), max_rounds=max_rounds)

    def test_state_is_a_snapshot(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER))
        snapshot = coordinator.state
        snapshot["todo_list"]["buy milk"] = True
        assert coordinator.state["todo_list"] == {"buy milk": False}


# =========================================================================
# Scenarios
# =========================================================================


class TestScenarios:
    async def test_finished_todo_list_runs_zero_rounds(self) -> None:
        decide = ScriptedDecide(AgentPhase.GATHER)
        coordinator = make_coordinator(decide, {"buy milk": True})
        events = record_events(coordinator)

        final = await coordinator.run()

        assert final["round"] == 0
        assert decide.calls == []
        assert _types(events) == [EventType.FINISHED]

    async def test_empty_todo_list_runs_zero_rounds(self) -> None:
        decide = ScriptedDecide(AgentPhase.GATHER)
        coordinator = make_coordinator(decide, {})
        await coordinator.run()
        assert decide.calls == []

    async def test_execute_code_stops_the_run(self) -> None:
        execute_code = ScriptedExecuteCode()
        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.EXECUTE_CODE),
            execute_code_agent=execute_code,
        )
        events = record_events(coordinator)

        final = await coordinator.run()

        types = _types(events)
        assert types.count(EventType.EXECUTE_CODE_START) == 1
        assert types.count(EventType.FINISHED) == 1
        assert types.count(EventType.STOP) == 1
        assert coordinator.stop_requested is True
        assert execute_code.calls == 1
        assert final["round"] == 1
        assert final["results"] == ["['buy milk']"]
        # The code's verdict is not reconciled into the todo list.
        assert final["todo_list"] == {"buy milk": False}

    async def test_gather_appends_context_and_replaces_mapping(self) -> None:
        decide = ScriptedDecide(AgentPhase.GATHER, AgentPhase.EXECUTE_CODE)
        coordinator = make_coordinator(decide)

        await coordinator.run()

        state = coordinator.state
        assert state["context"] == CONTEXT + "X"
        assert state["mapping"] == {"id1": 1}
        assert decide.calls[1]["context"] == CONTEXT + "X"

    async def test_execute_all_true_marks_todo_done_and_clears_plan(self) -> None:
        execute = ScriptedExecute({"actionA": True, "actionB": True})
        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.BUILD_PLAN, AgentPhase.EXECUTE),
            {"buy milk": False, "walk dog": False},
            execute_agent=execute,
        )

        final = await coordinator.run()

        assert final["todo_list"] == {"buy milk": True, "walk dog": True}
        assert final["action_plan"] == []
        assert final["round"] == 2
        assert execute.calls[0]["plan"][0].name == "create_task"
        assert execute.calls[0]["round"] == 2
        assert final["results"] == ["Round 2 execute: actionA: done, actionB: done"]

    async def test_failed_decide_request_emits_one_error_and_raises(self) -> None:
        transport = RecordingTransport({DECIDE_ENDPOINT: (500, {"detail": "LLM call failed: boom"})})
        decide = DecideAgent(client=make_agent_client(transport))
        coordinator = make_coordinator(decide)
        errors = record_events(coordinator, [EventType.ERROR])
        decide_errors = record_events(coordinator, [EventType.DECIDE_ERROR])

        with pytest.raises(AgentRequestError, match="LLM call failed: boom"):
            await coordinator.run()

        assert len(errors) == 1
        payload = errors[0][1]
        assert payload.round == 1
        assert payload.error == "LLM call failed: boom"
        assert payload.todo == {"buy milk": False}
        assert payload.context == CONTEXT
        assert len(decide_errors) == 1
        assert decide_errors[0][1].round == 1
        assert not coordinator.is_running

    async def test_phase_failure_emits_error_and_raises(self) -> None:
        class FailingPlan(ScriptedPlan):
            async def build_plan(self, context: str, todo_list: TodoList) -> list[ActionPlanItem]:
                raise RuntimeError("plan exploded")

        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.GATHER, AgentPhase.BUILD_PLAN),
            plan_agent=FailingPlan(),
        )
        errors = record_events(coordinator, [EventType.ERROR])

        with pytest.raises(RuntimeError, match="plan exploded"):
            await coordinator.run()

        assert [payload.round for _, payload in errors] == [2]
        # The gather round was committed before the failure.
        assert coordinator.state["context"] == CONTEXT + "X"


# =========================================================================
# Loop control
# =========================================================================


class TestLoopControl:
    async def test_partial_results_keep_looping_until_all_done(self) -> None:
        execute = ScriptedExecute({"a": True, "b": False}, {"a": True, "b": True})
        decide = ScriptedDecide(AgentPhase.EXECUTE)
        coordinator = make_coordinator(decide, execute_agent=execute)

        final = await coordinator.run()

        assert final["round"] == 2
        assert final["todo_list"] == {"buy milk": True}
        assert len(final["results"]) == 2
        assert decide.calls[1]["results"] == "Round 1 execute: a: done, b: not done"

    async def test_round_cap_emits_round_limit_then_finished(self) -> None:
        gather = ScriptedGather()
        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.GATHER), gather_agent=gather, max_rounds=3
        )
        events = record_events(coordinator, [EventType.ROUND_LIMIT, EventType.FINISHED])

        final = await coordinator.run()

        assert final["round"] == 3
        assert gather.calls == 3
        assert _types(events) == [EventType.ROUND_LIMIT, EventType.FINISHED]

    async def test_default_round_cap_does_not_hit_recursion_limit(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER), max_rounds=25)
        final = await coordinator.run()
        assert final["round"] == 25

    async def test_stop_lets_the_current_round_finish(self) -> None:
        coordinator: WorkflowCoordinator
        execute = ScriptedExecute({"a": False}, on_call=lambda: coordinator.stop())
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.EXECUTE), execute_agent=execute)
        events = record_events(coordinator)

        final = await coordinator.run()

        assert final["round"] == 1
        assert len(execute.calls) == 1
        types = _types(events)
        assert types.index(EventType.STOP) < types.index(EventType.ROUND_END)
        assert types[-1] == EventType.FINISHED
        assert EventType.ROUND_START not in types[types.index(EventType.ROUND_END):]

    async def test_stop_before_run_runs_zero_rounds(self) -> None:
        decide = ScriptedDecide(AgentPhase.GATHER)
        coordinator = make_coordinator(decide)
        coordinator.stop()
        await coordinator.run()
        assert decide.calls == []

    async def test_concurrent_run_is_rejected(self) -> None:
        release = asyncio.Event()

        class SlowGather(ScriptedGather):
            async def gather(self, context: str, todo_list: TodoList, mapping: IdMapping) -> GatherResult:
                await release.wait()
                return await super().gather(context, todo_list, mapping)

        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.GATHER, AgentPhase.EXECUTE_CODE),
            gather_agent=SlowGather(),
        )
        first = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0)
        for _ in range(10):
            if coordinator.is_running:
                break
            await asyncio.sleep(0)

        with pytest.raises(CoordinatorBusyError):
            await coordinator.run()

        release.set()
        await first
        assert not coordinator.is_running


# =========================================================================
# Dispatch and events
# =========================================================================


class TestDispatch:
    @pytest.mark.parametrize(
        ("phase", "agent_attr"),
        [
            (AgentPhase.GATHER, "gather_agent"),
            (AgentPhase.BUILD_PLAN, "plan_agent"),
            (AgentPhase.EXECUTE, "execute_agent"),
            (AgentPhase.EXECUTE_CODE, "execute_code_agent"),
        ],
    )
    async def test_each_decision_invokes_exactly_its_agent(
        self, phase: AgentPhase, agent_attr: str
    ) -> None:
        coordinator = make_coordinator(ScriptedDecide(phase), max_rounds=1)
        await coordinator.run()

        calls = {
            "gather_agent": coordinator.gather_agent.calls,
            "plan_agent": coordinator.plan_agent.calls,
            "execute_agent": len(coordinator.execute_agent.calls),
            "execute_code_agent": coordinator.execute_code_agent.calls,
        }
        assert calls.pop(agent_attr) == 1
        assert set(calls.values()) == {0}

    async def test_round_event_sequence(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.EXECUTE_CODE))
        events = record_events(coordinator)

        await coordinator.run()

        assert _types(events) == [
            EventType.ROUND_START,
            EventType.DECIDE_START,
            EventType.PHASE_DECISION,
            EventType.EXECUTE_CODE_START,
            EventType.STOP,
            EventType.ROUND_END,
            EventType.FINISHED,
        ]
        decision = events[2][1]
        assert decision.round == 1
        assert decision.decision == AgentPhase.EXECUTE_CODE
        assert decision.reason == "chose execute_code"

    async def test_forwarded_events_are_stamped_with_current_round(self) -> None:
        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.GATHER, AgentPhase.GATHER, AgentPhase.EXECUTE_CODE)
        )
        gathered = record_events(coordinator, [EventType.GATHER_COMPLETE])

        await coordinator.run()

        assert [payload.round for _, payload in gathered] == [1, 2]

    async def test_round_already_in_payload_is_kept(self) -> None:
        class EarlyRoundExecute(ScriptedExecute):
            async def execute(self, todo_list, plan, mapping, round):  # type: ignore[no-untyped-def]
                self.emit(EventType.EXECUTE_START, AgentEventPayload(round=99))
                return {"a": True}

        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.EXECUTE), execute_agent=EarlyRoundExecute()
        )
        started = record_events(coordinator, [EventType.EXECUTE_START])

        await coordinator.run()

        assert started[0][1].round == 99

    async def test_event_source_names_the_forwarding_agent(self) -> None:
        coordinator = make_coordinator(ScriptedDecide(AgentPhase.GATHER, AgentPhase.EXECUTE_CODE))
        sources: list[tuple[EventType, str | None]] = []
        for event_type in (EventType.ROUND_START, EventType.DECIDE_START, EventType.GATHER_COMPLETE):
            coordinator.on(
                event_type,
                lambda payload, event_type=event_type: sources.append(
                    (event_type, coordinator.event_source)
                ),
            )

        await coordinator.run()

        assert sources[:3] == [
            (EventType.ROUND_START, None),
            (EventType.DECIDE_START, "Decide"),
            (EventType.GATHER_COMPLETE, "Gather"),
        ]
        assert coordinator.event_source is None

    async def test_execute_leaves_the_committed_plan_untouched(
        self, task_store: TaskStore
    ) -> None:
        transport = RecordingTransport(
            {
                CHECK_RESULTS_ENDPOINT: {
                    "results": [{"task": "buy milk", "reason": "done", "result": True}]
                }
            }
        )
        plan = [ActionPlanItem(name="mark_task_completed", parameters={"task_id": "missing"})]
        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.BUILD_PLAN, AgentPhase.EXECUTE),
            plan_agent=ScriptedPlan(plan),
            execute_agent=ExecuteAgent(client=make_agent_client(transport), store=task_store),
        )
        snapshots: list[dict[str, Any]] = []
        coordinator.on(
            EventType.ROUND_START, lambda payload: snapshots.append(coordinator.state)
        )
        planned = record_events(coordinator, [EventType.PLAN_BUILD_COMPLETE])

        final = await coordinator.run()

        assert final["todo_list"] == {"buy milk": True}
        before_execute = snapshots[1]["action_plan"]
        assert [item.name for item in before_execute] == ["mark_task_completed"]
        assert before_execute[0].result is None
        assert planned[0][1].plan is not None
        assert planned[0][1].plan[0].result is None
        assert plan[0].result is None

    async def test_round_end_carries_committed_state(self) -> None:
        coordinator = make_coordinator(
            ScriptedDecide(AgentPhase.GATHER, AgentPhase.EXECUTE_CODE)
        )
        ends = record_events(coordinator, [EventType.ROUND_END])

        await coordinator.run()

        first = ends[0][1]
        assert first.round == 1
        assert first.context == CONTEXT + "X"
        assert first.todo == {"buy milk": False}
