"""Workflow data model shared by the coordinator, sub-agents and events.

The coordinator owns a todo list, a growing context string, the current
action plan and an identifier mapping. Sub-agents receive copies of these as
call arguments and hand back deltas described by the result types below.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

# Task description -> done flag.
TodoList = dict[str, bool]


class AgentPhase(StrEnum):
    """Unit of work chosen by the Decide agent each round."""

    GATHER = "gather"
    BUILD_PLAN = "build_plan"
    EXECUTE = "execute"
    EXECUTE_CODE = "execute_code"


class ActionPlanItem(BaseModel):
    """A proposed function call produced by the Plan agent.

    Attributes:
        name: Registered function name (e.g. "create_task").
        parameters: Arguments for the call, as proposed by the model.
        result: Outcome recorded once the action has been executed.
    """

    name: str
    parameters: Any = None
    result: Any = None


def pending_tasks(todo_list: TodoList) -> list[str]:
    """Return the descriptions of todo items that are not done yet."""
    return [task for task, done in todo_list.items() if not done]


def is_finished(todo_list: TodoList) -> bool:
    """True when every todo item is done (vacuously true when empty)."""
    return all(todo_list.values())


class IdMapping:
    """Bidirectional table between long entity ids and short integers.

    Long ids (task UUIDs, document ids) are expensive in prompt text, so the
    agents refer to entities as ``#1``, ``#2``... Integers are assigned in
    insertion order starting at 1 and are never reused or reassigned, so
    ``reverse_mapping[mapping[x]] == x`` holds for every registered id.
    """

    def __init__(self) -> None:
        self.mapping: dict[str, int] = {}
        self.reverse_mapping: dict[int, str] = {}

    @classmethod
    def from_dict(cls, mapping: dict[str, int]) -> "IdMapping":
        """Build a mapping from a forward ``{long_id: int}`` dict.

        Raises:
            ValueError: If two ids share an integer or an integer is < 1.
        """
        instance = cls()
        for long_id, short_id in mapping.items():
            if short_id < 1:
                raise ValueError(f"Short id must be positive, got {short_id}")
            if short_id in instance.reverse_mapping:
                raise ValueError(
                    f"Short id {short_id} assigned to both "
                    f"{instance.reverse_mapping[short_id]!r} and {long_id!r}"
                )
            instance.mapping[long_id] = short_id
            instance.reverse_mapping[short_id] = long_id
        return instance

    def register(self, long_id: str) -> int:
        """Return the short id for ``long_id``, assigning the next one if new."""
        existing = self.mapping.get(long_id)
        if existing is not None:
            return existing
        short_id = max(self.reverse_mapping, default=0) + 1
        self.mapping[long_id] = short_id
        self.reverse_mapping[short_id] = long_id
        return short_id

    def short_id(self, long_id: str) -> int | None:
        return self.mapping.get(long_id)

    def long_id(self, short_id: int) -> str | None:
        return self.reverse_mapping.get(short_id)

    def resolve(self, value: Any) -> Any:
        """Translate a short reference back to its long id.

        Accepts ``3``, ``"3"`` and ``"#3"``. Anything that is not a known
        short id is returned unchanged, so long ids pass straight through.
        """
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return self.reverse_mapping.get(value, value)
        if isinstance(value, str):
            token = value.strip().removeprefix("#")
            if token.isdigit():
                return self.reverse_mapping.get(int(token), value)
        return value

    def copy(self) -> "IdMapping":
        return IdMapping.from_dict(self.mapping)

    def as_dict(self) -> dict[str, int]:
        return dict(self.mapping)

    def __len__(self) -> int:
        return len(self.mapping)

    def __contains__(self, long_id: object) -> bool:
        return long_id in self.mapping

    def __eq__(self, other: object) -> bool:
        if isinstance(other, IdMapping):
            return self.mapping == other.mapping
        if isinstance(other, dict):
            return self.mapping == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"IdMapping({self.mapping!r})"


@dataclass
class DecideResult:
    """Phase chosen by the Decide agent and its natural-language reason."""

    decision: AgentPhase
    reason: str = ""


@dataclass
class GatherResult:
    """Delta returned by the Gather agent.

    Attributes:
        new_info: Text appended verbatim to the coordinator's context.
        mapping: Updated identifier mapping (replaces the coordinator's).
    """

    new_info: str
    mapping: IdMapping = field(default_factory=IdMapping)


@dataclass
class ExecuteCodeResult:
    """Delta returned by the ExecuteCode agent."""

    new_info: str
    mapping: IdMapping = field(default_factory=IdMapping)
    pseudo_code: str = ""
    code: str = ""
