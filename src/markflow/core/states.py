"""Declarative state machine models.

This module defines the typed building blocks for pipeline topologies:
- States: Pass, Task, Wait, Choice, Parallel, Succeed, Fail
- Branch: a start state plus its states (used for Parallel branches)
- StateMachineDefinition: a named, top-level Branch with a timeout

Field names serialize to their Amazon States Language (ASL) spelling via
PascalCase aliases, so `to_asl()` produces a document the managed
orchestration service accepts and `from_asl()` reads one back.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_pascal

from markflow.core.exceptions import DefinitionError


ASL_MODEL_CONFIG = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="forbid")


# -----------------------------------------------------------------------------
# Choice rules
# -----------------------------------------------------------------------------


class ChoiceRule(BaseModel):
    """A single comparison (or conjunction) inside a Choice state.

    Top-level rules carry `next`; rules nested in `and_` must not.

    Examples:
        ChoiceRule(variable="$.status.JobStatus", string_equals="FAILED", next="Job Failed")
        ChoiceRule(and_=[
            ChoiceRule(variable="$.skipRotation", is_present=True),
            ChoiceRule(variable="$.skipRotation", boolean_equals=True),
        ], next="Skip Fixing Rotation")
    """
    model_config = ASL_MODEL_CONFIG

    variable: Optional[str] = None
    string_equals: Optional[str] = None
    boolean_equals: Optional[bool] = None
    is_present: Optional[bool] = None
    and_: Optional[List["ChoiceRule"]] = Field(default=None, alias="And")
    next: Optional[str] = None

    @model_validator(mode="after")
    def validate_single_comparison(self) -> "ChoiceRule":
        comparisons = [
            c for c in (self.string_equals, self.boolean_equals, self.is_present, self.and_)
            if c is not None
        ]
        if len(comparisons) != 1:
            raise ValueError("choice rule must have exactly one comparison")
        if self.and_ is not None:
            if not self.and_:
                raise ValueError("And requires at least one rule")
            if any(rule.next is not None for rule in self.and_):
                raise ValueError("nested choice rules cannot have Next")
        elif not self.variable:
            raise ValueError("choice rule requires Variable")
        return self


# -----------------------------------------------------------------------------
# States
# -----------------------------------------------------------------------------


class StateBase(BaseModel):
    """Fields shared by every state."""
    model_config = ASL_MODEL_CONFIG

    comment: Optional[str] = None


class TransitionMixin(BaseModel):
    """Fields for states that continue to another state or end the machine."""
    model_config = ASL_MODEL_CONFIG

    next: Optional[str] = None
    end: Optional[bool] = None


class PassState(StateBase, TransitionMixin):
    """Passes its input through, optionally reshaped by `parameters`."""
    type: Literal["Pass"] = "Pass"
    parameters: Optional[Dict[str, Any]] = None
    result_path: Optional[str] = None


class TaskState(StateBase, TransitionMixin):
    """Invokes the handler registered for `resource`."""
    type: Literal["Task"] = "Task"
    resource: str
    input_path: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    result_selector: Optional[Dict[str, Any]] = None
    result_path: Optional[str] = None
    output_path: Optional[str] = None


class WaitState(StateBase, TransitionMixin):
    """Pauses for a fixed number of seconds."""
    type: Literal["Wait"] = "Wait"
    seconds: int = Field(ge=0)


class ChoiceState(StateBase):
    """Branches on the first matching rule, falling back to `default`."""
    type: Literal["Choice"] = "Choice"
    choices: List[ChoiceRule]
    default: Optional[str] = None


class SucceedState(StateBase):
    type: Literal["Succeed"] = "Succeed"


class FailState(StateBase):
    """Terminates the execution with an error name and cause."""
    type: Literal["Fail"] = "Fail"
    error: str
    cause: str = ""


class ParallelState(StateBase, TransitionMixin):
    """Runs every branch on the same input; output is the list of branch outputs."""
    type: Literal["Parallel"] = "Parallel"
    branches: List["Branch"]
    result_selector: Optional[Dict[str, Any]] = None
    result_path: Optional[str] = None


State = Annotated[
    Union[PassState, TaskState, WaitState, ChoiceState, ParallelState, SucceedState, FailState],
    Field(discriminator="type"),
]

TERMINAL_TYPES = ("Succeed", "Fail")


# -----------------------------------------------------------------------------
# Graphs
# -----------------------------------------------------------------------------


class Branch(BaseModel):
    """A start state plus the states reachable from it."""
    model_config = ASL_MODEL_CONFIG

    start_at: str
    states: Dict[str, State]

    @model_validator(mode="after")
    def validate_transitions(self) -> "Branch":
        if self.start_at not in self.states:
            raise ValueError(f"StartAt references non-existent state: {self.start_at}")

        for name, state in self.states.items():
            if isinstance(state, ChoiceState):
                if not state.choices:
                    raise ValueError(f"Choice state {name!r} has no rules")
                for rule in state.choices:
                    if rule.next is None:
                        raise ValueError(f"Choice rule in {name!r} has no Next")
                    self._check_target(name, rule.next)
                if state.default is not None:
                    self._check_target(name, state.default)
            elif isinstance(state, TransitionMixin):
                if (state.next is None) == (not state.end):
                    raise ValueError(f"State {name!r} must have exactly one of Next or End")
                if state.next is not None:
                    self._check_target(name, state.next)
        return self

    def _check_target(self, source: str, target: str) -> None:
        if target not in self.states:
            raise ValueError(f"State {source!r} transitions to non-existent state: {target}")

    # -------------------------------------------------------------------------
    # Convenience accessors
    # -------------------------------------------------------------------------

    def get_state(self, name: str) -> Optional[State]:
        return self.states.get(name)

    def transitions(self) -> List[Tuple[str, str, str]]:
        """List (source, target, label) edges of the transition table.

        Labels are "next" for plain transitions, "default" for a Choice
        fallback, and the rule's comparison for Choice rules.
        """
        edges: List[Tuple[str, str, str]] = []
        for name, state in self.states.items():
            if isinstance(state, ChoiceState):
                for rule in state.choices:
                    edges.append((name, rule.next, _describe_rule(rule)))
                if state.default is not None:
                    edges.append((name, state.default, "default"))
            elif isinstance(state, TransitionMixin) and state.next is not None:
                edges.append((name, state.next, "next"))
        return edges


class StateMachineDefinition(Branch):
    """Complete, named state machine.

    `name` identifies the machine locally (and becomes its deployed name);
    it is not part of the ASL document.
    """
    name: str
    comment: Optional[str] = None
    timeout_seconds: Optional[int] = Field(default=None, gt=0)

    def to_asl(self) -> Dict[str, Any]:
        """Serialize to an Amazon States Language document."""
        document = self.model_dump(by_alias=True, exclude_none=True, exclude={"name"})
        # ASL puts Comment first by convention
        ordered: Dict[str, Any] = {}
        for key in ("Comment", "StartAt", "States", "TimeoutSeconds"):
            if key in document:
                ordered[key] = document[key]
        return ordered

    @classmethod
    def from_asl(cls, name: str, document: Dict[str, Any]) -> "StateMachineDefinition":
        """Parse an ASL document into a definition."""
        try:
            return cls.model_validate({**document, "name": name})
        except ValidationError as e:
            raise DefinitionError(
                f"Invalid state machine definition: {name}",
                context={"errors": e.errors(include_url=False)},
            ) from e


def chain(states: Dict[str, Any], *names: str, end: bool = True) -> None:
    """Link `names` in order with Next, ending the last one if `end`."""
    for current, following in zip(names, names[1:]):
        states[current].next = following
    if end and names:
        states[names[-1]].end = True


def _describe_rule(rule: ChoiceRule) -> str:
    if rule.and_ is not None:
        return " and ".join(_describe_rule(r) for r in rule.and_)
    if rule.string_equals is not None:
        return f"{rule.variable} == {rule.string_equals!r}"
    if rule.boolean_equals is not None:
        return f"{rule.variable} == {str(rule.boolean_equals).lower()}"
    return f"{rule.variable} is {'present' if rule.is_present else 'absent'}"


ChoiceRule.model_rebuild()
ParallelState.model_rebuild()
Branch.model_rebuild()
StateMachineDefinition.model_rebuild()
