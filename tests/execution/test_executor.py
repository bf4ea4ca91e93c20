"""Tests for the in-process state machine executor.

Tests cover:
- Task data flow (InputPath, Parameters, ResultSelector, ResultPath, OutputPath)
- Choice routing, defaults and unmatched input
- Fail states, unknown resources and handler errors
- Timeouts during waits and polling loops
- Parallel fan-out ordering, failure and cancellation
- Nested executions
"""

import threading

import pytest

from markflow.core.exceptions import (
    STATES_RUNTIME,
    STATES_TASK_FAILED,
    STATES_TIMEOUT,
    ExternalJobFailed,
    StepInvocationError,
)
from markflow.core.states import (
    Branch,
    ChoiceRule,
    ChoiceState,
    FailState,
    ParallelState,
    PassState,
    StateMachineDefinition,
    SucceedState,
    TaskState,
    WaitState,
)
from markflow.execution.clock import ManualClock
from markflow.execution.executor import (
    STATES_NO_CHOICE_MATCHED,
    ExecutionStatus,
    StateMachineExecutor,
)
from markflow.execution.tasks import START_EXECUTION_SYNC, NestedExecutionHandler, TaskRegistry


def machine(states, start_at, **kwargs):
    return StateMachineDefinition(name="Test", start_at=start_at, states=states, **kwargs)


@pytest.fixture
def registry():
    registry = TaskRegistry()
    registry.register("echo", lambda params, ctx: params)
    registry.register("double", lambda params, ctx: {"value": params["value"] * 2})
    return registry


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def executor(registry, clock):
    return StateMachineExecutor(registry, clock=clock)


# -----------------------------------------------------------------------------
# Data flow
# -----------------------------------------------------------------------------


class TestDataFlow:
    """Tests for how state data moves through Pass and Task states."""

    def test_empty_input_defaults_to_object(self, executor):
        result = executor.execute(machine({"Done": SucceedState()}, "Done"))
        assert result.success
        assert result.output == {}

    def test_input_not_mutated(self, executor):
        data = {"key": "s.pdf"}
        definition = machine(
            {"P": PassState(parameters={"other": 1}, result_path="$.extra", end=True)}, "P"
        )
        result = executor.execute(definition, data)
        assert data == {"key": "s.pdf"}
        assert result.output == {"key": "s.pdf", "extra": {"other": 1}}

    def test_pass_without_parameters_is_identity(self, executor):
        result = executor.execute(machine({"P": PassState(end=True)}, "P"), {"a": 1})
        assert result.output == {"a": 1}

    def test_task_full_pipeline(self, executor):
        """InputPath -> Parameters -> ResultSelector -> ResultPath -> OutputPath."""
        definition = machine(
            {
                "T": TaskState(
                    resource="double",
                    input_path="$.job",
                    parameters={"value.$": "$.n"},
                    result_selector={"doubled.$": "$.value"},
                    result_path="$.job.result",
                    output_path="$.job",
                    end=True,
                )
            },
            "T",
        )
        result = executor.execute(definition, {"job": {"n": 21}, "other": True})
        assert result.output == {"n": 21, "result": {"doubled": 42}}

    def test_task_without_parameters_receives_effective_input(self, registry, executor):
        seen = []
        registry.register("record", lambda params, ctx: seen.append(params) or {})
        definition = machine({"T": TaskState(resource="record", input_path="$.a", end=True)}, "T")
        executor.execute(definition, {"a": {"b": 1}})
        assert seen == [{"b": 1}]

    def test_context_object_available(self, executor):
        definition = machine(
            {"P": PassState(parameters={"name.$": "$$.Execution.Name"}, end=True)}, "P"
        )
        result = executor.execute(definition, {}, name="exec-42")
        assert result.name == "exec-42"
        assert result.output == {"name": "exec-42"}

    def test_path_records_visited_states(self, executor):
        definition = machine(
            {"A": PassState(next="B"), "B": PassState(next="C"), "C": SucceedState()}, "A"
        )
        assert executor.execute(definition).path == ["A", "B", "C"]

    def test_missing_path_fails_with_runtime_error(self, executor):
        definition = machine({"T": TaskState(resource="echo", input_path="$.nope", end=True)}, "T")
        result = executor.execute(definition, {"key": "k"})
        assert result.status == ExecutionStatus.FAILED
        assert result.error == STATES_RUNTIME


# -----------------------------------------------------------------------------
# Choice
# -----------------------------------------------------------------------------


class TestChoice:
    """Tests for Choice routing."""

    @pytest.fixture
    def definition(self):
        return machine(
            {
                "Route": ChoiceState(
                    choices=[
                        ChoiceRule(variable="$.status", string_equals="FAILED", next="Failed"),
                        ChoiceRule(
                            and_=[
                                ChoiceRule(variable="$.flag", is_present=True),
                                ChoiceRule(variable="$.flag", boolean_equals=True),
                            ],
                            next="Flagged",
                        ),
                    ],
                    default="Other",
                ),
                "Failed": PassState(result_path="$.route", parameters={"to": "failed"}, end=True),
                "Flagged": PassState(result_path="$.route", parameters={"to": "flagged"}, end=True),
                "Other": PassState(result_path="$.route", parameters={"to": "other"}, end=True),
            },
            "Route",
        )

    def test_first_matching_rule_wins(self, executor, definition):
        result = executor.execute(definition, {"status": "FAILED", "flag": True})
        assert result.output["route"] == {"to": "failed"}

    def test_conjunction_matches(self, executor, definition):
        result = executor.execute(definition, {"status": "IN_PROGRESS", "flag": True})
        assert result.output["route"] == {"to": "flagged"}

    def test_conjunction_short_circuits_on_absent_variable(self, executor, definition):
        result = executor.execute(definition, {"status": "IN_PROGRESS"})
        assert result.output["route"] == {"to": "other"}

    def test_type_mismatch_does_not_match(self, executor, definition):
        """BooleanEquals only matches real booleans."""
        result = executor.execute(definition, {"status": "IN_PROGRESS", "flag": "true"})
        assert result.output["route"] == {"to": "other"}

    def test_no_match_without_default_fails(self, executor):
        definition = machine(
            {
                "Route": ChoiceState(
                    choices=[ChoiceRule(variable="$.x", string_equals="a", next="Done")]
                ),
                "Done": SucceedState(),
            },
            "Route",
        )
        result = executor.execute(definition, {"x": "b"})
        assert result.status == ExecutionStatus.FAILED
        assert result.error == STATES_NO_CHOICE_MATCHED


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------


class TestFailures:
    """Tests for failure reporting."""

    def test_fail_state_reports_error_and_cause(self, executor):
        definition = machine({"F": FailState(error="JobFailed", cause="It failed")}, "F")
        result = executor.execute(definition)
        assert result.status == ExecutionStatus.FAILED
        assert result.error == "JobFailed"
        assert result.cause == "It failed"
        assert isinstance(result.exception, ExternalJobFailed)

    def test_raise_for_status(self, executor):
        definition = machine({"F": FailState(error="JobFailed", cause="It failed")}, "F")
        with pytest.raises(ExternalJobFailed):
            executor.execute(definition).raise_for_status()

    def test_raise_for_status_returns_successful_result(self, executor):
        result = executor.execute(machine({"Done": SucceedState()}, "Done"))
        assert result.raise_for_status() is result

    def test_unknown_resource(self, executor):
        definition = machine({"T": TaskState(resource="missing", end=True)}, "T")
        result = executor.execute(definition)
        assert result.status == ExecutionStatus.FAILED
        assert result.error == STATES_TASK_FAILED
        assert isinstance(result.exception, StepInvocationError)

    def test_handler_exception_becomes_task_failure(self, registry, executor):
        def boom(params, ctx):
            raise RuntimeError("function crashed")

        registry.register("boom", boom)
        definition = machine(
            {"T": TaskState(resource="boom", next="After"), "After": SucceedState()}, "T"
        )
        result = executor.execute(definition)
        assert result.status == ExecutionStatus.FAILED
        assert result.error == STATES_TASK_FAILED
        assert result.cause == "function crashed"
        assert "After" not in result.path

    def test_handler_can_choose_error_name(self, registry, executor):
        def reject(params, ctx):
            raise StepInvocationError("rejected", error="Custom.Rejected", cause="nope")

        registry.register("reject", reject)
        result = executor.execute(machine({"T": TaskState(resource="reject", end=True)}, "T"))
        assert result.error == "Custom.Rejected"
        assert result.cause == "nope"

    def test_max_steps_guard(self, registry, clock):
        executor = StateMachineExecutor(registry, clock=clock, max_steps=5)
        definition = machine({"A": PassState(next="B"), "B": PassState(next="A")}, "A")
        result = executor.execute(definition)
        assert result.status == ExecutionStatus.FAILED
        assert result.error == STATES_RUNTIME


# -----------------------------------------------------------------------------
# Waits and timeouts
# -----------------------------------------------------------------------------


class TestTimeouts:
    """Tests for waits and the execution timeout."""

    def test_wait_advances_clock(self, executor, clock):
        definition = machine({"W": WaitState(seconds=5, next="Done"), "Done": SucceedState()}, "W")
        assert executor.execute(definition).success
        assert clock.sleeps == [5]
        assert clock.now() == 5

    def test_wait_past_deadline_times_out(self, executor, clock):
        definition = machine(
            {"W": WaitState(seconds=120, next="Done"), "Done": SucceedState()},
            "W",
            timeout_seconds=60,
        )
        result = executor.execute(definition)
        assert result.status == ExecutionStatus.TIMED_OUT
        assert result.error == STATES_TIMEOUT
        assert clock.now() == 60

    def test_endless_loop_times_out(self, registry, executor, clock):
        definition = machine(
            {
                "Poll": TaskState(resource="echo", next="Wait"),
                "Wait": WaitState(seconds=60, next="Poll"),
            },
            "Poll",
            timeout_seconds=600,
        )
        result = executor.execute(definition)
        assert result.status == ExecutionStatus.TIMED_OUT
        assert clock.now() == 600
        assert clock.sleeps == [60] * 10

    def test_no_timeout_without_limit(self, executor, clock):
        definition = machine(
            {"W": WaitState(seconds=100_000, next="Done"), "Done": SucceedState()}, "W"
        )
        assert executor.execute(definition).success


# -----------------------------------------------------------------------------
# Parallel
# -----------------------------------------------------------------------------


def single_task_branch(resource, **task_kwargs):
    return Branch(start_at="T", states={"T": TaskState(resource=resource, end=True, **task_kwargs)})


class TestParallel:
    """Tests for Parallel fan-out and fan-in."""

    def test_outputs_ordered_by_branch_not_completion(self, registry, executor):
        """Branch 0 finishes last but still fills slot 0."""
        second_done = threading.Event()

        def slow(params, ctx):
            assert second_done.wait(timeout=5)
            return {"branch": 0}

        def fast(params, ctx):
            second_done.set()
            return {"branch": 1}

        registry.register("slow", slow)
        registry.register("fast", fast)
        definition = machine(
            {
                "Fan": ParallelState(
                    branches=[single_task_branch("slow"), single_task_branch("fast")],
                    end=True,
                )
            },
            "Fan",
        )
        result = executor.execute(definition, {})
        assert result.success
        assert result.output == [{"branch": 0}, {"branch": 1}]

    def test_result_selector_names_slots(self, executor):
        definition = machine(
            {
                "Fan": ParallelState(
                    branches=[
                        single_task_branch("echo", parameters={"Output.$": "$.a"}),
                        single_task_branch("echo", parameters={"Output.$": "$.b"}),
                    ],
                    result_selector={"first.$": "$[0].Output", "second.$": "$[1].Output"},
                    result_path="$.merged",
                    end=True,
                )
            },
            "Fan",
        )
        result = executor.execute(definition, {"a": "x", "b": "y"})
        assert result.output["merged"] == {"first": "x", "second": "y"}
        assert result.output["a"] == "x"

    def test_branches_get_independent_copies(self, registry, executor):
        def mutate(params, ctx):
            params["touched"] = True
            return params

        registry.register("mutate", mutate)
        definition = machine(
            {
                "Fan": ParallelState(
                    branches=[single_task_branch("mutate"), single_task_branch("echo")],
                    end=True,
                )
            },
            "Fan",
        )
        result = executor.execute(definition, {"a": 1})
        assert result.output[1] == {"a": 1}

    def test_branch_failure_fails_parallel(self, registry, executor):
        def fail(params, ctx):
            raise RuntimeError("branch broke")

        registry.register("fail", fail)
        definition = machine(
            {
                "Fan": ParallelState(
                    branches=[single_task_branch("echo"), single_task_branch("fail")],
                    next="After",
                ),
                "After": SucceedState(),
            },
            "Fan",
        )
        result = executor.execute(definition, {})
        assert result.status == ExecutionStatus.FAILED
        assert result.cause == "branch broke"
        assert "After" not in result.path

    def test_failure_cancels_sibling_before_next_state(self, registry, executor):
        reached = []

        def fail(params, ctx):
            raise RuntimeError("branch broke")

        def wait_for_failure(params, ctx):
            assert ctx.cancel.wait(timeout=5)
            return params

        registry.register("fail", fail)
        registry.register("blocked", wait_for_failure)
        registry.register("later", lambda params, ctx: reached.append(True) or params)
        slow_branch = Branch(
            start_at="Blocked",
            states={
                "Blocked": TaskState(resource="blocked", next="Later"),
                "Later": TaskState(resource="later", end=True),
            },
        )
        definition = machine(
            {"Fan": ParallelState(branches=[slow_branch, single_task_branch("fail")], end=True)},
            "Fan",
        )
        result = executor.execute(definition, {})
        assert result.status == ExecutionStatus.FAILED
        assert result.cause == "branch broke"
        assert reached == []

    def test_earliest_failure_in_clock_time_wins(self, registry, executor):
        """A branch failing at t=0 beats a sibling that failed at t=100 first."""

        def held_until_sibling_fails(params, ctx):
            assert ctx.cancel.wait(timeout=5)
            return params

        registry.register("held", held_until_sibling_fails)
        late = Branch(
            start_at="Wait",
            states={
                "Wait": WaitState(seconds=100, next="Fail"),
                "Fail": FailState(error="Late", cause="failed at 100"),
            },
        )
        early = Branch(
            start_at="Held",
            states={
                "Held": TaskState(resource="held", next="Fail"),
                "Fail": FailState(error="Early", cause="failed at 0"),
            },
        )
        definition = machine({"Fan": ParallelState(branches=[late, early], end=True)}, "Fan")
        result = executor.execute(definition, {})
        assert result.status == ExecutionStatus.FAILED
        assert result.error == "Early"
        assert result.cause == "failed at 0"

    def test_nested_parallel_sees_outer_cancellation(self, registry, executor):
        reached = []

        def held_until_cancelled(params, ctx):
            assert ctx.cancel.wait(timeout=5)
            return params

        def fail(params, ctx):
            raise RuntimeError("outer branch broke")

        registry.register("held", held_until_cancelled)
        registry.register("fail", fail)
        registry.register("later", lambda params, ctx: reached.append(True) or params)
        inner = Branch(
            start_at="Held",
            states={
                "Held": TaskState(resource="held", next="Later"),
                "Later": TaskState(resource="later", end=True),
            },
        )
        nested = Branch(
            start_at="Inner",
            states={"Inner": ParallelState(branches=[inner], end=True)},
        )
        definition = machine(
            {"Fan": ParallelState(branches=[nested, single_task_branch("fail")], end=True)},
            "Fan",
        )
        result = executor.execute(definition, {})
        assert result.status == ExecutionStatus.FAILED
        assert result.cause == "outer branch broke"
        assert reached == []

    def test_branch_waits_overlap_in_virtual_time(self, executor, clock):
        def waiting_branch(seconds):
            return Branch(
                start_at="W",
                states={"W": WaitState(seconds=seconds, next="Done"), "Done": SucceedState()},
            )

        definition = machine(
            {"Fan": ParallelState(branches=[waiting_branch(30), waiting_branch(50)], end=True)},
            "Fan",
        )
        assert executor.execute(definition, {}).success
        assert clock.now() == 50
        assert sorted(clock.sleeps) == [30, 50]


# -----------------------------------------------------------------------------
# Nested executions
# -----------------------------------------------------------------------------


CHILD_ARN = "arn:aws:states:us-east-1:123456789012:stateMachine:Child"


class TestNestedExecution:
    """Tests for running a child machine from a Task state."""

    @pytest.fixture
    def child(self):
        return StateMachineDefinition(
            name="Child",
            start_at="Double",
            states={"Double": TaskState(resource="double", end=True)},
        )

    @pytest.fixture
    def parent(self):
        return machine(
            {
                "Run": TaskState(
                    resource=START_EXECUTION_SYNC,
                    parameters={"StateMachineArn": CHILD_ARN, "Input.$": "$.child"},
                    result_path="$.results",
                    output_path="$.results",
                    end=True,
                )
            },
            "Run",
        )

    def test_child_output_in_description(self, registry, executor, child, parent):
        registry.register(START_EXECUTION_SYNC, NestedExecutionHandler({CHILD_ARN: child}))
        result = executor.execute(parent, {"child": {"value": 4}})
        assert result.success
        assert result.output["Status"] == "SUCCEEDED"
        assert result.output["Input"] == {"value": 4}
        assert result.output["Output"] == {"value": 8}
        assert result.output["StateMachineArn"] == CHILD_ARN
        assert ":execution:Child:" in result.output["ExecutionArn"]

    def test_child_failure_fails_parent(self, registry, executor, parent):
        failing = StateMachineDefinition(
            name="Child", start_at="F", states={"F": FailState(error="Bad", cause="child broke")}
        )
        registry.register(START_EXECUTION_SYNC, NestedExecutionHandler({CHILD_ARN: failing}))
        result = executor.execute(parent, {"child": {}})
        assert result.status == ExecutionStatus.FAILED
        assert result.error == STATES_TASK_FAILED
        assert "child broke" in result.cause

    def test_unknown_child_machine(self, registry, executor, parent):
        registry.register(START_EXECUTION_SYNC, NestedExecutionHandler({}))
        result = executor.execute(parent, {"child": {}})
        assert result.status == ExecutionStatus.FAILED
        assert "does not exist" in result.cause

    def test_child_bounded_by_parent_deadline(self, registry, executor, clock):
        child = StateMachineDefinition(
            name="Child",
            start_at="W",
            states={"W": WaitState(seconds=500, next="Done"), "Done": SucceedState()},
        )
        registry.register(START_EXECUTION_SYNC, NestedExecutionHandler({CHILD_ARN: child}))
        parent = machine(
            {
                "Run": TaskState(
                    resource=START_EXECUTION_SYNC,
                    parameters={"StateMachineArn": CHILD_ARN, "Input": {}},
                    end=True,
                )
            },
            "Run",
            timeout_seconds=100,
        )
        result = executor.execute(parent, {})
        assert result.status == ExecutionStatus.TIMED_OUT
        assert clock.now() == 100
