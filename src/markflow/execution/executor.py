"""In-process state machine executor.

This module runs StateMachineDefinitions the way the managed orchestration
service does, so pipeline topologies can be exercised locally and in tests.

The executor walks the transition table:
1. Starts at `StartAt` with the execution input
2. Pass/Task/Wait/Parallel states transform the state data, then follow `Next`
3. Choice states pick the first matching rule (or `Default`)
4. Succeed ends the execution; Fail ends it with the state's error and cause
5. The machine timeout is checked before every state and during waits

Task states go through the TaskRegistry. Data flows through a task as
InputPath -> Parameters -> handler -> ResultSelector -> ResultPath -> OutputPath.
"""

from __future__ import annotations

import copy
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from markflow.core.exceptions import (
    STATES_RUNTIME,
    STATES_TIMEOUT,
    ExecutionError,
    ExternalJobFailed,
    PathResolutionError,
    StepInvocationError,
    WorkflowTimeout,
)
from markflow.core.paths import path_exists, read_path, resolve_parameters, write_path
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
from markflow.execution.cancellation import STATES_BRANCH_CANCELLED, CancelScope
from markflow.execution.clock import Clock, SystemClock
from markflow.execution.tasks import TaskContext, TaskRegistry
from markflow.utils.logging import get_logger


logger = get_logger(__name__)

STATES_NO_CHOICE_MATCHED = "States.NoChoiceMatched"


class ExecutionStatus(str, Enum):
    """Terminal status of an execution."""
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


@dataclass
class ExecutionResult:
    """Result of running a state machine."""
    name: str
    status: ExecutionStatus
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    cause: Optional[str] = None
    path: List[str] = field(default_factory=list)
    exception: Optional[ExecutionError] = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCEEDED

    def raise_for_status(self) -> "ExecutionResult":
        """Re-raise the failure that ended the execution, if any."""
        if self.exception is not None:
            raise self.exception
        return self


@dataclass
class _Run:
    """Per-branch execution state threaded through the walk."""
    execution_name: str
    definition_name: str
    context: Dict[str, Any]
    clock: Clock
    deadline: Optional[float]
    cancel: CancelScope
    path: List[str]
    failed_at: Optional[float] = None


class StateMachineExecutor:
    """Executes state machine definitions.

    Usage:
        executor = StateMachineExecutor(registry, clock=ManualClock())
        result = executor.execute(definition, {"key": "s.pdf"})
        if result.success:
            print(result.output)
        else:
            print(result.error, result.cause)
    """

    def __init__(
        self,
        registry: TaskRegistry,
        clock: Optional[Clock] = None,
        *,
        max_workers: int = 4,
        max_steps: int = 10_000,
    ):
        """Initialize executor.

        Args:
            registry: Handlers for Task resources.
            clock: Time source for waits and timeouts. Defaults to real time.
            max_workers: Upper bound on concurrently running Parallel branches.
            max_steps: Per-branch guard against definitions that never terminate.
        """
        self.registry = registry
        self.clock = clock or SystemClock()
        self.max_workers = max_workers
        self.max_steps = max_steps

    def execute(
        self,
        definition: StateMachineDefinition,
        input: Any = None,
        *,
        name: Optional[str] = None,
        parent: Optional[TaskContext] = None,
    ) -> ExecutionResult:
        """Execute a definition with the given input.

        Args:
            definition: The state machine to run.
            input: Execution input (defaults to an empty object).
            name: Execution name; generated when omitted.
            parent: Task context of the invoking execution, for nested runs.
                The child shares the parent's clock and cancellation, and
                cannot outlive the parent's deadline.

        Returns:
            ExecutionResult; failures are reported in it, not raised.
        """
        name = name or uuid4().hex
        data = copy.deepcopy(input) if input is not None else {}
        clock = parent.clock if parent is not None else self.clock
        cancel = parent.cancel if parent is not None else CancelScope()

        deadline = None
        if definition.timeout_seconds is not None:
            deadline = clock.now() + definition.timeout_seconds
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)

        run = _Run(
            execution_name=name,
            definition_name=definition.name,
            context={
                "Execution": {
                    "Id": f"{definition.name}:{name}",
                    "Name": name,
                    "Input": copy.deepcopy(data),
                    "StartTime": datetime.now(timezone.utc).isoformat(),
                },
                "StateMachine": {"Id": definition.name, "Name": definition.name},
            },
            clock=clock,
            deadline=deadline,
            cancel=cancel,
            path=[],
        )

        log_fields = {"execution": name, "state_machine": definition.name}
        logger.info("Starting execution %s of %s", name, definition.name, extra=log_fields)
        try:
            output = self._run_branch(definition, data, run)
        except WorkflowTimeout as e:
            logger.warning(
                "Execution %s of %s timed out",
                name,
                definition.name,
                extra={**log_fields, "status": ExecutionStatus.TIMED_OUT.value, "error": e.error},
            )
            return self._failed(name, ExecutionStatus.TIMED_OUT, input, run.path, e)
        except ExecutionError as e:
            logger.warning(
                "Execution %s of %s failed: %s (%s)",
                name,
                definition.name,
                e.error,
                e.cause,
                extra={**log_fields, "status": ExecutionStatus.FAILED.value, "error": e.error},
            )
            return self._failed(name, ExecutionStatus.FAILED, input, run.path, e)
        except PathResolutionError as e:
            error = ExecutionError(e.message, context=e.context, error=STATES_RUNTIME, cause=e.message)
            logger.warning(
                "Execution %s of %s failed: %s",
                name,
                definition.name,
                e,
                extra={**log_fields, "status": ExecutionStatus.FAILED.value, "error": STATES_RUNTIME},
            )
            return self._failed(name, ExecutionStatus.FAILED, input, run.path, error)

        logger.info(
            "Execution %s of %s succeeded",
            name,
            definition.name,
            extra={**log_fields, "status": ExecutionStatus.SUCCEEDED.value},
        )
        return ExecutionResult(
            name=name,
            status=ExecutionStatus.SUCCEEDED,
            input=input,
            output=output,
            path=run.path,
        )

    # -------------------------------------------------------------------------
    # Graph walk
    # -------------------------------------------------------------------------

    def _run_branch(self, branch: Branch, data: Any, run: _Run) -> Any:
        current = branch.start_at

        for _ in range(self.max_steps):
            self._check_deadline(run)
            if run.cancel.stops(run.clock.now()):
                raise ExecutionError(
                    "Branch cancelled after a sibling failed",
                    error=STATES_BRANCH_CANCELLED,
                )

            state = branch.states[current]
            run.path.append(current)
            logger.debug(
                "Entering state %s of %s",
                current,
                run.definition_name,
                extra={"execution": run.execution_name, "state": current},
            )
            context = {**run.context, "State": {"Name": current}}

            if isinstance(state, SucceedState):
                return data

            if isinstance(state, FailState):
                raise ExternalJobFailed(
                    f"Execution failed at state {current}",
                    context={"state": current},
                    error=state.error,
                    cause=state.cause,
                )

            if isinstance(state, ChoiceState):
                current = self._choose(current, state, data)
                continue

            if isinstance(state, WaitState):
                self._wait(state.seconds, run)
            elif isinstance(state, PassState):
                data = self._pass(state, data, context)
            elif isinstance(state, TaskState):
                data = self._task(current, state, data, context, run)
            elif isinstance(state, ParallelState):
                data = self._parallel(current, state, data, context, run)
            else:
                raise ExecutionError(
                    f"Unknown state type: {type(state).__name__}",
                    error=STATES_RUNTIME,
                )

            if state.end:
                self._check_deadline(run)
                return data
            current = state.next

        raise ExecutionError(
            f"Execution exceeded {self.max_steps} steps",
            error=STATES_RUNTIME,
            cause="Maximum step count exceeded",
        )

    def _choose(self, name: str, state: ChoiceState, data: Any) -> str:
        for rule in state.choices:
            if self._matches(rule, data):
                return rule.next
        if state.default is not None:
            return state.default
        raise ExecutionError(
            f"No choice rule matched in state {name}",
            context={"state": name},
            error=STATES_NO_CHOICE_MATCHED,
            cause=f"No Choice rule matched and no Default in {name}",
        )

    def _matches(self, rule: ChoiceRule, data: Any) -> bool:
        if rule.and_ is not None:
            return all(self._matches(r, data) for r in rule.and_)
        if rule.is_present is not None:
            return path_exists(rule.variable, data) == rule.is_present

        value = read_path(rule.variable, data)
        if rule.string_equals is not None:
            return isinstance(value, str) and value == rule.string_equals
        if rule.boolean_equals is not None:
            return isinstance(value, bool) and value == rule.boolean_equals
        return False

    def _wait(self, seconds: float, run: _Run) -> None:
        if run.deadline is not None:
            remaining = run.deadline - run.clock.now()
            if seconds > remaining:
                run.clock.sleep(max(remaining, 0))
                self._check_deadline(run)
        logger.info(
            "Waiting %s seconds in %s",
            seconds,
            run.definition_name,
            extra={"execution": run.execution_name, "state_machine": run.definition_name},
        )
        run.clock.sleep(seconds)

    def _pass(self, state: PassState, data: Any, context: Dict[str, Any]) -> Any:
        if state.parameters is None:
            result = data
        else:
            result = resolve_parameters(state.parameters, data, context)
        return write_path(state.result_path or "$", data, result)

    def _task(
        self,
        name: str,
        state: TaskState,
        data: Any,
        context: Dict[str, Any],
        run: _Run,
    ) -> Any:
        effective = read_path(state.input_path or "$", data)
        if state.parameters is None:
            parameters = copy.deepcopy(effective)
        else:
            parameters = resolve_parameters(state.parameters, effective, context)

        ctx = TaskContext(
            executor=self,
            state_name=name,
            context=context,
            clock=run.clock,
            deadline=run.deadline,
            cancel=run.cancel,
        )
        try:
            result = self.registry.invoke(state.resource, parameters, ctx)
        except StepInvocationError:
            # A nested execution stopped by our own deadline is our timeout
            self._check_deadline(run)
            raise

        if state.result_selector is not None:
            result = resolve_parameters(state.result_selector, result, context)
        data = write_path(state.result_path or "$", data, result)
        return read_path(state.output_path or "$", data)

    def _parallel(
        self,
        name: str,
        state: ParallelState,
        data: Any,
        context: Dict[str, Any],
        run: _Run,
    ) -> Any:
        cancel = CancelScope(parent=run.cancel)
        runs = [
            _Run(
                execution_name=run.execution_name,
                definition_name=f"{run.definition_name}/{name}[{index}]",
                context=run.context,
                clock=run.clock.fork(),
                deadline=run.deadline,
                cancel=cancel,
                path=[],
            )
            for index in range(len(state.branches))
        ]

        outputs: List[Any] = [None] * len(state.branches)
        failures: List[Tuple[float, int, Exception]] = []
        workers = max(1, min(self.max_workers, len(state.branches)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._run_parallel_branch, branch, copy.deepcopy(data), branch_run): index
                for index, (branch, branch_run) in enumerate(zip(state.branches, runs))
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    outputs[index] = future.result()
                except (ExecutionError, PathResolutionError) as e:
                    failures.append((runs[index].failed_at, index, e))

        run.clock.join([r.clock for r in runs])
        for branch_run in runs:
            run.path.extend(branch_run.path)

        if failures:
            # Earliest failure by clock time, then branch order; branches
            # stopped by the scope only count when nothing else failed
            causes = [f for f in failures if not _is_cancellation(f[2])] or failures
            raise min(causes, key=lambda f: (f[0], f[1]))[2]

        result: Any = outputs
        if state.result_selector is not None:
            result = resolve_parameters(state.result_selector, outputs, context)
        return write_path(state.result_path or "$", data, result)

    def _run_parallel_branch(self, branch: Branch, data: Any, run: _Run) -> Any:
        try:
            return self._run_branch(branch, data, run)
        except (ExecutionError, PathResolutionError) as e:
            run.failed_at = run.clock.now()
            if not _is_cancellation(e):
                run.cancel.trip(run.failed_at)
            raise

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def _check_deadline(self, run: _Run) -> None:
        if run.deadline is not None and run.clock.now() >= run.deadline:
            raise WorkflowTimeout(
                f"Execution of {run.definition_name} timed out",
                error=STATES_TIMEOUT,
                cause="Execution exceeded its timeout",
            )

    def _failed(
        self,
        name: str,
        status: ExecutionStatus,
        input: Any,
        path: List[str],
        error: ExecutionError,
    ) -> ExecutionResult:
        return ExecutionResult(
            name=name,
            status=status,
            input=input,
            error=error.error,
            cause=error.cause,
            path=path,
            exception=error,
        )


def _is_cancellation(error: Exception) -> bool:
    return isinstance(error, ExecutionError) and error.error == STATES_BRANCH_CANCELLED
