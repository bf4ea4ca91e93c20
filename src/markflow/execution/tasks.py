"""Task resource handlers and their registry.

A Task state names a `resource`; at execution time the registry maps that
resource to a handler callable:

    handler(parameters, ctx) -> result

`parameters` is the state's resolved Parameters (or its effective input when
it has none) and `ctx` is a TaskContext. Handlers raise to fail the task.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from markflow.core.exceptions import (
    STATES_TASK_FAILED,
    ExecutionError,
    StepInvocationError,
)
from markflow.execution.cancellation import STATES_BRANCH_CANCELLED, CancelScope
from markflow.utils.logging import get_logger

if TYPE_CHECKING:
    from markflow.core.states import StateMachineDefinition
    from markflow.execution.clock import Clock
    from markflow.execution.executor import StateMachineExecutor


logger = get_logger(__name__)


# Resources used by the pipeline definitions
LAMBDA_INVOKE = "arn:aws:states:::lambda:invoke"
TEXTRACT_START_DOCUMENT_ANALYSIS = "arn:aws:states:::aws-sdk:textract:startDocumentAnalysis"
TEXTRACT_GET_DOCUMENT_ANALYSIS = "arn:aws:states:::aws-sdk:textract:getDocumentAnalysis"
SNS_PUBLISH = "arn:aws:states:::sns:publish"
START_EXECUTION_SYNC = "arn:aws:states:::states:startExecution.sync:2"


@dataclass
class TaskContext:
    """What a handler knows about the execution invoking it."""
    executor: "StateMachineExecutor"
    state_name: str
    context: Dict[str, Any]
    clock: "Clock"
    deadline: Optional[float] = None
    cancel: CancelScope = field(default_factory=CancelScope)

    @property
    def execution_name(self) -> str:
        return self.context["Execution"]["Name"]


Handler = Callable[[Any, TaskContext], Any]


class TaskRegistry:
    """Maps Task resources to handlers.

    Usage:
        registry = TaskRegistry()
        registry.register(LAMBDA_INVOKE, lambda params, ctx: {"Payload": params["Payload"]})
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(self, resource: str, handler: Handler) -> None:
        self._handlers[resource] = handler

    def resources(self) -> List[str]:
        return list(self._handlers)

    def invoke(self, resource: str, parameters: Any, ctx: TaskContext) -> Any:
        handler = self._handlers.get(resource)
        if handler is None:
            raise StepInvocationError(
                f"No handler registered for resource: {resource}",
                context={"state": ctx.state_name},
                error=STATES_TASK_FAILED,
                cause=f"Unknown resource {resource}",
            )

        try:
            return handler(parameters, ctx)
        except ExecutionError:
            raise
        except Exception as e:
            logger.warning("Task %s failed: %s", ctx.state_name, e)
            raise StepInvocationError(
                f"Task {ctx.state_name} failed: {e}",
                context={"state": ctx.state_name, "resource": resource},
                error=STATES_TASK_FAILED,
                cause=str(e),
            ) from e


class NestedExecutionHandler:
    """Runs a child state machine to completion (the `.sync` pattern).

    The catalog maps state machine ARNs to definitions. The response has
    the shape of a finished execution description, with `Input` and
    `Output` as JSON values.
    """

    def __init__(self, catalog: Mapping[str, "StateMachineDefinition"]):
        self.catalog = dict(catalog)

    def __call__(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        arn = parameters.get("StateMachineArn")
        definition = self.catalog.get(arn)
        if definition is None:
            raise StepInvocationError(
                f"Unknown state machine: {arn}",
                context={"state": ctx.state_name},
                error=STATES_TASK_FAILED,
                cause=f"State machine {arn} does not exist",
            )

        child_input = parameters.get("Input", {})
        if isinstance(child_input, str):
            child_input = json.loads(child_input)
        name = parameters.get("Name") or uuid4().hex

        started = datetime.now(timezone.utc)
        result = ctx.executor.execute(definition, child_input, name=name, parent=ctx)
        response = {
            "ExecutionArn": f"{arn.replace(':stateMachine:', ':execution:')}:{name}",
            "StateMachineArn": arn,
            "Name": name,
            "Status": result.status.value,
            "StartDate": started.isoformat(),
            "StopDate": datetime.now(timezone.utc).isoformat(),
            "Input": child_input,
            "Output": result.output,
        }

        if result.error == STATES_BRANCH_CANCELLED:
            # Stopped by the enclosing Parallel, not a failure of its own
            raise result.exception
        if not result.success:
            raise StepInvocationError(
                f"Nested execution of {definition.name} ended {result.status.value}",
                context={"state": ctx.state_name, "error": result.error},
                error=STATES_TASK_FAILED,
                cause=json.dumps({**response, "Error": result.error, "Cause": result.cause}, default=str),
            )
        return response
