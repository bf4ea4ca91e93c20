"""State machine execution engine."""

from markflow.execution.cancellation import CancelScope
from markflow.execution.clock import Clock, ManualClock, SystemClock
from markflow.execution.executor import ExecutionResult, ExecutionStatus, StateMachineExecutor
from markflow.execution.tasks import NestedExecutionHandler, TaskContext, TaskRegistry

__all__ = [
    "CancelScope",
    "Clock",
    "ManualClock",
    "SystemClock",
    "ExecutionResult",
    "ExecutionStatus",
    "StateMachineExecutor",
    "NestedExecutionHandler",
    "TaskContext",
    "TaskRegistry",
]
