"""Custom exception hierarchy for markflow."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


# Error names used by the orchestration service for failures it raises itself
STATES_TIMEOUT = "States.Timeout"
STATES_TASK_FAILED = "States.TaskFailed"
STATES_RUNTIME = "States.Runtime"


@dataclass
class MarkflowError(Exception):
    """Base exception type for all markflow errors."""

    message: str
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        if not self.context:
            return self.message
        return f"{self.message} | context={self.context}"


class ConfigurationError(MarkflowError):
    """Raised when configuration is missing or invalid."""


class DefinitionError(MarkflowError):
    """Raised when a state machine definition is structurally invalid."""


class PathResolutionError(MarkflowError):
    """Raised when a JSONPath or intrinsic function cannot be resolved."""


# -----------------------------------------------------------------------------
# Execution failures
# -----------------------------------------------------------------------------


@dataclass
class ExecutionError(MarkflowError):
    """Raised when a state machine execution ends in failure.

    `error` and `cause` carry the names reported by the failing state, the
    same pair the managed service records on a failed execution.
    """

    error: str = STATES_RUNTIME
    cause: str = ""


class ExternalJobFailed(ExecutionError):
    """Raised when execution reaches a Fail state (e.g. the analysis job FAILED)."""


class WorkflowTimeout(ExecutionError):
    """Raised when an execution exceeds its wall-clock timeout."""


class StepInvocationError(ExecutionError):
    """Raised when a task handler errors or no handler exists for a resource."""
