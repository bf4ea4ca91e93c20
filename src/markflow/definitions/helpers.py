"""Builders for the task and wait states the pipeline definitions share."""

from __future__ import annotations

from typing import Optional

from markflow.core.states import TaskState, WaitState
from markflow.execution.tasks import LAMBDA_INVOKE, START_EXECUTION_SYNC


def lambda_task_name(function_name: str) -> str:
    """State name for a Lambda step: "pdf-to-images" -> "PdfToImagesTask"."""
    parts = [p for p in function_name.replace("_", "-").split("-") if p]
    return "".join(p[:1].upper() + p[1:].lower() for p in parts) + "Task"


def lambda_invoke_task(function_name: str, *, comment: Optional[str] = None) -> TaskState:
    """Invoke a function with the whole state as payload.

    The invoke response is stored under `$.results` and execution continues
    with the function's payload alone.
    """
    return TaskState(
        resource=LAMBDA_INVOKE,
        comment=comment,
        parameters={"FunctionName": function_name, "Payload.$": "$"},
        result_path="$.results",
        output_path="$.results.Payload",
    )


def start_execution_task(state_machine_arn: str, input_path: str = "$.Input") -> TaskState:
    """Run another state machine to completion with the value at `input_path`.

    The finished execution's description (Input, Output, Status, ...)
    becomes the state.
    """
    return TaskState(
        resource=START_EXECUTION_SYNC,
        parameters={"StateMachineArn": state_machine_arn, "Input.$": input_path},
        result_path="$.results",
        output_path="$.results",
    )


def describe_wait(seconds: int) -> str:
    """Human name for a wait: 60 -> "Wait 1 minute", 5 -> "Wait 5 seconds"."""
    if seconds and seconds % 60 == 0:
        minutes = seconds // 60
        return f"Wait {minutes} minute" + ("" if minutes == 1 else "s")
    return f"Wait {seconds} second" + ("" if seconds == 1 else "s")


def wait_state(seconds: int, next: Optional[str] = None) -> WaitState:
    return WaitState(seconds=seconds, comment=describe_wait(seconds), next=next)
