"""Form-result transform: turns raw analysis output into structured answers."""

from __future__ import annotations

from markflow.config.settings import Settings
from markflow.core.states import StateMachineDefinition
from markflow.definitions.helpers import lambda_invoke_task, lambda_task_name


MACHINE_NAME = "TransformFormResult"


def build_transform_definition(settings: Settings) -> StateMachineDefinition:
    """Input is the job runner's output (`key`, `JobId`, `textractPrefix`)."""
    task = lambda_task_name(settings.transform_form_result_function)
    state = lambda_invoke_task(settings.transform_form_result_function)
    state.end = True

    return StateMachineDefinition(
        name=settings.machine_name(MACHINE_NAME),
        comment="Transform Textract form and table output into answer records",
        start_at=task,
        states={task: state},
        timeout_seconds=settings.timeout_seconds,
    )
