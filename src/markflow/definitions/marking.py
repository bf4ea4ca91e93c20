"""Mark generation: scores the transformed scripts against the standard answer.

When an approval topic is configured, the mark result is also published to
it so an examiner can approve the marks; the machine's output is the mark
result either way.
"""

from __future__ import annotations

from markflow.config.settings import Settings
from markflow.core.states import StateMachineDefinition, TaskState
from markflow.definitions.helpers import lambda_invoke_task, lambda_task_name
from markflow.execution.tasks import SNS_PUBLISH


MACHINE_NAME = "GenerateMarkResult"

PUBLISH_APPROVAL = "PublishApprovalRequest"
APPROVAL_SUBJECT = "Mark result ready for approval"


def build_marking_definition(settings: Settings) -> StateMachineDefinition:
    """Input: `{"scripts": ..., "standardAnswer": ...}`."""
    task = lambda_task_name(settings.generate_mark_result_function)
    mark = lambda_invoke_task(settings.generate_mark_result_function)
    states = {task: mark}

    if settings.approval_topic_arn:
        # Keep the invoke response around so the payload can be both
        # published and returned
        mark.output_path = None
        mark.next = PUBLISH_APPROVAL
        states[PUBLISH_APPROVAL] = TaskState(
            resource=SNS_PUBLISH,
            parameters={
                "TopicArn": settings.approval_topic_arn,
                "Subject": APPROVAL_SUBJECT,
                "Message.$": "$.results.Payload",
            },
            result_path="$.notification",
            output_path="$.results.Payload",
            end=True,
        )
    else:
        mark.end = True

    return StateMachineDefinition(
        name=settings.machine_name(MACHINE_NAME),
        comment="Generate marks for the scripts against the standard answer",
        start_at=task,
        states=states,
        timeout_seconds=settings.timeout_seconds,
    )
