"""Top-level assignment marking orchestrator.

Runs the submission ("scripts") and the reference answer ("standardAnswer")
through the same three nested machines concurrently, then marks one
against the other:

    StartPass -> ProcessParallel
        [0] ScriptsPass -> orientation -> textract -> transform
        [1] StandardAnswerPass -> orientation -> textract -> transform
    -> GenerateMarkResultStateMachineExecution

Branch outputs are merged by position: branch 0 fills `scripts` and
branch 1 fills `standardAnswer`, whichever finishes first.

Each branch pass state also names the source and destination buckets, so
every orientation function receives them in its payload.
"""

from __future__ import annotations

from markflow.config.settings import Settings
from markflow.core.states import Branch, ParallelState, PassState, StateMachineDefinition, chain
from markflow.definitions import marking, orientation, textract, transform
from markflow.definitions.helpers import start_execution_task


MACHINE_NAME = "AssignmentsTextract"

START = "StartPass"
PARALLEL = "ProcessParallel"
GENERATE_MARK = "GenerateMarkResultStateMachineExecution"


def _document_branch(settings: Settings, prefix: str, pass_name: str, key_path: str, skip_rotation: bool) -> Branch:
    """Orientation -> analysis -> transform for the document at `key_path`."""
    parameters = {
        "key.$": key_path,
        "pdfSourceBucket": settings.pdf_source_bucket,
        "pdfDestinationBucket": settings.pdf_destination_bucket,
    }
    if skip_rotation:
        parameters["skipRotation"] = True

    orient = f"{prefix}CorrectPdfOrientationStateMachineExecution"
    analyze = f"{prefix}AmazonTextractMultiPagesDocumentsStateMachineExecution"
    transform_name = f"{prefix}TransformFormResultStateMachineExecution"

    states = {
        pass_name: PassState(parameters=parameters, result_path="$.Input"),
        orient: start_execution_task(settings.state_machine_arn(orientation.MACHINE_NAME)),
        # The orientation execution's own Input carries the key on to analysis
        analyze: start_execution_task(settings.state_machine_arn(textract.MACHINE_NAME)),
        transform_name: start_execution_task(
            settings.state_machine_arn(transform.MACHINE_NAME), input_path="$.Output"
        ),
    }
    chain(states, pass_name, orient, analyze, transform_name)
    return Branch(start_at=pass_name, states=states)


def build_assignments_definition(settings: Settings) -> StateMachineDefinition:
    """Build the orchestrator.

    Input: `{"scriptsKey": str, "standardAnswerKey": str}`.
    Output: the mark-generation execution's description; its `Output`
    holds the mark result.
    """
    settings.require("pdf_source_bucket", "pdf_destination_bucket")
    scripts = _document_branch(settings, "Scripts", "ScriptsPass", "$.scriptsKey", skip_rotation=False)
    # Reference answers are produced upright
    answer = _document_branch(
        settings, "Answer", "StandardAnswerPass", "$.standardAnswerKey", skip_rotation=True
    )

    states = {
        START: PassState(),
        PARALLEL: ParallelState(
            branches=[scripts, answer],
            result_selector={
                "scripts.$": "$[0].Output",
                "standardAnswer.$": "$[1].Output",
            },
        ),
        GENERATE_MARK: start_execution_task(
            settings.state_machine_arn(marking.MACHINE_NAME), input_path="$"
        ),
    }
    chain(states, START, PARALLEL, GENERATE_MARK)

    return StateMachineDefinition(
        name=settings.machine_name(MACHINE_NAME),
        comment="Mark assignment scripts against the standard answer",
        start_at=START,
        states=states,
        timeout_seconds=settings.timeout_seconds,
    )
