"""Orientation-correction pipeline.

Splits a PDF into page images, optionally fixes page rotation, and
reassembles the pages into a PDF:

    PdfToImagesTask -> Skip Rotation Choice
        skipRotation == true -> Skip Fixing Rotation
        otherwise            -> AnalyzeDocumentImagesTask
                                -> CorrectImageOrientationTask
                                -> Wait 5 seconds
    -> ImagesToPdfTask

Each step is an external function; the state handed from step to step is
the previous function's payload.
"""

from __future__ import annotations

from markflow.config.settings import Settings
from markflow.core.states import (
    ChoiceRule,
    ChoiceState,
    PassState,
    StateMachineDefinition,
    chain,
)
from markflow.definitions.helpers import lambda_invoke_task, lambda_task_name, wait_state


MACHINE_NAME = "CorrectPdfOrientation"

SKIP_ROTATION_CHOICE = "Skip Rotation Choice"
SKIP_ROTATION = "Skip Fixing Rotation"


def build_orientation_definition(settings: Settings) -> StateMachineDefinition:
    """Build the orientation-correction machine.

    Input: `{"key": <object key>, "pdfSourceBucket": str,
    "pdfDestinationBucket": str, "skipRotation"?: bool}`. Only an explicit
    `skipRotation: true` bypasses detection and correction.
    """
    pdf_to_images = lambda_task_name(settings.pdf_to_images_function)
    analyze = lambda_task_name(settings.analyze_document_images_function)
    correct = lambda_task_name(settings.correct_image_orientation_function)
    images_to_pdf = lambda_task_name(settings.images_to_pdf_function)
    settle = wait_state(settings.rotation_settle_seconds)
    settle_name = settle.comment

    states = {
        pdf_to_images: lambda_invoke_task(settings.pdf_to_images_function),
        SKIP_ROTATION_CHOICE: ChoiceState(
            choices=[
                ChoiceRule(
                    and_=[
                        ChoiceRule(variable="$.skipRotation", is_present=True),
                        ChoiceRule(variable="$.skipRotation", boolean_equals=True),
                    ],
                    next=SKIP_ROTATION,
                ),
            ],
            default=analyze,
        ),
        SKIP_ROTATION: PassState(),
        analyze: lambda_invoke_task(settings.analyze_document_images_function),
        correct: lambda_invoke_task(settings.correct_image_orientation_function),
        settle_name: settle,
        images_to_pdf: lambda_invoke_task(settings.images_to_pdf_function),
    }
    chain(states, pdf_to_images, SKIP_ROTATION_CHOICE, end=False)
    chain(states, SKIP_ROTATION, images_to_pdf)
    chain(states, analyze, correct, settle_name, images_to_pdf)

    return StateMachineDefinition(
        name=settings.machine_name(MACHINE_NAME),
        comment="Split a PDF into images, fix page orientation and rebuild the PDF",
        start_at=pdf_to_images,
        states=states,
        timeout_seconds=settings.timeout_seconds,
    )
