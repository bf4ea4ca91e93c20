"""Document-analysis job runner.

Submits a multi-page document to Amazon Textract, polls the job until it
reaches a terminal status, and either fails with a fixed error or returns
the job id together with the prefix its output was written under:

    RunAmazonTextract -> GetDocumentAnalysis -> Check Job Status
        FAILED    -> Job Failed (Fail)
        SUCCEEDED -> Job Finish
        otherwise -> Wait 1 minute -> GetDocumentAnalysis
"""

from __future__ import annotations

from typing import Any, Dict

from markflow.config.settings import Settings
from markflow.core.states import (
    ChoiceRule,
    ChoiceState,
    FailState,
    PassState,
    StateMachineDefinition,
    TaskState,
)
from markflow.definitions.helpers import describe_wait, wait_state
from markflow.execution.tasks import (
    TEXTRACT_GET_DOCUMENT_ANALYSIS,
    TEXTRACT_START_DOCUMENT_ANALYSIS,
)


MACHINE_NAME = "AmazonTextractMultiPagesDocuments"

JOB_FAILED_CAUSE = "Amazon Textract Job Failed"
JOB_FAILED_ERROR = "DescribeJob returned FAILED"
FEATURE_TYPES = ["FORMS", "TABLES"]

SUBMIT = "RunAmazonTextract"
POLL = "GetDocumentAnalysis"
DECIDE = "Check Job Status"
FAILURE = "Job Failed"
SUCCESS = "Job Finish"


def build_textract_definition(settings: Settings) -> StateMachineDefinition:
    """Build the job runner over documents in the destination bucket.

    Input: `{"key": <object key>}`.
    Output: `{"key", "JobId", "textractPrefix": "<key>/<JobId>"}`.
    """
    settings.require("pdf_destination_bucket")
    bucket = settings.pdf_destination_bucket
    wait = describe_wait(settings.textract_poll_interval_seconds)

    start_parameters: Dict[str, Any] = {
        "ClientRequestToken.$": "$$.Execution.Name",
        "DocumentLocation": {"S3Object": {"Bucket": bucket, "Name.$": "$.key"}},
        "FeatureTypes": list(FEATURE_TYPES),
        "JobTag.$": "$$.Execution.Name",
        "OutputConfig": {"S3Bucket": bucket, "S3Prefix.$": "$.key"},
    }
    if settings.textract_notifications_enabled:
        start_parameters["NotificationChannel"] = {
            "RoleArn": settings.textract_notification_role_arn,
            "SnsTopicArn": settings.textract_notification_topic_arn,
        }

    states = {
        SUBMIT: TaskState(
            resource=TEXTRACT_START_DOCUMENT_ANALYSIS,
            parameters=start_parameters,
            result_selector={"JobId.$": "$.JobId"},
            result_path="$.textract",
            next=POLL,
        ),
        POLL: TaskState(
            resource=TEXTRACT_GET_DOCUMENT_ANALYSIS,
            parameters={"JobId.$": "$.textract.JobId", "MaxResults": 1},
            result_selector={"JobStatus.$": "$.JobStatus"},
            result_path="$.status",
            next=DECIDE,
        ),
        DECIDE: ChoiceState(
            choices=[
                ChoiceRule(variable="$.status.JobStatus", string_equals="FAILED", next=FAILURE),
                ChoiceRule(variable="$.status.JobStatus", string_equals="SUCCEEDED", next=SUCCESS),
            ],
            default=wait,
        ),
        wait: wait_state(settings.textract_poll_interval_seconds, next=POLL),
        FAILURE: FailState(cause=JOB_FAILED_CAUSE, error=JOB_FAILED_ERROR),
        SUCCESS: PassState(
            comment="AWS Textract Job Finish",
            parameters={
                "key.$": "$.key",
                "JobId.$": "$.textract.JobId",
                "textractPrefix.$": "States.Format('{}/{}', $.key, $.textract.JobId)",
            },
            end=True,
        ),
    }

    return StateMachineDefinition(
        name=settings.machine_name(MACHINE_NAME),
        comment="Run Amazon Textract document analysis on a multi-page document",
        start_at=SUBMIT,
        states=states,
        timeout_seconds=settings.timeout_seconds,
    )
