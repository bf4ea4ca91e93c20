"""AWS-backed task handlers and deployment.

The handlers let the local executor drive the real services: Lambda for the
compute steps, Textract for document analysis, SNS for the approval
channel. StateMachineDeployer publishes the definitions to Step Functions
so the managed service can run them instead.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import boto3
from botocore import xform_name
from botocore.exceptions import ClientError

from markflow.config.settings import Settings
from markflow.core.exceptions import StepInvocationError
from markflow.definitions.pipeline import Pipeline
from markflow.execution.tasks import (
    LAMBDA_INVOKE,
    SNS_PUBLISH,
    START_EXECUTION_SYNC,
    TEXTRACT_GET_DOCUMENT_ANALYSIS,
    TEXTRACT_START_DOCUMENT_ANALYSIS,
    NestedExecutionHandler,
    TaskContext,
    TaskRegistry,
)
from markflow.utils.logging import get_logger


logger = get_logger(__name__)


class AwsClients:
    """Lazily created boto3 clients sharing one session."""

    def __init__(self, settings: Settings, session: Optional[boto3.session.Session] = None):
        self.session = session or boto3.session.Session(region_name=settings.region)
        self._clients: Dict[str, Any] = {}

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self.session.client(service)
        return self._clients[service]


class LambdaInvokeHandler:
    """Synchronous Lambda invoke returning `{Payload, StatusCode, ExecutedVersion}`."""

    def __init__(self, client: Any):
        self.client = client

    def __call__(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        function_name = parameters["FunctionName"]
        payload = parameters.get("Payload", {})

        logger.debug("Invoking %s for %s", function_name, ctx.state_name)
        response = self.client.invoke(
            FunctionName=function_name,
            InvocationType="RequestResponse",
            Payload=json.dumps(payload).encode("utf-8"),
        )
        body = response["Payload"].read()
        result = json.loads(body) if body else None

        if response.get("FunctionError"):
            error = result.get("errorType") if isinstance(result, dict) else None
            raise StepInvocationError(
                f"Function {function_name} failed",
                context={"state": ctx.state_name},
                error=error or "Lambda.Unknown",
                cause=json.dumps(result),
            )

        return {
            "Payload": result,
            "StatusCode": response.get("StatusCode"),
            "ExecutedVersion": response.get("ExecutedVersion"),
        }


class SdkCallHandler:
    """Calls an API action with the task parameters as request fields.

    Parameters use the service's own (PascalCase) member names, which boto3
    accepts unchanged; the action name is the camelCase API name.
    """

    def __init__(self, client: Any, action: str):
        self.client = client
        self.action = action
        self._method = getattr(client, xform_name(action))

    def __call__(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        try:
            response = self._method(**parameters)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise StepInvocationError(
                f"{self.action} failed: {code}",
                context={"state": ctx.state_name},
                error=f"{self.client.meta.service_model.service_name.capitalize()}.{code}",
                cause=str(e),
            ) from e
        response.pop("ResponseMetadata", None)
        return response


class SnsPublishHandler:
    def __init__(self, client: Any):
        self.client = client

    def __call__(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        request = dict(parameters)
        message = request.get("Message")
        if not isinstance(message, str):
            request["Message"] = json.dumps(message)
        response = self.client.publish(**request)
        response.pop("ResponseMetadata", None)
        return response


def build_aws_registry(pipeline: Pipeline, clients: AwsClients) -> TaskRegistry:
    """Registry that runs every pipeline step against AWS."""
    textract = clients.client("textract")
    registry = TaskRegistry()
    registry.register(LAMBDA_INVOKE, LambdaInvokeHandler(clients.client("lambda")))
    registry.register(TEXTRACT_START_DOCUMENT_ANALYSIS, SdkCallHandler(textract, "startDocumentAnalysis"))
    registry.register(TEXTRACT_GET_DOCUMENT_ANALYSIS, SdkCallHandler(textract, "getDocumentAnalysis"))
    registry.register(SNS_PUBLISH, SnsPublishHandler(clients.client("sns")))
    registry.register(START_EXECUTION_SYNC, NestedExecutionHandler(pipeline.catalog()))
    return registry


# -----------------------------------------------------------------------------
# Deployment
# -----------------------------------------------------------------------------


class StateMachineDeployer:
    """Creates or updates the pipeline's state machines in Step Functions.

    Usage:
        deployer = StateMachineDeployer(clients.client("stepfunctions"), settings)
        arns = deployer.deploy(pipeline)
    """

    def __init__(self, client: Any, settings: Settings):
        self.client = client
        self.settings = settings

    def deploy(self, pipeline: Pipeline) -> Dict[str, str]:
        """Deploy every machine, nested ones first. Returns name -> ARN."""
        self.settings.require("state_machine_role_arn", "account_id")
        arns: Dict[str, str] = {}
        for arn, definition in pipeline.catalog().items():
            arns[definition.name] = self._deploy_one(arn, definition.name, definition.to_asl())
        return arns

    def _deploy_one(self, arn: str, name: str, document: Dict[str, Any]) -> str:
        body = json.dumps(document)
        try:
            response = self.client.create_state_machine(
                name=name,
                definition=body,
                roleArn=self.settings.state_machine_role_arn,
                type="STANDARD",
            )
            logger.info("Created state machine %s", name)
            return response["stateMachineArn"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "StateMachineAlreadyExists":
                raise

        self.client.update_state_machine(
            stateMachineArn=arn,
            definition=body,
            roleArn=self.settings.state_machine_role_arn,
        )
        logger.info("Updated state machine %s", name)
        return arn
