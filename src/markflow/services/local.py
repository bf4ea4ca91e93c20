"""In-memory stand-ins for the AWS services.

Used by `markflow run --dry-run` and by tests to exercise the pipeline
topology without network access.
"""

from __future__ import annotations

import itertools
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

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


FunctionBody = Callable[[Any], Any]


class LocalLambda:
    """Runs registered Python callables in place of functions.

    Functions without a registered body echo their payload back.
    """

    def __init__(self, functions: Optional[Dict[str, FunctionBody]] = None):
        self.functions = dict(functions or {})
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def __call__(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        name = parameters["FunctionName"]
        payload = parameters.get("Payload")
        with self._lock:
            self.calls.append({"FunctionName": name, "Payload": payload})
        body = self.functions.get(name)
        result = body(payload) if body is not None else payload
        return {"Payload": result, "StatusCode": 200, "ExecutedVersion": "$LATEST"}

    def called(self, name: str) -> List[Any]:
        """Payloads the named function was invoked with, in call order."""
        return [c["Payload"] for c in self.calls if c["FunctionName"] == name]


class LocalTextract:
    """Document analysis jobs that report a scripted sequence of statuses.

    Each job walks through `statuses` one poll at a time and then keeps
    reporting the last one.

    Usage:
        textract = LocalTextract(statuses=["IN_PROGRESS", "SUCCEEDED"])
    """

    def __init__(self, statuses: Iterable[str] = ("SUCCEEDED",)):
        self.statuses = list(statuses)
        if not self.statuses:
            raise ValueError("statuses cannot be empty")
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.polls: Dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def start_document_analysis(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        with self._lock:
            job_id = f"job-{next(self._ids):04d}"
            self.jobs[job_id] = parameters
            self.polls[job_id] = 0
        return {"JobId": job_id}

    def get_document_analysis(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        job_id = parameters["JobId"]
        with self._lock:
            if job_id not in self.jobs:
                raise KeyError(f"Unknown job: {job_id}")
            poll = self.polls[job_id]
            self.polls[job_id] = poll + 1
        status = self.statuses[min(poll, len(self.statuses) - 1)]
        return {"JobStatus": status, "Blocks": []}


class LocalTopic:
    """Records published messages."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def __call__(self, parameters: Dict[str, Any], ctx: TaskContext) -> Dict[str, Any]:
        with self._lock:
            self.messages.append(dict(parameters))
            return {"MessageId": f"msg-{len(self.messages):04d}"}


def build_local_registry(
    pipeline: Pipeline,
    *,
    functions: Optional[LocalLambda] = None,
    textract: Optional[LocalTextract] = None,
    topic: Optional[LocalTopic] = None,
) -> TaskRegistry:
    """Registry backed by the in-memory services."""
    functions = functions or LocalLambda()
    textract = textract or LocalTextract()
    topic = topic or LocalTopic()

    registry = TaskRegistry()
    registry.register(LAMBDA_INVOKE, functions)
    registry.register(TEXTRACT_START_DOCUMENT_ANALYSIS, textract.start_document_analysis)
    registry.register(TEXTRACT_GET_DOCUMENT_ANALYSIS, textract.get_document_analysis)
    registry.register(SNS_PUBLISH, topic)
    registry.register(START_EXECUTION_SYNC, NestedExecutionHandler(pipeline.catalog()))
    return registry
