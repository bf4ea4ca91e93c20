"""Shared fixtures for pipeline tests.

Definitions are built from explicit settings (never the environment), and
executions run on a ManualClock so waits and timeouts take no real time.
"""

import pytest

from markflow.config.settings import Settings
from markflow.definitions.pipeline import Pipeline, build_pipeline
from markflow.execution.clock import ManualClock
from markflow.execution.executor import StateMachineExecutor
from markflow.services.local import LocalLambda, LocalTextract, LocalTopic, build_local_registry


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment and any .env file."""
    values = {
        "pdf_source_bucket": "source-bucket",
        "pdf_destination_bucket": "destination-bucket",
        "account_id": "123456789012",
        "region": "us-east-1",
        "state_machine_role_arn": "arn:aws:iam::123456789012:role/markflow",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def pipeline(settings) -> Pipeline:
    return build_pipeline(settings)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def functions() -> LocalLambda:
    return LocalLambda()


@pytest.fixture
def textract() -> LocalTextract:
    return LocalTextract(statuses=["SUCCEEDED"])


@pytest.fixture
def topic() -> LocalTopic:
    return LocalTopic()


@pytest.fixture
def make_executor(functions, textract, topic, clock):
    """Factory for executors over another pipeline or scripted services.

    Anything not passed uses the shared fixture of the same name.
    """

    def factory(pipeline, **services) -> StateMachineExecutor:
        registry = build_local_registry(
            pipeline,
            functions=services.get("functions", functions),
            textract=services.get("textract", textract),
            topic=services.get("topic", topic),
        )
        return StateMachineExecutor(registry, clock=services.get("clock", clock))

    return factory


@pytest.fixture
def executor(pipeline, make_executor) -> StateMachineExecutor:
    """Executor wired to in-memory services for `pipeline`."""
    return make_executor(pipeline)
