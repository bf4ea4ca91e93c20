"""Tests for log formatting and the fields the executor logs with."""

import json
import logging
import sys
from dataclasses import dataclass

from markflow.config.settings import Settings
from markflow.core.states import FailState, PassState, StateMachineDefinition, WaitState
from markflow.execution.clock import ManualClock
from markflow.execution.executor import StateMachineExecutor
from markflow.execution.tasks import TaskRegistry
from markflow.utils.logging import JsonLogFormatter, TextLogFormatter, extra_fields


@dataclass
class Location:
    bucket: str
    key: str


def make_record(msg="Starting execution", exc_info=None, **extra):
    record = logging.LogRecord("markflow.test", logging.INFO, __file__, 1, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonLogFormatter:
    def test_standard_fields(self):
        payload = json.loads(JsonLogFormatter().format(make_record()))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "markflow.test"
        assert payload["message"] == "Starting execution"
        assert payload["time"].endswith("+00:00")

    def test_extra_fields_included(self):
        record = make_record(execution="run-1", state_machine="AssignmentsTextract")
        payload = json.loads(JsonLogFormatter().format(record))
        assert payload["execution"] == "run-1"
        assert payload["state_machine"] == "AssignmentsTextract"
        assert "lineno" not in payload

    def test_dataclass_values_expanded(self):
        record = make_record(location=Location("uploads", "s.pdf"))
        payload = json.loads(JsonLogFormatter().format(record))
        assert payload["location"] == {"bucket": "uploads", "key": "s.pdf"}

    def test_exception_included(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())
        payload = json.loads(JsonLogFormatter().format(record))
        assert "ValueError: bad payload" in payload["exc_info"]


class TestTextLogFormatter:
    def test_extra_fields_appended(self):
        line = TextLogFormatter().format(make_record(execution="run-1", status="FAILED"))
        assert line.endswith("INFO markflow.test Starting execution execution=run-1 status=FAILED")

    def test_plain_record_unchanged(self):
        line = TextLogFormatter().format(make_record())
        assert line.endswith("INFO markflow.test Starting execution")

    def test_fields_precede_traceback(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = make_record(exc_info=sys.exc_info(), execution="run-1")
        first, _, rest = TextLogFormatter().format(record).partition("\n")
        assert first.endswith("execution=run-1")
        assert "ValueError: bad payload" in rest


class TestExecutorLogFields:
    def records(self, caplog, definition, data=None):
        executor = StateMachineExecutor(TaskRegistry(), clock=ManualClock())
        with caplog.at_level(logging.INFO, logger="markflow.execution.executor"):
            executor.execute(definition, data, name="run-1")
        return [extra_fields(r) for r in caplog.records]

    def test_success_fields(self, caplog):
        definition = StateMachineDefinition(name="Test", start_at="P", states={"P": PassState(end=True)})
        fields = self.records(caplog, definition)
        assert fields[0] == {"execution": "run-1", "state_machine": "Test"}
        assert fields[-1] == {"execution": "run-1", "state_machine": "Test", "status": "SUCCEEDED"}

    def test_failure_fields(self, caplog):
        definition = StateMachineDefinition(
            name="Test", start_at="F", states={"F": FailState(error="Job.Failed", cause="nope")}
        )
        fields = self.records(caplog, definition)
        assert fields[-1] == {
            "execution": "run-1",
            "state_machine": "Test",
            "status": "FAILED",
            "error": "Job.Failed",
        }

    def test_timeout_fields(self, caplog):
        definition = StateMachineDefinition(
            name="Test",
            start_at="W",
            states={"W": WaitState(seconds=120, end=True)},
            timeout_seconds=60,
        )
        fields = self.records(caplog, definition)
        assert fields[-1]["status"] == "TIMED_OUT"
        assert fields[-1]["error"] == "States.Timeout"

    def test_json_output_carries_execution(self, caplog):
        definition = StateMachineDefinition(name="Test", start_at="P", states={"P": PassState(end=True)})
        self.records(caplog, definition)
        payload = json.loads(JsonLogFormatter().format(caplog.records[-1]))
        assert payload["message"] == "Execution run-1 of Test succeeded"
        assert payload["execution"] == "run-1"
        assert payload["status"] == "SUCCEEDED"


class TestSettings:
    def test_json_logs_from_environment(self, monkeypatch):
        monkeypatch.setenv("MARKFLOW_JSON_LOGS", "true")
        monkeypatch.setenv("MARKFLOW_LOG_LEVEL", "DEBUG")
        settings = Settings(_env_file=None)
        assert settings.json_logs is True
        assert settings.log_level == "DEBUG"
