import json

import pytest
from pydantic import ValidationError

from shieldagent.core.errors import ConfigurationError, PipelineError, PluginError
from shieldagent.domain.enums import JobOperation, JobStatus
from shieldagent.schemas.requests import ErrorReport, JobOutcome, JobRequest

BASE = dict(
    target_plugin="fs",
    target_endpoint="{}",
    store_plugin="files",
    store_endpoint="{}",
)


def test_backup_request_drops_restore_key():
    request = JobRequest(operation="backup", restore_key="stale", **BASE)
    assert request.operation is JobOperation.BACKUP
    assert request.restore_key is None


def test_restore_request_requires_key():
    with pytest.raises(ValidationError):
        JobRequest(operation="restore", **BASE)
    assert JobRequest(operation="restore", restore_key="k", **BASE).restore_key == "k"


def test_raw_payload_not_in_repr():
    request = JobRequest(operation="backup", raw_payload=b'{"password":"hunter2"}', **BASE)
    assert "hunter2" not in repr(request)


def test_failed_outcome_carries_primary_and_secondary():
    primary = PluginError(
        "producer backup exited with status 4",
        stage="target",
        plugin="producer",
        operation="backup",
        exit_status=4,
        diagnostics=["connection refused"],
    )
    primary.secondary = [PipelineError("store stopped reading: broken pipe", stage="store")]

    outcome = JobOutcome.failed(primary, operation=JobOperation.BACKUP, bytes_transferred=10, duration_seconds=0.5)

    assert outcome.status is JobStatus.FAILED
    assert not outcome.succeeded
    assert outcome.error.type == "PluginError"
    assert outcome.error.diagnostics == ["connection refused"]
    assert [e.code for e in outcome.secondary] == ["pipeline_error"]


def test_outcome_line_is_single_json_line():
    outcome = JobOutcome(status=JobStatus.SUCCEEDED, operation=JobOperation.BACKUP, restore_key="k1", bytes_transferred=3)
    line = outcome.to_line()

    assert line.endswith("\n")
    assert line.count("\n") == 1
    data = json.loads(line)
    assert data["status"] == "succeeded"
    assert data["restore_key"] == "k1"
    assert "error" not in data
    assert JobOutcome.model_validate_json(line) == outcome


def test_rejected_outcome():
    outcome = JobOutcome.rejected("missing required 'store_plugin' value in payload")
    assert outcome.status is JobStatus.REJECTED
    assert outcome.to_dict()["error"]["type"] == "Rejected"


def test_error_report_from_plain_agent_error():
    report = ErrorReport.from_error(ConfigurationError("unknown plugin: 's3'"))
    assert report.code == "configuration_error"
    assert report.stage is None
