"""Tests for job request decoding and its fixed check order."""

import json

import pytest

from shieldagent.core.errors import ProtocolError, ValidationError
from shieldagent.domain.enums import JobOperation
from shieldagent.services.protocol import parse_job_request


def _payload(**fields):
    return json.dumps({k: v for k, v in fields.items() if v is not None}).encode()


FULL = dict(
    operation="backup",
    target_plugin="fs",
    target_endpoint='{"base_dir":"/srv"}',
    store_plugin="files",
    store_endpoint='{"base_dir":"/backups"}',
)


def test_parse_valid_backup_request():
    request = parse_job_request(_payload(**FULL))
    assert request.operation is JobOperation.BACKUP
    assert request.target_plugin == "fs"
    assert request.store_endpoint == '{"base_dir":"/backups"}'
    assert request.restore_key is None
    assert request.raw_payload == _payload(**FULL)


def test_restore_key_is_ignored_for_backup():
    request = parse_job_request(_payload(**FULL, restore_key="abc"))
    assert request.restore_key is None


def test_parse_restore_request():
    request = parse_job_request(_payload(**{**FULL, "operation": "restore"}, restore_key="2024/05/01/x"))
    assert request.operation is JobOperation.RESTORE
    assert request.restore_key == "2024/05/01/x"


def test_endpoint_objects_are_carried_as_json_text():
    request = parse_job_request(_payload(**{**FULL, "target_endpoint": {"base_dir": "/srv", "compress": False}}))
    assert json.loads(request.target_endpoint) == {"base_dir": "/srv", "compress": False}


def test_summary_omits_endpoints():
    request = parse_job_request(_payload(**FULL))
    assert "base_dir" not in request.summary()
    assert "target_plugin=fs" in request.summary()


@pytest.mark.parametrize("payload", [b"{not json", b"[1, 2]", b"\xff\xfe", b""])
def test_malformed_payload_is_protocol_error(payload):
    with pytest.raises(ProtocolError):
        parse_job_request(payload)


def test_protocol_error_does_not_echo_payload():
    payload = b'{"operation": "backup", "store_endpoint": {"password": "hunter2"'
    with pytest.raises(ProtocolError) as excinfo:
        parse_job_request(payload)
    assert str(excinfo.value).startswith("malformed agent-request:")
    assert "hunter2" not in str(excinfo.value)


def test_json_syntax_is_checked_before_anything_else():
    with pytest.raises(ProtocolError):
        parse_job_request(b'{"operation": "explode", ')


def test_missing_operation():
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(**{**FULL, "operation": None}))
    assert str(excinfo.value) == "missing required 'operation' value in payload"


def test_unsupported_operation_is_reported_before_missing_fields():
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(operation="explode"))
    assert excinfo.value.code == "unsupported_operation"
    assert str(excinfo.value) == "unsupported operation: 'explode'"


@pytest.mark.parametrize(
    "missing, expected",
    [
        (("target_plugin", "target_endpoint", "store_plugin", "store_endpoint"), "target_plugin"),
        (("target_endpoint", "store_plugin", "store_endpoint"), "target_endpoint"),
        (("store_plugin", "store_endpoint"), "store_plugin"),
        (("store_endpoint",), "store_endpoint"),
    ],
)
def test_first_missing_identity_field_wins(missing, expected):
    fields = {k: (None if k in missing else v) for k, v in FULL.items()}
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(**fields))
    assert excinfo.value.field == expected
    assert str(excinfo.value) == f"missing required '{expected}' value in payload"


def test_empty_string_counts_as_missing():
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(**{**FULL, "store_plugin": ""}))
    assert excinfo.value.field == "store_plugin"


def test_wrong_types_are_rejected():
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(**{**FULL, "target_plugin": 42}))
    assert str(excinfo.value) == "'target_plugin' must be a string"

    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(**{**FULL, "store_endpoint": [1]}))
    assert str(excinfo.value) == "'store_endpoint' must be a string or object"


def test_restore_requires_restore_key_last():
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(**{**FULL, "operation": "restore"}))
    assert excinfo.value.field == "restore_key"
    assert "(for restore operation)" in str(excinfo.value)

    # identity fields are checked before the restore key
    with pytest.raises(ValidationError) as excinfo:
        parse_job_request(_payload(operation="restore", target_plugin="fs"))
    assert excinfo.value.field == "target_endpoint"
