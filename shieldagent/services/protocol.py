"""Decoding and validation of agent job requests.

The payload of an SSH `exec` request is a JSON object. Checks run in a fixed
order so the first reported problem is deterministic:

1. JSON syntax (and top-level object)      -> ProtocolError
2. `operation` present and supported      -> ValidationError
3. `target_plugin`, `target_endpoint`,
   `store_plugin`, `store_endpoint`        -> ValidationError (first missing wins)
4. `restore_key`, for restore only         -> ValidationError
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Union

from shieldagent.core.errors import ProtocolError, ValidationError
from shieldagent.domain.enums import JobOperation
from shieldagent.schemas.requests import JobRequest

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("target_plugin", "target_endpoint", "store_plugin", "store_endpoint")
ENDPOINT_FIELDS = ("target_endpoint", "store_endpoint")


def _missing(field: str) -> ValidationError:
    return ValidationError(f"missing required '{field}' value in payload", field=field)


def _decode(payload: Union[bytes, str]) -> Dict[str, Any]:
    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        document = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"malformed agent-request: {exc}") from exc
    if not isinstance(document, dict):
        raise ProtocolError(f"malformed agent-request: expected a JSON object, got {type(document).__name__}")
    return document


def _identity_value(document: Dict[str, Any], field: str) -> str:
    value = document.get(field)
    if value is None or value == "":
        raise _missing(field)
    if field in ENDPOINT_FIELDS:
        if isinstance(value, dict):
            return json.dumps(value, separators=(",", ":"))
        if not isinstance(value, str):
            raise ValidationError(f"'{field}' must be a string or object", field=field)
        return value
    if not isinstance(value, str):
        raise ValidationError(f"'{field}' must be a string", field=field)
    return value


def parse_job_request(payload: Union[bytes, str]) -> JobRequest:
    """Decode and validate a job request payload.

    Raises ProtocolError for undecodable payloads and ValidationError for
    the first violated invariant; never starts any plugin.
    """
    document = _decode(payload)

    operation = document.get("operation")
    if operation is None or operation == "":
        raise _missing("operation")
    if operation not in (JobOperation.BACKUP.value, JobOperation.RESTORE.value):
        raise ValidationError(
            f"unsupported operation: '{operation}'",
            field="operation",
            code="unsupported_operation",
        )

    values = {field: _identity_value(document, field) for field in IDENTITY_FIELDS}

    restore_key = None
    if operation == JobOperation.RESTORE.value:
        restore_key = document.get("restore_key")
        if restore_key is None or restore_key == "":
            raise ValidationError(
                "missing required 'restore_key' value in payload (for restore operation)",
                field="restore_key",
            )
        if not isinstance(restore_key, str):
            raise ValidationError("'restore_key' must be a string", field="restore_key")

    raw = payload if isinstance(payload, (bytes, bytearray)) else payload.encode("utf-8")
    request = JobRequest(
        operation=JobOperation(operation),
        restore_key=restore_key,
        raw_payload=bytes(raw),
        **values,
    )
    logger.debug("agent_request_parsed | %s", request.summary())
    return request
