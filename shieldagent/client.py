"""Controller-side helper: submit one job to an agent and wait for its outcome."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import paramiko
from pydantic import ValidationError as PydanticValidationError

from shieldagent.domain.enums import JobStatus
from shieldagent.schemas.requests import ErrorReport, JobOutcome, JobRequest

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5444

Payload = Union[JobRequest, Dict[str, Any], str, bytes]


def encode_payload(request: Payload) -> bytes:
    if isinstance(request, JobRequest):
        document = request.model_dump(mode="json", exclude={"raw_payload"}, exclude_none=True)
        return json.dumps(document).encode()
    if isinstance(request, dict):
        return json.dumps(request).encode()
    if isinstance(request, str):
        return request.encode()
    return bytes(request)


class AgentClient:
    """Runs jobs on one agent over SSH.

    Each `submit` opens its own connection, since an agent connection is
    scoped to exactly one job.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        *,
        username: str = "shield",
        pkey: Optional[paramiko.PKey] = None,
        key_filename: Optional[Path] = None,
        known_hosts: Optional[Path] = None,
        insecure: bool = False,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.pkey = pkey
        self.key_filename = key_filename
        self.known_hosts = known_hosts
        self.insecure = insecure
        self.timeout = timeout

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.known_hosts is not None:
            client.load_host_keys(str(self.known_hosts))
        if self.insecure:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        client.connect(
            self.host,
            port=self.port,
            username=self.username,
            pkey=self.pkey,
            key_filename=str(self.key_filename) if self.key_filename else None,
            look_for_keys=False,
            allow_agent=False,
            timeout=self.timeout,
        )
        return client

    def submit(self, request: Payload, *, on_diagnostic: Optional[Callable[[str], None]] = None) -> JobOutcome:
        """Submit `request`, relay diagnostics, and return the terminal outcome.

        A request the agent refuses yields a `rejected` outcome carrying the
        agent's reason.
        """
        payload = encode_payload(request)
        client = self._connect()
        try:
            transport = client.get_transport()
            assert transport is not None
            channel = transport.open_session(timeout=self.timeout)
            try:
                channel.exec_command(payload)
            except paramiko.SSHException:
                reason = _drain_stderr(channel).strip()
                reason = reason.removeprefix("rejected: ") or "agent refused the job request"
                logger.warning("job_rejected | host=%s reason=%s", self.host, reason)
                return JobOutcome.rejected(reason)

            for raw in channel.makefile_stderr("rb"):
                if on_diagnostic is not None:
                    on_diagnostic(raw.decode("utf-8", errors="replace").rstrip("\n"))
            output = channel.makefile("rb").read().decode("utf-8", errors="replace")
            exit_status = channel.recv_exit_status()
        finally:
            client.close()

        return _parse_outcome(output, exit_status)


def _drain_stderr(channel: paramiko.Channel) -> str:
    chunks = []
    while channel.recv_stderr_ready():
        chunk = channel.recv_stderr(65536)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks).decode("utf-8", errors="replace")


def _parse_outcome(output: str, exit_status: int) -> JobOutcome:
    lines = [line for line in output.splitlines() if line.strip()]
    if lines:
        try:
            return JobOutcome.model_validate_json(lines[-1])
        except PydanticValidationError:
            pass
    return JobOutcome(
        status=JobStatus.FAILED,
        error=ErrorReport(
            type="ProtocolError",
            code="protocol_error",
            message=f"agent sent no job outcome (exit status {exit_status})",
        ),
    )
