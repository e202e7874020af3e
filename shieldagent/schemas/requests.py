from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shieldagent.core.errors import AgentError, StageError
from shieldagent.domain.enums import JobOperation, JobStatus


class JobRequest(BaseModel):
    """A decoded, validated unit of work for one channel."""

    operation: JobOperation = Field(..., description="backup or restore")
    target_plugin: str = Field(..., min_length=1, description="Target plugin name")
    target_endpoint: str = Field(..., min_length=1, description="Target endpoint configuration (JSON text)")
    store_plugin: str = Field(..., min_length=1, description="Store plugin name")
    store_endpoint: str = Field(..., min_length=1, description="Store endpoint configuration (JSON text)")
    restore_key: Optional[str] = Field(None, description="Restore key; required for restore only")
    raw_payload: bytes = Field(b"", repr=False, description="Original payload, kept for audit")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _restore_key_for_restore_only(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("operation") in (JobOperation.BACKUP, JobOperation.BACKUP.value):
            data = {**data, "restore_key": None}
        return data

    @model_validator(mode="after")
    def _require_restore_key(self) -> "JobRequest":
        if self.operation is JobOperation.RESTORE and not self.restore_key:
            raise ValueError("restore operation requires a restore_key")
        return self

    def summary(self) -> str:
        """Loggable description; endpoints are omitted since they carry credentials."""
        parts = [
            f"operation={self.operation.value}",
            f"target_plugin={self.target_plugin}",
            f"store_plugin={self.store_plugin}",
        ]
        if self.restore_key:
            parts.append(f"restore_key={self.restore_key}")
        return " ".join(parts)


class ErrorReport(BaseModel):
    """Serializable description of a failure."""

    type: str
    code: str
    message: str
    stage: Optional[str] = None
    plugin: Optional[str] = None
    operation: Optional[str] = None
    exit_status: Optional[int] = None
    diagnostics: List[str] = Field(default_factory=list)

    @classmethod
    def from_error(cls, exc: AgentError) -> "ErrorReport":
        return cls(**exc.to_report())


class JobOutcome(BaseModel):
    """Terminal status of one job, as reported to the caller."""

    status: JobStatus
    operation: Optional[JobOperation] = None
    restore_key: Optional[str] = None
    bytes_transferred: int = 0
    duration_seconds: Optional[float] = None
    error: Optional[ErrorReport] = None
    secondary: List[ErrorReport] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    @classmethod
    def failed(
        cls,
        exc: AgentError,
        *,
        operation: Optional[JobOperation] = None,
        bytes_transferred: int = 0,
        duration_seconds: Optional[float] = None,
    ) -> "JobOutcome":
        secondary = exc.secondary if isinstance(exc, StageError) else []
        return cls(
            status=JobStatus.FAILED,
            operation=operation,
            bytes_transferred=bytes_transferred,
            duration_seconds=duration_seconds,
            error=ErrorReport.from_error(exc),
            secondary=[ErrorReport.from_error(e) for e in secondary],
        )

    @classmethod
    def rejected(cls, message: str, *, code: str = "rejected") -> "JobOutcome":
        return cls(
            status=JobStatus.REJECTED,
            error=ErrorReport(type="Rejected", code=code, message=message),
        )

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True) + "\n"

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
