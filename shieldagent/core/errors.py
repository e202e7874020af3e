"""Error taxonomy for the agent.

- ProtocolError / ValidationError: raised while decoding a job request.
  Handled where detected; the channel request is refused and no plugin runs.
- ConfigurationError: a plugin cannot be resolved or executed, a preflight
  `validate` failed, or the settings file is unusable.
- StageError subclasses: raised by the pipeline engine as a job's terminal
  failure, carrying the plugin's captured diagnostics verbatim.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class AgentError(Exception):
    """Base exception for shield-agent."""

    code = "agent_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_report(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, "code": self.code, "message": self.message}


class ProtocolError(AgentError):
    """Malformed envelope or payload."""

    code = "protocol_error"


class ValidationError(AgentError):
    """A decoded job request violates one of its invariants."""

    code = "invalid_request"

    def __init__(self, message: str, *, field: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field
        if code is not None:
            self.code = code


class ConfigurationError(AgentError):
    code = "configuration_error"


class StageError(AgentError):
    """Failure attributed to one stage of a job pipeline."""

    code = "stage_error"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        plugin: Optional[str] = None,
        operation: Optional[str] = None,
        exit_status: Optional[int] = None,
        diagnostics: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.plugin = plugin
        self.operation = operation
        self.exit_status = exit_status
        self.diagnostics: List[str] = list(diagnostics or [])
        self.secondary: List["StageError"] = []

    def to_report(self) -> Dict[str, Any]:
        report = super().to_report()
        report.update(
            {
                "stage": self.stage,
                "plugin": self.plugin,
                "operation": self.operation,
                "exit_status": self.exit_status,
                "diagnostics": list(self.diagnostics),
            }
        )
        return report


class PluginError(StageError):
    """Plugin process exited non-zero while performing an operation."""

    code = "plugin_error"


class UnimplementedOperation(StageError):
    """Plugin does not implement the requested operation."""

    code = "unimplemented_operation"


class PipelineError(StageError):
    """I/O failure while bridging two pipeline stages."""

    code = "pipeline_error"


class JobCancelled(PipelineError):
    code = "job_cancelled"
