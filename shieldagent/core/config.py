"""Agent settings.

Loaded once at startup from a YAML file and validated with pydantic. The
resulting `AgentSettings` instance is frozen and shared read-only by every
connection thread.

Environment overrides:
- `LOG_LEVEL`: logging level (applied by `setup_logging`)
- `SHIELD_AGENT_LISTEN`: `host:port` to listen on
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from shieldagent.core.errors import ConfigurationError

DEFAULT_LISTEN_ADDRESS = "0.0.0.0:5444"


class AgentSettings(BaseModel):
    """Process-wide agent configuration."""

    listen_address: str = Field(DEFAULT_LISTEN_ADDRESS, description="host:port to accept SSH connections on")
    host_key_file: Optional[Path] = Field(None, description="Private host key presented during the SSH handshake")
    authorized_keys_file: Optional[Path] = Field(None, description="OpenSSH authorized_keys file of allowed controllers")
    plugin_paths: List[Path] = Field(default_factory=list, description="Directories scanned for plugin executables")
    plugins: Dict[str, Path] = Field(default_factory=dict, description="Explicit plugin name to executable mapping")
    log_level: str = Field("info", description="Logging level")
    job_timeout: Optional[float] = Field(None, gt=0, description="Per-job deadline in seconds (null = none)")
    validate_endpoints: bool = Field(False, description="Run each plugin's validate before a job")
    diagnostics_limit: int = Field(200, ge=1, description="Plugin stderr lines retained per invocation")
    kill_grace: float = Field(5.0, gt=0, description="Seconds between SIGTERM and SIGKILL for stopped stages")

    model_config = ConfigDict(frozen=True)

    @field_validator("listen_address")
    @classmethod
    def _check_listen_address(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"listen_address must be host:port, got {value!r}")
        return value

    def listen(self) -> Tuple[str, int]:
        host, _, port = self.listen_address.rpartition(":")
        return host.strip("[]") or "0.0.0.0", int(port)


def load_settings(path: Optional[Path] = None) -> AgentSettings:
    """Read settings from `path` (YAML) and apply environment overrides.

    Raises ConfigurationError if the file is missing, unparsable or invalid.
    """
    data: dict = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        data.update(loaded)

    listen = os.getenv("SHIELD_AGENT_LISTEN", "").strip()
    if listen:
        data["listen_address"] = listen

    try:
        return AgentSettings(**data)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid agent configuration: {exc}") from exc
