"""Base classes for SHIELD plugins.

A plugin is a standalone executable implementing some of the operations
below. Python plugins subclass `Plugin` and hand an instance to
`shieldagent.core.plugins.runtime.run`, which implements the process
contract (argument vector, streams and exit statuses).
"""

from __future__ import annotations

import json
from typing import Any, BinaryIO, Dict, List, Optional

from pydantic import BaseModel, Field


class Unimplemented(Exception):
    """Raised by operations a plugin does not support."""


class EndpointDataError(Exception):
    """A required endpoint key is missing or has the wrong type."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class PluginFeatures(BaseModel):
    """Capability flags: which side of a job the plugin can act as."""

    target: str = Field("no", description="'yes' if the plugin implements backup/restore")
    store: str = Field("no", description="'yes' if the plugin implements store/retrieve/purge")

    def can_target(self) -> bool:
        return self.target == "yes"

    def can_store(self) -> bool:
        return self.store == "yes"


class PluginInfo(BaseModel):
    """Static identity of a plugin, printed by the `meta` operation."""

    name: str
    author: str
    version: str
    features: PluginFeatures = Field(default_factory=PluginFeatures)
    example: str = Field("", description="Example endpoint configuration for operator tooling")
    defaults: str = Field("", description="Default endpoint configuration for operator tooling")


class Endpoint(Dict[str, Any]):
    """Decoded endpoint configuration with typed accessors."""

    @classmethod
    def from_json(cls, text: str) -> "Endpoint":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("endpoint configuration must be a JSON object")
        return cls(data)

    def string_value(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise EndpointDataError(key, "not set")
        if not isinstance(value, str):
            raise EndpointDataError(key, "is not a string")
        if not value:
            raise EndpointDataError(key, "is empty")
        return value

    def string_value_default(self, key: str, default: str) -> str:
        if self.get(key) in (None, ""):
            return default
        return self.string_value(key)

    def boolean_value_default(self, key: str, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise EndpointDataError(key, "is not a boolean")
        return value

    def int_value_default(self, key: str, default: int) -> int:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            raise EndpointDataError(key, "is not an integer")
        return value


class Plugin:
    """Base class for all plugins.

    Subclasses override the operations they declare in `info.features`;
    anything left alone raises `Unimplemented`, which the runtime maps to
    the UNSUPPORTED_ACTION exit status.
    """

    info: PluginInfo

    def __init__(self, info: Optional[PluginInfo] = None) -> None:
        if info is not None:
            self.info = info

    def meta(self) -> PluginInfo:
        return self.info

    async def validate(self, endpoint: Endpoint, out: BinaryIO) -> None:
        """Check required endpoint keys, writing one line per key to `out`.

        Raises EndpointDataError for the first invalid key found.
        """
        raise Unimplemented()

    async def backup(self, endpoint: Endpoint, out: BinaryIO) -> None:
        raise Unimplemented()

    async def restore(self, endpoint: Endpoint, inp: BinaryIO) -> None:
        raise Unimplemented()

    async def store(self, endpoint: Endpoint, inp: BinaryIO) -> str:
        """Persist `inp` and return the restore key."""
        raise Unimplemented()

    async def retrieve(self, endpoint: Endpoint, key: str, out: BinaryIO) -> None:
        raise Unimplemented()

    async def purge(self, endpoint: Endpoint, key: str) -> None:
        """Delete the artifact identified by `key`; absent keys are not an error."""
        raise Unimplemented()


def report_keys(endpoint: Endpoint, required: List[str], out: BinaryIO) -> None:
    """Shared `validate` body: check each required string key and report it.

    Every key is reported; the first failure is raised once all are checked.
    """
    failure: Optional[EndpointDataError] = None
    for key in required:
        try:
            value = endpoint.string_value(key)
        except EndpointDataError as exc:
            out.write(f"✗ {key}   {exc.reason}\n".encode())
            failure = failure or exc
        else:
            shown = "<redacted>" if "password" in key or "secret" in key else value
            out.write(f"✓ {key}   {shown}\n".encode())
    if failure is not None:
        raise failure
