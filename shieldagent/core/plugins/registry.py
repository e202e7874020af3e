"""Plugin registry.

- Built once at startup from `AgentSettings.plugin_paths` (every executable
  file in those directories, keyed by file name) and `AgentSettings.plugins`
  (explicit name -> path entries, which win over scanned ones).
- Immutable afterwards; connection threads share it read-only.
- `resolve(name)` returns the executable path or raises ConfigurationError.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

from shieldagent.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _scan(directories: Iterable[Path]) -> Dict[str, Path]:
    """Collect executables from `directories`; earlier directories win."""
    found: Dict[str, Path] = {}
    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("plugin_path_missing | path=%s", directory)
            continue
        for entry in sorted(directory.iterdir()):
            if entry.name in found or not is_executable(entry):
                continue
            found[entry.name] = entry.resolve()
    return found


class PluginRegistry:
    """Read-only mapping of plugin name to executable path."""

    def __init__(self, plugins: Mapping[str, Path]) -> None:
        self._plugins: Mapping[str, Path] = MappingProxyType(
            {name: Path(path) for name, path in plugins.items()}
        )

    @classmethod
    def build(
        cls,
        plugin_paths: Iterable[Path] = (),
        plugins: Optional[Mapping[str, Path]] = None,
    ) -> "PluginRegistry":
        table = _scan(plugin_paths)
        for name, path in (plugins or {}).items():
            table[name] = Path(path)
        logger.info("plugin_registry_built | count=%s names=%s", len(table), ",".join(sorted(table)))
        return cls(table)

    def resolve(self, name: str) -> Path:
        """Return the executable for plugin `name`.

        Raises ConfigurationError for unknown names, names that try to
        escape the registry, and paths that are not executable files.
        """
        if not name or os.sep in name or name in (".", ".."):
            raise ConfigurationError(f"invalid plugin name: {name!r}")
        path = self._plugins.get(name)
        if path is None:
            raise ConfigurationError(f"unknown plugin: {name!r}")
        if not is_executable(path):
            raise ConfigurationError(f"plugin {name!r} is not an executable file: {path}")
        return path

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._plugins))

    def __len__(self) -> int:
        return len(self._plugins)

    def items(self) -> Iterator[Tuple[str, Path]]:
        for name in self:
            yield name, self._plugins[name]
