"""Root conftest for tests directory.

Fake plugins are small /bin/sh scripts following the plugin process
contract: `$1` is the operation, `$3` the endpoint JSON and `$5` the
restore key.
"""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Callable, Dict

import pytest

from shieldagent.core.plugins.registry import PluginRegistry

REPO_ROOT = Path(__file__).resolve().parent.parent

TARGET_META = '{"name":"producer","author":"tests","version":"1.0","features":{"target":"yes","store":"no"}}'
STORE_META = '{"name":"store","author":"tests","version":"1.0","features":{"target":"no","store":"yes"}}'

PluginFactory = Callable[..., Path]


@pytest.fixture()
def plugin_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture()
def make_plugin(plugin_dir: Path) -> PluginFactory:
    """Write an executable shell plugin; `body` is the script after the shebang."""

    def _make(name: str, body: str) -> Path:
        path = plugin_dir / name
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body).lstrip("\n"))
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture()
def make_target(make_plugin: PluginFactory, data_dir: Path) -> PluginFactory:
    """Target plugin: backup emits `size` zero bytes, restore writes data_dir/restored."""

    def _make(name: str = "producer", *, size: int = 1024, backup: str = "") -> Path:
        backup = backup or f'echo "dumping {size} bytes" >&2; head -c {size} /dev/zero'
        return make_plugin(
            name,
            f"""
            case "$1" in
              meta) echo '{TARGET_META}' ;;
              validate) echo "ok endpoint" ;;
              backup) {backup} ;;
              restore) cat > "{data_dir}/restored" ;;
              *) exit 10 ;;
            esac
            """,
        )

    return _make


@pytest.fixture()
def make_store(make_plugin: PluginFactory, data_dir: Path) -> PluginFactory:
    """Store plugin keeping blobs in data_dir; the key is `key-<byte count>`."""

    def _make(name: str = "store", *, store: str = "") -> Path:
        store = store or (
            f'cat > "{data_dir}/incoming"; '
            f'key="key-$(wc -c < "{data_dir}/incoming" | tr -d \' \')"; '
            f'mv "{data_dir}/incoming" "{data_dir}/$key"; echo "$key"'
        )
        return make_plugin(
            name,
            f"""
            case "$1" in
              meta) echo '{STORE_META}' ;;
              validate) echo "ok endpoint" ;;
              store) {store} ;;
              retrieve) cat "{data_dir}/$5" ;;
              purge) echo "$5" >> "{data_dir}/purged"; rm -f "{data_dir}/$5" ;;
              *) exit 10 ;;
            esac
            """,
        )

    return _make


@pytest.fixture()
def registry_for() -> Callable[..., PluginRegistry]:
    def _build(**plugins: Path) -> PluginRegistry:
        return PluginRegistry(plugins)

    return _build


@pytest.fixture()
def python_plugin(make_plugin: PluginFactory) -> Callable[[str, str], Path]:
    """Executable wrapper running one of the bundled Python plugins."""

    def _make(name: str, module: str) -> Path:
        return make_plugin(
            name,
            f'PYTHONPATH="{REPO_ROOT}" exec "{sys.executable}" -m {module} "$@"\n',
        )

    return _make


def job_payload(**overrides: object) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "operation": "backup",
        "target_plugin": "producer",
        "target_endpoint": "{}",
        "store_plugin": "store",
        "store_endpoint": "{}",
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}
