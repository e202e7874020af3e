"""Process contract for plugin executables.

Every plugin is invoked as::

    <executable> <operation> [--endpoint <json>] [--key <restore-key>]

- The endpoint configuration travels as an argument (never through a shell
  and never on stdin, which carries payload bytes).
- `backup` and `retrieve` write payload bytes to stdout.
- `restore` and `store` read payload bytes from stdin.
- `store` prints the restore key as the final line of stdout.
- `meta` prints the plugin's PluginInfo as JSON on stdout.
- stderr is the human-readable diagnostic stream.
- The exit status is one of `ExitCode`; UNSUPPORTED_ACTION (10) means the
  plugin does not implement the operation. Status 2 is left to shells and
  argument parsers and counts as an ordinary failure.
- SIGTERM asks a plugin to stop early; the default disposition is kept.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import BinaryIO, List, Optional, TextIO

import click

from shieldagent.core.plugins.base import Endpoint, EndpointDataError, Plugin, Unimplemented
from shieldagent.domain.enums import ExitCode, PluginOperation

logger = logging.getLogger(__name__)

NEEDS_KEY = {PluginOperation.RETRIEVE, PluginOperation.PURGE}


class _Streams:
    def __init__(self, stdin: BinaryIO, stdout: BinaryIO, stderr: TextIO) -> None:
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr

    def fail(self, code: ExitCode, message: str) -> int:
        self.stderr.write(f"{message}\n")
        self.stderr.flush()
        return int(code)


def _dispatch(
    plugin: Plugin,
    streams: _Streams,
    operation: PluginOperation,
    endpoint_json: Optional[str],
    key: Optional[str],
) -> int:
    if operation is PluginOperation.META:
        streams.stdout.write(plugin.meta().model_dump_json().encode() + b"\n")
        return int(ExitCode.SUCCESS)

    if endpoint_json is None:
        return streams.fail(ExitCode.USAGE, f"{operation.value}: missing required --endpoint argument")
    try:
        endpoint = Endpoint.from_json(endpoint_json)
    except ValueError as exc:
        return streams.fail(ExitCode.JSON_FAILURE, f"{operation.value}: invalid endpoint JSON: {exc}")

    if operation in NEEDS_KEY and not key:
        return streams.fail(
            ExitCode.RESTORE_KEY_REQUIRED, f"{operation.value}: missing required --key argument"
        )

    try:
        if operation is PluginOperation.VALIDATE:
            asyncio.run(plugin.validate(endpoint, streams.stdout))
        elif operation is PluginOperation.BACKUP:
            asyncio.run(plugin.backup(endpoint, streams.stdout))
        elif operation is PluginOperation.RESTORE:
            asyncio.run(plugin.restore(endpoint, streams.stdin))
        elif operation is PluginOperation.STORE:
            restore_key = asyncio.run(plugin.store(endpoint, streams.stdin))
            if not restore_key:
                return streams.fail(ExitCode.PLUGIN_FAILURE, f"{operation.value}: plugin returned no restore key")
            streams.stdout.write(f"{restore_key}\n".encode())
        elif operation is PluginOperation.RETRIEVE:
            asyncio.run(plugin.retrieve(endpoint, str(key), streams.stdout))
        elif operation is PluginOperation.PURGE:
            asyncio.run(plugin.purge(endpoint, str(key)))
        streams.stdout.flush()
    except Unimplemented:
        return streams.fail(
            ExitCode.UNSUPPORTED_ACTION,
            f"{plugin.meta().name}: operation '{operation.value}' is not implemented",
        )
    except EndpointDataError as exc:
        return streams.fail(ExitCode.ENDPOINT_MISSING_KEY, f"{operation.value}: invalid endpoint: {exc}")
    except Exception as exc:  # noqa: BLE001
        logger.debug("plugin_operation_failed | operation=%s", operation.value, exc_info=True)
        return streams.fail(ExitCode.PLUGIN_FAILURE, f"{operation.value} failed: {exc}")

    return int(ExitCode.SUCCESS)


def build_command(plugin: Plugin, streams: _Streams) -> click.Command:
    @click.command(name=plugin.meta().name, help=f"{plugin.meta().name} v{plugin.meta().version}")
    @click.argument("operation", type=click.Choice([op.value for op in PluginOperation]))
    @click.option("--endpoint", "endpoint_json", default=None, help="Endpoint configuration (JSON)")
    @click.option("--key", default=None, help="Restore key for retrieve/purge")
    def command(operation: str, endpoint_json: Optional[str], key: Optional[str]) -> int:
        return _dispatch(plugin, streams, PluginOperation(operation), endpoint_json, key)

    return command


def run(
    plugin: Plugin,
    argv: Optional[List[str]] = None,
    *,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[BinaryIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    """Execute one plugin operation and return its exit status."""
    streams = _Streams(
        stdin if stdin is not None else sys.stdin.buffer,
        stdout if stdout is not None else sys.stdout.buffer,
        stderr if stderr is not None else sys.stderr,
    )
    command = build_command(plugin, streams)
    try:
        result = command.main(
            args=list(sys.argv[1:] if argv is None else argv),
            prog_name=os.path.basename(sys.argv[0]) or plugin.meta().name,
            standalone_mode=False,
        )
    except click.ClickException as exc:
        return streams.fail(ExitCode.USAGE, exc.format_message())
    except click.Abort:
        return streams.fail(ExitCode.USAGE, "aborted")
    return int(result or 0)


def main(plugin: Plugin) -> None:
    """Console-script entry point shared by bundled plugins."""
    logging.basicConfig(
        stream=sys.stderr,
        level=os.getenv("SHIELD_PLUGIN_LOG_LEVEL", "INFO").upper(),
        format="%(levelname)s | %(name)s | %(message)s",
    )
    sys.exit(run(plugin))
