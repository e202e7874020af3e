"""
CLI interface for shield-agent.

Provides commands: serve, plugins, validate, submit.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
import paramiko

from shieldagent import __version__
from shieldagent.client import DEFAULT_PORT, AgentClient
from shieldagent.core.config import load_settings
from shieldagent.core.errors import AgentError
from shieldagent.core.logging import setup_logging
from shieldagent.core.plugins.base import PluginInfo
from shieldagent.core.plugins.invoker import invoke
from shieldagent.core.plugins.registry import PluginRegistry
from shieldagent.domain.enums import InvocationOutcome, PluginOperation
from shieldagent.server.session import AgentServer

config_option = click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Agent configuration file (YAML)",
)


def _fail(message: str) -> None:
    click.echo(f"error: {message}", err=True)
    sys.exit(1)


def _registry(config_path: Optional[Path]) -> PluginRegistry:
    settings = load_settings(config_path)
    setup_logging(settings.log_level)
    return PluginRegistry.build(settings.plugin_paths, settings.plugins)


@click.group()
@click.version_option(version=__version__, prog_name="shield-agent")
def main():
    """
    shield-agent - runs SHIELD backup and restore jobs on request.

    Jobs arrive as SSH exec requests; each one pipes a target plugin
    into a store plugin (or back again).
    """
    pass


@main.command()
@config_option
@click.option("--log-level", default=None, help="Override the configured log level")
def serve(config_path, log_level):
    """
    Accept SSH connections and run jobs until interrupted.

    Examples:

      shield-agent serve -c /etc/shield/agent.yml
    """
    try:
        settings = load_settings(config_path)
        setup_logging(log_level or settings.log_level)
        server = AgentServer.from_settings(settings)
        server.bind()
    except (AgentError, OSError) as e:
        _fail(str(e))

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        server.shutdown()


@main.command()
@config_option
def plugins(config_path):
    """List registered plugins with their metadata."""
    try:
        registry = _registry(config_path)
    except AgentError as e:
        _fail(str(e))

    if not len(registry):
        click.echo("no plugins registered")
        return

    for name, path in registry.items():
        try:
            result = asyncio.run(invoke(path, PluginOperation.META, plugin=name))
        except AgentError as e:
            click.echo(f"{name:<16} {path}  (unusable: {e})")
            continue
        if not result.ok:
            click.echo(f"{name:<16} {path}  (meta exited {result.exit_status})")
            continue
        try:
            info = PluginInfo.model_validate_json("\n".join(result.output))
        except ValueError:
            click.echo(f"{name:<16} {path}  (invalid metadata)")
            continue
        click.echo(
            f"{name:<16} v{info.version:<8} target={info.features.target:<3} "
            f"store={info.features.store:<3} {path}"
        )


@main.command()
@config_option
@click.argument("plugin")
@click.option("--endpoint", "endpoint_json", required=True, help="Endpoint configuration (JSON)")
def validate(config_path, plugin, endpoint_json):
    """
    Check an endpoint configuration with a plugin's validate operation.

    Examples:

      shield-agent validate -c agent.yml fs --endpoint '{"base_dir": "/srv"}'
    """
    try:
        registry = _registry(config_path)
        result = asyncio.run(
            invoke(registry.resolve(plugin), PluginOperation.VALIDATE, endpoint_json, plugin=plugin)
        )
    except AgentError as e:
        _fail(str(e))

    for line in result.output:
        click.echo(line)
    for line in result.diagnostics:
        click.echo(line, err=True)
    if result.outcome is InvocationOutcome.UNIMPLEMENTED:
        click.echo(f"{plugin} does not implement validate", err=True)
        sys.exit(2)
    if not result.ok:
        sys.exit(1)
    click.echo(f"{plugin}: endpoint configuration is valid")


@main.command()
@click.option("--host", required=True, help="Agent host")
@click.option("--port", default=DEFAULT_PORT, show_default=True, help="Agent port")
@click.option("--user", "username", default="shield", show_default=True, help="SSH user name")
@click.option(
    "--key",
    "key_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Private key used to authenticate",
)
@click.option(
    "--known-hosts",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="known_hosts file holding the agent's host key",
)
@click.option("--insecure", is_flag=True, help="Accept any agent host key")
@click.argument("payload")
def submit(host, port, username, key_file, known_hosts, insecure, payload):
    """
    Submit one job request and wait for its outcome.

    PAYLOAD is the JSON job request, or @FILE to read it from a file.

    Examples:

      shield-agent submit --host 10.0.0.5 --key ~/.ssh/shield --insecure @job.json
    """
    if payload.startswith("@"):
        payload = Path(payload[1:]).read_text(encoding="utf-8")

    client = AgentClient(
        host,
        port,
        username=username,
        key_filename=key_file,
        known_hosts=known_hosts,
        insecure=insecure,
    )
    try:
        outcome = client.submit(payload, on_diagnostic=lambda line: click.echo(line, err=True))
    except (paramiko.SSHException, OSError) as e:
        _fail(f"unable to reach agent {host}:{port}: {e}")

    click.echo(json.dumps(outcome.to_dict(), indent=2))
    if not outcome.succeeded:
        sys.exit(1)


if __name__ == "__main__":
    main()
