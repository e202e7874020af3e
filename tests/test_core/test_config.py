from pathlib import Path

import pytest

from shieldagent.core.config import AgentSettings, load_settings
from shieldagent.core.errors import ConfigurationError


def test_defaults_without_file(monkeypatch):
    monkeypatch.delenv("SHIELD_AGENT_LISTEN", raising=False)
    settings = load_settings()
    assert settings.listen_address == "0.0.0.0:5444"
    assert settings.listen() == ("0.0.0.0", 5444)
    assert settings.job_timeout is None
    assert settings.validate_endpoints is False


def test_load_yaml(tmp_path, monkeypatch):
    monkeypatch.delenv("SHIELD_AGENT_LISTEN", raising=False)
    config = tmp_path / "agent.yml"
    config.write_text(
        """
listen_address: 127.0.0.1:6000
host_key_file: /etc/shield/host_key
authorized_keys_file: /etc/shield/authorized_keys
plugin_paths: [/opt/shield/plugins]
plugins:
  fs: /usr/local/bin/shield-fs
job_timeout: 3600
validate_endpoints: true
"""
    )
    settings = load_settings(config)
    assert settings.listen() == ("127.0.0.1", 6000)
    assert settings.host_key_file == Path("/etc/shield/host_key")
    assert settings.plugin_paths == [Path("/opt/shield/plugins")]
    assert settings.plugins == {"fs": Path("/usr/local/bin/shield-fs")}
    assert settings.job_timeout == 3600
    assert settings.validate_endpoints is True


def test_listen_env_override(tmp_path, monkeypatch):
    config = tmp_path / "agent.yml"
    config.write_text("listen_address: 127.0.0.1:6000\n")
    monkeypatch.setenv("SHIELD_AGENT_LISTEN", "[::1]:7000")
    settings = load_settings(config)
    assert settings.listen_address == "[::1]:7000"


def test_empty_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("SHIELD_AGENT_LISTEN", raising=False)
    config = tmp_path / "agent.yml"
    config.write_text("")
    assert load_settings(config) == AgentSettings()


@pytest.mark.parametrize(
    "content",
    [
        "listen_address: [unclosed\n",
        "- just\n- a list\n",
        "listen_address: nowhere\n",
        "job_timeout: -1\n",
        "diagnostics_limit: zero\n",
    ],
)
def test_invalid_config_raises(tmp_path, monkeypatch, content):
    monkeypatch.delenv("SHIELD_AGENT_LISTEN", raising=False)
    config = tmp_path / "agent.yml"
    config.write_text(content)
    with pytest.raises(ConfigurationError):
        load_settings(config)


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(tmp_path / "nope.yml")


def test_settings_are_frozen():
    settings = AgentSettings()
    with pytest.raises(Exception):
        settings.job_timeout = 5
