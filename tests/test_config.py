"""Tests for configuration."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from perry_workspaces.config import (
    AgentConfig,
    Credentials,
    PerrySettings,
    load_agent_config,
    load_config,
    save_agent_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in PerrySettings.model_fields:
        monkeypatch.delenv(f"PERRY_{name.upper()}", raising=False)


class TestPerrySettings:
    """Tests for PerrySettings."""

    def test_defaults(self) -> None:
        """Test default configuration values."""
        settings = PerrySettings()
        assert settings.config_dir == Path.home() / ".config" / "perry"
        assert settings.docker_binary == "docker"
        assert settings.container_prefix == "workspace-"
        assert settings.workspace_user == "workspace"
        assert settings.worker_copy_timeout_ms == 30_000
        assert settings.tailscale_state_dir == Path("/var/lib/tailscale")
        assert settings.tailscale_socket == Path("/var/run/tailscale/tailscaled.sock")
        assert settings.tailscale_log_path == Path("/var/log/tailscaled.log")
        assert settings.tailscale_ready_attempts == 15
        assert settings.tailscale_ready_interval == 1.0
        assert settings.log_level == "INFO"

    def test_file_paths(self, tmp_path: Path) -> None:
        settings = PerrySettings(config_dir=tmp_path)
        assert settings.state_path == tmp_path / "state.json"
        assert settings.session_names_path == tmp_path / "session-names.json"
        assert settings.agent_config_path == tmp_path / "config.json"

    def test_expands_home(self) -> None:
        settings = PerrySettings(config_dir="~/perry-test", worker_binary="~/bin/perry-worker")
        assert settings.config_dir == Path.home() / "perry-test"
        assert settings.worker_binary == Path.home() / "bin" / "perry-worker"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PERRY_WORKSPACE_IMAGE", "acme/dev:1")
        monkeypatch.setenv("PERRY_SSH_PORT_START", "3000")
        monkeypatch.setenv("PERRY_SSH_PORT_END", "3010")

        settings = PerrySettings()

        assert settings.workspace_image == "acme/dev:1"
        assert settings.ssh_port_start == 3000

    def test_port_range_validation(self) -> None:
        with pytest.raises(PydanticValidationError):
            PerrySettings(ssh_port_start=2500, ssh_port_end=2400)

        with pytest.raises(PydanticValidationError):
            PerrySettings(ssh_port_start=80)


class TestLoadConfig:
    """Tests for loading settings from TOML."""

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_config(tmp_path / "absent.toml")
        assert settings.docker_binary == "docker"

    def test_loads_perry_section(self, tmp_path: Path) -> None:
        config_file = tmp_path / "perry.toml"
        config_file.write_text(
            '[perry]\nworkspace_image = "acme/dev:2"\nworker_copy_timeout_ms = 5000\n'
            f'config_dir = "{tmp_path}"\n'
        )

        settings = load_config(config_file)

        assert settings.workspace_image == "acme/dev:2"
        assert settings.worker_copy_timeout_ms == 5000
        assert settings.config_dir == tmp_path

    def test_env_beats_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "perry.toml"
        config_file.write_text('[perry]\nworkspace_image = "from-file"\nlog_level = "DEBUG"\n')
        monkeypatch.setenv("PERRY_WORKSPACE_IMAGE", "from-env")

        settings = load_config(config_file)

        assert settings.workspace_image == "from-env"
        assert settings.log_level == "DEBUG"


class TestAgentConfig:
    """Tests for config.json handling."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = load_agent_config(tmp_path)

        assert config.port == 7391
        assert config.credentials.env == {}
        assert config.credentials.files == {}
        assert config.scripts == {}

    def test_round_trip(self, tmp_path: Path) -> None:
        config = AgentConfig(
            port=8000,
            credentials=Credentials(
                env={"ANTHROPIC_API_KEY": "sk-test"},
                files={"/home/workspace/.netrc": "~/.netrc"},
            ),
            scripts={"post_start": "~/perry/post-start.sh"},
        )

        save_agent_config(config, tmp_path / "perry")

        assert load_agent_config(tmp_path / "perry") == config
        data = json.loads((tmp_path / "perry" / "config.json").read_text())
        assert data["credentials"]["env"] == {"ANTHROPIC_API_KEY": "sk-test"}

    def test_malformed_file_raises(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text("{oops")

        with pytest.raises(json.JSONDecodeError):
            load_agent_config(tmp_path)
