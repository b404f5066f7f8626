"""Configuration for the Perry workspace orchestrator."""

import json
import os
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "perry"
STATE_FILE = "state.json"
SESSION_NAMES_FILE = "session-names.json"
AGENT_CONFIG_FILE = "config.json"
DEFAULT_AGENT_PORT = 7391


class PerrySettings(BaseSettings):
    """Settings for the workspace orchestrator."""

    model_config = SettingsConfigDict(
        env_prefix="PERRY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # State and agent config live here
    config_dir: Path = Field(
        default=DEFAULT_CONFIG_DIR,
        description="Directory holding state.json, session-names.json and config.json",
    )

    # Docker configuration
    docker_binary: str = Field(default="docker", description="Docker CLI executable")
    workspace_image: str = Field(
        default="perry/workspace:latest",
        description="Docker image for workspaces",
    )
    container_prefix: str = Field(
        default="workspace-",
        description="Prefix prepended to workspace names to form container names",
    )
    workspace_user: str = Field(default="workspace", description="User inside the container")
    container_stop_timeout: int = Field(
        default=10,
        ge=0,
        le=300,
        description="Seconds docker waits before killing a stopping container",
    )

    # Host ports handed out to workspaces for SSH
    ssh_port_start: int = Field(default=2200, ge=1024, le=65535)
    ssh_port_end: int = Field(default=2400, ge=1024, le=65535)

    # Worker binary copied into containers on sync
    worker_binary: Path | None = Field(
        default=None,
        description="Path to the perry-worker binary (searched on PATH if unset)",
    )
    worker_binary_dest: str = Field(default="/usr/local/bin/perry-worker")
    worker_copy_timeout_ms: int = Field(default=30_000, ge=1)

    # tailscaled supervision
    tailscaled_binary: str = Field(default="tailscaled")
    tailscale_binary: str = Field(default="tailscale")
    tailscale_state_dir: Path = Field(default=Path("/var/lib/tailscale"))
    tailscale_socket: Path = Field(default=Path("/var/run/tailscale/tailscaled.sock"))
    tailscale_log_path: Path = Field(default=Path("/var/log/tailscaled.log"))
    tailscale_ready_attempts: int = Field(default=15, ge=1)
    tailscale_ready_interval: float = Field(default=1.0, ge=0)

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("config_dir", "worker_binary", mode="after")
    @classmethod
    def _expand_user(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @model_validator(mode="after")
    def _check_port_range(self) -> "PerrySettings":
        if self.ssh_port_start > self.ssh_port_end:
            raise ValueError("ssh_port_start must not be greater than ssh_port_end")
        return self

    @property
    def state_path(self) -> Path:
        return self.config_dir / STATE_FILE

    @property
    def session_names_path(self) -> Path:
        return self.config_dir / SESSION_NAMES_FILE

    @property
    def agent_config_path(self) -> Path:
        return self.config_dir / AGENT_CONFIG_FILE


class Credentials(BaseModel):
    """Credentials forwarded into every workspace."""

    env: dict[str, str] = Field(default_factory=dict, description="Container environment")
    files: dict[str, str] = Field(
        default_factory=dict,
        description="Container destination path -> host source path",
    )


class AgentConfig(BaseModel):
    """User-editable agent configuration (``config.json``)."""

    port: int = Field(default=DEFAULT_AGENT_PORT, ge=1, le=65535)
    credentials: Credentials = Field(default_factory=Credentials)
    scripts: dict[str, str] = Field(default_factory=dict)


DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "perry.toml"


def load_config(config_file: str | Path | None = None) -> PerrySettings:
    """Load settings from a TOML file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (PERRY_*)
    2. Provided config file
    3. Default config file (~/.config/perry/perry.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded settings
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = data.get("perry", {})

    # Keyword arguments beat env vars in pydantic-settings, so drop file keys
    # that the environment already sets.
    overridden = {
        name for name in PerrySettings.model_fields if f"PERRY_{name.upper()}" in os.environ
    }
    file_config = {k: v for k, v in file_config.items() if k not in overridden}

    return PerrySettings(**file_config)


def load_agent_config(config_dir: Path) -> AgentConfig:
    """Load ``config.json`` from the config directory.

    A missing file yields the defaults; a malformed file raises.
    """
    config_path = config_dir / AGENT_CONFIG_FILE
    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return AgentConfig()
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Failed to load agent config", path=str(config_path), error=str(e))
        raise

    return AgentConfig.model_validate(data)


def save_agent_config(config: AgentConfig, config_dir: Path) -> None:
    """Write ``config.json`` into the config directory."""
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / AGENT_CONFIG_FILE
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(mode="json"), f, indent=2)
    logger.info("Agent configuration saved", path=str(config_path))


def expand_path(file_path: str) -> Path:
    """Expand a leading ``~`` in a host path."""
    return Path(file_path).expanduser()
