"""Pytest fixtures for perry-workspaces tests."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import structlog

from perry_workspaces.config import AgentConfig, PerrySettings
from perry_workspaces.container import ContainerClient
from perry_workspaces.models import ProcessResult, Workspace, WorkspaceStatus
from perry_workspaces.session_names import SessionNameStore
from perry_workspaces.state import StateStore
from perry_workspaces.workspace_manager import WorkspaceManager


@pytest.fixture(autouse=True)
def reset_structlog():
    """The CLI reconfigures structlog to write to the runner's stderr."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path: Path) -> PerrySettings:
    """Settings with every path inside tmp_path."""
    return PerrySettings(
        config_dir=tmp_path / "perry",
        tailscale_state_dir=tmp_path / "tailscale" / "state",
        tailscale_socket=tmp_path / "tailscale" / "run" / "tailscaled.sock",
        tailscale_log_path=tmp_path / "tailscale" / "log" / "tailscaled.log",
        worker_binary=None,
    )


@pytest.fixture
def state(settings: PerrySettings) -> StateStore:
    return StateStore(settings.state_path)


@pytest.fixture
def session_names(settings: PerrySettings) -> SessionNameStore:
    return SessionNameStore(settings.session_names_path)


@pytest.fixture
def mock_containers() -> MagicMock:
    """ContainerClient mock whose containers exist and are running."""
    mock = MagicMock(spec=ContainerClient)
    mock.container_name.side_effect = lambda name: f"workspace-{name}"
    mock.image_exists.return_value = True
    mock.container_exists.return_value = True
    mock.container_running.return_value = True
    mock.run_container.return_value = "abc123def456"
    mock.exec_in_container.return_value = ProcessResult(stdout="", stderr="", exit_code=0)
    mock.get_logs.return_value = ProcessResult(stdout="booted\n", stderr="warn\n", exit_code=0)
    return mock


@pytest.fixture
def manager(
    settings: PerrySettings,
    state: StateStore,
    mock_containers: MagicMock,
    session_names: SessionNameStore,
) -> WorkspaceManager:
    with patch("perry_workspaces.workspace_manager._port_is_free", return_value=True):
        yield WorkspaceManager(
            settings,
            state=state,
            containers=mock_containers,
            agent_config=AgentConfig(),
            session_names=session_names,
        )


@pytest.fixture
def sample_workspace() -> Workspace:
    return Workspace(
        name="alpha",
        status=WorkspaceStatus.RUNNING,
        container_id="abc123def456",
        ports={"ssh": 2201},
        created="2024-01-01T00:00:00+00:00",
        last_used="2024-01-01T00:00:00+00:00",
    )


@pytest.fixture
def cli_runner():
    """Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()
