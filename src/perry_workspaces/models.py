"""Data models for workspaces, session names and process results.

Persisted models serialize with camelCase keys so registry files stay
readable by the rest of the Perry tooling.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_iso() -> str:
    """Current UTC time in ISO-8601 format."""
    return datetime.now(UTC).isoformat()


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkspaceStatus(str, Enum):
    """Workspace lifecycle status.

    ``creating``, ``syncing`` and ``deleting`` are intermediate states that an
    operation must never leave behind once it returns.
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    SYNCING = "syncing"
    DELETING = "deleting"
    ERROR = "error"

    @property
    def is_stable(self) -> bool:
        return self in (WorkspaceStatus.RUNNING, WorkspaceStatus.STOPPED, WorkspaceStatus.ERROR)


class Workspace(CamelModel):
    """One provisioned, container-backed environment."""

    name: str
    status: WorkspaceStatus
    container_id: str = ""
    ports: dict[str, int] = Field(default_factory=dict)
    created: str = Field(default_factory=now_iso)
    last_used: str = Field(default_factory=now_iso)
    repo: str | None = None
    display_name: str | None = None


class WorkspaceState(CamelModel):
    """The full workspace registry."""

    workspaces: dict[str, Workspace] = Field(default_factory=dict)


class CreateWorkspaceOptions(BaseModel):
    """Options accepted by ``WorkspaceManager.create``."""

    clone: str | None = Field(default=None, description="Git URL to clone into the workspace")
    env: dict[str, str] = Field(default_factory=dict, description="Extra container environment")


class SessionNameRecord(CamelModel):
    """A user-chosen label for one agent session in one workspace."""

    workspace_name: str
    session_id: str
    custom_name: str
    updated_at: str = Field(default_factory=now_iso)


class SessionNamesFile(CamelModel):
    """On-disk layout of the session naming store."""

    version: int = 1
    names: dict[str, SessionNameRecord] = Field(default_factory=dict)


class TailscaleStatus(BaseModel):
    """Summary of ``tailscale status --json``."""

    running: bool = False
    dns_name: str | None = None
    tailnet_name: str | None = None
    ipv4: str | None = None
    https_enabled: bool = False


@dataclass(frozen=True)
class ProcessResult:
    """Captured output of a completed external command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class TerminalSize:
    cols: int = 80
    rows: int = 24


@dataclass
class SpawnConfig:
    """How to start the process behind a terminal session."""

    command: list[str]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
