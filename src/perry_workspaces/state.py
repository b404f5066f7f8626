"""File-backed workspace registry.

The whole registry lives in one JSON file. It is read once per store
instance and rewritten in full on every mutation, so readers in the same
process never observe a half-applied change.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from .errors import StorageError
from .models import Workspace, WorkspaceState, WorkspaceStatus, now_iso

logger = structlog.get_logger()


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the same directory, then ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class StateStore:
    """Registry of workspaces persisted to ``state.json``."""

    def __init__(self, state_path: Path) -> None:
        self.state_path = state_path
        self._state: WorkspaceState | None = None

    async def load(self) -> WorkspaceState:
        """Return the registry, reading it from disk on first use.

        Raises:
            StorageError: If the file exists but cannot be read or parsed
        """
        if self._state is not None:
            return self._state

        try:
            with open(self.state_path, encoding="utf-8") as f:
                data = json.load(f)
            self._state = WorkspaceState.model_validate(data)
        except FileNotFoundError:
            self._state = WorkspaceState()
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.error("Failed to load workspace state", path=str(self.state_path), error=str(e))
            raise StorageError(f"Cannot read workspace state {self.state_path}: {e}") from e

        return self._state

    async def save(self) -> None:
        """Rewrite the registry file. Does nothing if the state was never loaded."""
        if self._state is None:
            return

        try:
            write_json_atomic(self.state_path, self._state.to_json_dict())
        except OSError as e:
            raise StorageError(f"Cannot write workspace state {self.state_path}: {e}") from e

    async def get_workspace(self, name: str) -> Workspace | None:
        state = await self.load()
        return state.workspaces.get(name)

    async def get_all_workspaces(self) -> list[Workspace]:
        state = await self.load()
        return list(state.workspaces.values())

    async def set_workspace(self, workspace: Workspace) -> None:
        state = await self.load()
        previous = state.workspaces.get(workspace.name)
        state.workspaces[workspace.name] = workspace
        try:
            await self.save()
        except StorageError:
            # The cache must not serve a record the file does not hold
            if previous is None:
                del state.workspaces[workspace.name]
            else:
                state.workspaces[workspace.name] = previous
            raise

    async def delete_workspace(self, name: str) -> bool:
        state = await self.load()
        if name not in state.workspaces:
            return False
        removed = state.workspaces.pop(name)
        try:
            await self.save()
        except StorageError:
            state.workspaces[name] = removed
            raise
        return True

    async def update_workspace_status(
        self, name: str, status: WorkspaceStatus
    ) -> Workspace | None:
        workspace = await self.get_workspace(name)
        if workspace is None:
            return None
        workspace = workspace.model_copy(update={"status": status})
        await self.set_workspace(workspace)
        return workspace

    async def touch_workspace(self, name: str) -> Workspace | None:
        workspace = await self.get_workspace(name)
        if workspace is None:
            return None
        workspace = workspace.model_copy(update={"last_used": now_iso()})
        await self.set_workspace(workspace)
        return workspace

    async def set_display_name(self, name: str, display_name: str | None) -> Workspace | None:
        workspace = await self.get_workspace(name)
        if workspace is None:
            return None
        workspace = workspace.model_copy(update={"display_name": display_name or None})
        await self.set_workspace(workspace)
        return workspace
