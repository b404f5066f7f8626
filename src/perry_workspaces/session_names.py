"""Custom names for agent sessions, keyed by ``<workspace>:<sessionId>``.

Kept in its own file with its own failure handling: a damaged names file is
logged and treated as empty rather than blocking workspace operations.
"""

import json
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from .models import SessionNameRecord, SessionNamesFile, now_iso
from .state import write_json_atomic

logger = structlog.get_logger()


def make_key(workspace_name: str, session_id: str) -> str:
    return f"{workspace_name}:{session_id}"


class SessionNameStore:
    """Persisted mapping of (workspace, session) to a user-chosen label."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._store: SessionNamesFile | None = None

    async def load(self) -> SessionNamesFile:
        if self._store is not None:
            return self._store

        try:
            with open(self.path, encoding="utf-8") as f:
                self._store = SessionNamesFile.model_validate(json.load(f))
        except FileNotFoundError:
            self._store = SessionNamesFile()
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(
                "Ignoring unreadable session names file", path=str(self.path), error=str(e)
            )
            self._store = SessionNamesFile()

        return self._store

    async def save(self) -> None:
        if self._store is None:
            return
        write_json_atomic(self.path, self._store.to_json_dict())

    async def get(self, workspace_name: str, session_id: str) -> str | None:
        store = await self.load()
        record = store.names.get(make_key(workspace_name, session_id))
        return record.custom_name if record else None

    async def set(
        self, workspace_name: str, session_id: str, custom_name: str
    ) -> SessionNameRecord:
        store = await self.load()
        record = SessionNameRecord(
            workspace_name=workspace_name,
            session_id=session_id,
            custom_name=custom_name,
            updated_at=now_iso(),
        )
        store.names[make_key(workspace_name, session_id)] = record
        await self.save()
        return record

    async def delete(self, workspace_name: str, session_id: str) -> None:
        store = await self.load()
        store.names.pop(make_key(workspace_name, session_id), None)
        await self.save()

    async def list_for_workspace(self, workspace_name: str) -> dict[str, str]:
        """Return ``{session_id: custom_name}`` for one workspace."""
        store = await self.load()
        return {
            record.session_id: record.custom_name
            for record in store.names.values()
            if record.workspace_name == workspace_name
        }

    async def delete_for_workspace(self, workspace_name: str) -> int:
        """Drop every name recorded for a workspace. Returns how many were removed."""
        store = await self.load()
        stale = [
            key for key, record in store.names.items() if record.workspace_name == workspace_name
        ]
        for key in stale:
            del store.names[key]
        if stale:
            await self.save()
        return len(stale)
