"""Tests for session_names.py."""

import json

import pytest

from perry_workspaces.session_names import SessionNameStore


class TestSessionNameStore:
    """Test session naming."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, session_names: SessionNameStore) -> None:
        record = await session_names.set("alpha", "sess-1", "Refactor auth")

        assert record.custom_name == "Refactor auth"
        assert await session_names.get("alpha", "sess-1") == "Refactor auth"
        assert await session_names.get("alpha", "sess-2") is None

    @pytest.mark.asyncio
    async def test_file_layout(self, session_names: SessionNameStore) -> None:
        """Test the on-disk format other Perry tools read."""
        await session_names.set("alpha", "sess-1", "Refactor auth")

        data = json.loads(session_names.path.read_text())
        assert data["version"] == 1
        record = data["names"]["alpha:sess-1"]
        assert record["workspaceName"] == "alpha"
        assert record["sessionId"] == "sess-1"
        assert record["customName"] == "Refactor auth"
        assert "updatedAt" in record

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, session_names: SessionNameStore) -> None:
        await session_names.set("alpha", "sess-1", "One")

        assert await SessionNameStore(session_names.path).get("alpha", "sess-1") == "One"

    @pytest.mark.asyncio
    async def test_list_for_workspace(self, session_names: SessionNameStore) -> None:
        await session_names.set("alpha", "sess-1", "One")
        await session_names.set("alpha", "sess-2", "Two")
        await session_names.set("beta", "sess-3", "Three")

        assert await session_names.list_for_workspace("alpha") == {
            "sess-1": "One",
            "sess-2": "Two",
        }

    @pytest.mark.asyncio
    async def test_delete(self, session_names: SessionNameStore) -> None:
        await session_names.set("alpha", "sess-1", "One")

        await session_names.delete("alpha", "sess-1")
        await session_names.delete("alpha", "never-named")

        assert await session_names.get("alpha", "sess-1") is None

    @pytest.mark.asyncio
    async def test_delete_for_workspace(self, session_names: SessionNameStore) -> None:
        await session_names.set("alpha", "sess-1", "One")
        await session_names.set("alpha", "sess-2", "Two")
        await session_names.set("beta", "sess-3", "Three")

        assert await session_names.delete_for_workspace("alpha") == 2
        assert await session_names.list_for_workspace("alpha") == {}
        assert await session_names.get("beta", "sess-3") == "Three"

    @pytest.mark.asyncio
    async def test_corrupt_file_treated_as_empty(
        self, session_names: SessionNameStore
    ) -> None:
        """Test a damaged names file never blocks naming."""
        session_names.path.parent.mkdir(parents=True)
        session_names.path.write_text("][")

        assert await session_names.get("alpha", "sess-1") is None

        await session_names.set("alpha", "sess-1", "Recovered")
        data = json.loads(session_names.path.read_text())
        assert data["names"]["alpha:sess-1"]["customName"] == "Recovered"
