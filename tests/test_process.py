"""Tests for process.py (real subprocesses)."""

import asyncio
import os
import signal
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from perry_workspaces.errors import (
    InstallationMissingError,
    ProcessError,
    ProcessTimeoutError,
)
from perry_workspaces.process import ProcessClient


class TestProcessClientRun:
    """Test ProcessClient.run completion paths."""

    @pytest.mark.asyncio
    async def test_captures_stdout(self) -> None:
        """Test stdout is captured and decoded."""
        result = await ProcessClient().run("echo", ["hello"])

        assert result.ok
        assert result.stdout == "hello\n"
        assert result.stderr == ""

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self) -> None:
        """Test a failing command raises ProcessError with its output."""
        with pytest.raises(ProcessError) as exc_info:
            await ProcessClient().run("sh", ["-c", "echo oops >&2; exit 3"])

        assert exc_info.value.exit_code == 3
        assert exc_info.value.stderr.strip() == "oops"
        assert exc_info.value.kind == "process"
        assert "exit code 3" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_ignore_failure_returns_result(self) -> None:
        """Test ignore_failure reports the exit code instead of raising."""
        result = await ProcessClient().run("sh", ["-c", "exit 4"], ignore_failure=True)

        assert result.exit_code == 4
        assert not result.ok

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        """Test a missing executable raises InstallationMissingError."""
        with pytest.raises(InstallationMissingError, match="not installed"):
            await ProcessClient().run("perry-definitely-not-a-binary")

    @pytest.mark.asyncio
    async def test_input_is_written_to_stdin(self) -> None:
        """Test input bytes reach the process."""
        result = await ProcessClient().run("cat", input=b"abc")

        assert result.stdout == "abc"

    @pytest.mark.asyncio
    async def test_cwd_and_env(self, tmp_path: Path) -> None:
        """Test cwd and env are passed through."""
        result = await ProcessClient().run(
            "sh",
            ["-c", 'pwd; echo "$PERRY_TEST_VALUE"'],
            cwd=str(tmp_path),
            env={**os.environ, "PERRY_TEST_VALUE": "42"},
        )

        cwd, value = result.stdout.splitlines()
        assert os.path.realpath(cwd) == os.path.realpath(tmp_path)
        assert value == "42"


class TestProcessClientTimeout:
    """Test deadline enforcement."""

    @pytest.mark.asyncio
    async def test_timeout_terminates_process(self) -> None:
        """Test a never-completing process is killed and reported promptly."""
        client = ProcessClient()
        started = time.monotonic()

        with pytest.raises(ProcessTimeoutError, match="timed out") as exc_info:
            await client.run("sleep", ["30"], timeout_ms=50)

        assert time.monotonic() - started < 5
        assert exc_info.value.returncode == -signal.SIGTERM
        assert exc_info.value.timeout_ms == 50
        assert exc_info.value.command == ["sleep", "30"]
        assert client.active_processes == frozenset()

    @pytest.mark.asyncio
    async def test_timeout_is_builtin_timeout_error(self) -> None:
        """Test callers can catch the builtin TimeoutError."""
        with pytest.raises(TimeoutError):
            await ProcessClient().run("sleep", ["30"], timeout_ms=20)

    @pytest.mark.asyncio
    async def test_timeout_escalates_to_sigkill(self) -> None:
        """Test a process ignoring SIGTERM is killed after the grace period."""
        client = ProcessClient()

        with patch("perry_workspaces.process.KILL_GRACE_SECONDS", 0.2):
            with pytest.raises(ProcessTimeoutError) as exc_info:
                await client.run("sh", ["-c", "trap '' TERM; sleep 30"], timeout_ms=300)

        assert exc_info.value.returncode == -signal.SIGKILL
        assert client.active_processes == frozenset()

    @pytest.mark.asyncio
    async def test_no_active_process_after_success(self) -> None:
        """Test completed calls leave no tracked process behind."""
        client = ProcessClient()
        await client.run("true", timeout_ms=5_000)

        assert client.active_processes == frozenset()

    @pytest.mark.asyncio
    async def test_cancelled_run_terminates_process(self) -> None:
        """Test cancelling the caller kills the command instead of orphaning it."""
        client = ProcessClient()
        task = asyncio.create_task(client.run("sleep", ["30"]))
        while not client.active_processes:
            await asyncio.sleep(0.01)
        (process,) = client.active_processes

        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert process.returncode == -signal.SIGTERM
        assert client.active_processes == frozenset()
        with pytest.raises(ProcessLookupError):
            os.kill(process.pid, 0)
