"""Bounded-time external command execution.

Every command runs in its own process group so a deadline can take down the
whole tree (``docker cp`` forks helpers) instead of leaving orphans behind.
"""

import asyncio
import contextlib
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence

import structlog

from .errors import InstallationMissingError, ProcessError, ProcessTimeoutError
from .models import ProcessResult

logger = structlog.get_logger()

# Time a timed-out process gets to exit after SIGTERM before SIGKILL
KILL_GRACE_SECONDS = 2.0


class ProcessClient:
    """Runs external commands with timeout enforcement and typed failures."""

    def __init__(self) -> None:
        self._active: set[asyncio.subprocess.Process] = set()

    @property
    def active_processes(self) -> frozenset[asyncio.subprocess.Process]:
        """Processes spawned by this client that have not been reaped yet."""
        return frozenset(self._active)

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout_ms: int | None = None,
        ignore_failure: bool = False,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        input: bytes | None = None,
    ) -> ProcessResult:
        """Run a command to completion and capture its output.

        Args:
            command: Executable name or path
            args: Arguments passed to the executable
            timeout_ms: Deadline in milliseconds (no deadline if None)
            ignore_failure: Report a non-zero exit as a normal result
            cwd: Working directory
            env: Full environment (inherits the current one if None)
            input: Bytes written to stdin

        Returns:
            Captured stdout, stderr and exit code

        Raises:
            ProcessTimeoutError: If the deadline passed; the process group was killed
            ProcessError: If the command exited non-zero and ignore_failure is False
            InstallationMissingError: If the executable does not exist
        """
        argv = [command, *args]

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise InstallationMissingError(f"{command} is not installed or not on PATH") from e

        self._active.add(process)
        try:
            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(input),
                    timeout=timeout_ms / 1000 if timeout_ms is not None else None,
                )
            except TimeoutError:
                returncode = await self._terminate(process)
                logger.warning(
                    "Command timed out",
                    command=argv[:3],
                    timeout_ms=timeout_ms,
                    returncode=returncode,
                )
                raise ProcessTimeoutError(argv, timeout_ms or 0, returncode) from None
            except asyncio.CancelledError:
                # A cancelled caller must not leave the command running
                await asyncio.shield(self._terminate(process))
                raise
        finally:
            self._active.discard(process)

        result = ProcessResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
        )

        if result.exit_code != 0 and not ignore_failure:
            raise ProcessError(argv, result.exit_code, result.stdout, result.stderr)

        return result

    async def _terminate(self, process: asyncio.subprocess.Process) -> int | None:
        """SIGTERM the process group, wait, then SIGKILL if it is still alive."""
        self._signal_group(process, signal.SIGTERM)
        try:
            return await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except TimeoutError:
            self._signal_group(process, signal.SIGKILL)
            return await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group already reaped and the pgid reused; fall back to the leader
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(sig)
