"""Interactive PTY-backed terminal sessions into the host or a workspace container.

A single ``TerminalSession`` handles the PTY plumbing. What it runs is
decided by a target resolver: an async callable returning a ``SpawnConfig``.
``host_target`` and ``container_target`` build the two resolvers in use.
"""

import asyncio
import contextlib
import fcntl
import json
import os
import pty
import select
import shutil
import signal
import struct
import termios
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from .container import ContainerClient
from .errors import InstallationMissingError, NotRunningError, PerryError
from .models import SpawnConfig, TerminalSize

logger = structlog.get_logger()

TargetResolver = Callable[[], Awaitable[SpawnConfig]]
DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[int | None], None]

TERM = "xterm-256color"
READ_SIZE = 65536
DEFAULT_SHELL = "/bin/bash"
KILL_GRACE_SECONDS = 2.0


def _is_executable(shell: str) -> bool:
    path = shell if os.path.isabs(shell) else shutil.which(shell)
    return path is not None and os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_host_shell(preferred: str | None = None) -> str:
    """Pick the host shell: the preference if executable, else $SHELL, else bash."""
    if preferred and _is_executable(preferred):
        return preferred
    return os.environ.get("SHELL") or DEFAULT_SHELL


def host_target(shell: str | None = None, work_dir: str | None = None) -> TargetResolver:
    """Resolver for a login shell on the host."""

    async def resolve() -> SpawnConfig:
        resolved = resolve_host_shell(shell)
        if not _is_executable(resolved):
            raise InstallationMissingError(f"Shell not found or not executable: {resolved}")
        return SpawnConfig(
            command=[resolved, "-l"],
            cwd=work_dir or str(Path.home()),
            env={"TERM": TERM},
        )

    return resolve


def container_target(
    containers: ContainerClient,
    workspace_name: str,
    user: str = "workspace",
    shell: str = DEFAULT_SHELL,
) -> TargetResolver:
    """Resolver for a login shell inside a running workspace container."""

    async def resolve() -> SpawnConfig:
        if not await containers.container_running(workspace_name):
            raise NotRunningError(f"Workspace '{workspace_name}' is not running")
        command = containers.exec_command(
            workspace_name,
            [shell, "-l"],
            user=user,
            env={"TERM": TERM},
            interactive=True,
            tty=True,
        )
        return SpawnConfig(command=command, env={"TERM": TERM})

    return resolve


def parse_control_message(raw: bytes | str) -> TerminalSize | None:
    """Decode a ``{"type": "resize", "cols": N, "rows": N}`` control frame.

    Returns None for anything else, which callers forward as terminal input.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text.startswith("{"):
        return None
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict) or message.get("type") != "resize":
        return None
    cols, rows = message.get("cols"), message.get("rows")
    if type(cols) is not int or type(rows) is not int or cols <= 0 or rows <= 0:
        return None
    return TerminalSize(cols=cols, rows=rows)


def _set_winsize(fd: int, size: TerminalSize) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", size.rows, size.cols, 0, 0))


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class TerminalSession:
    """A process attached to a PTY, with byte streams in both directions.

    Output is delivered to the ``on_data`` callback in the order it was read;
    ``on_exit`` fires once, after the final output has been delivered.
    """

    def __init__(self, resolver: TargetResolver, size: TerminalSize | None = None) -> None:
        self._resolver = resolver
        self.size = size or TerminalSize()
        self._process: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def on_data(self, callback: DataCallback) -> None:
        self._on_data = callback

    def on_exit(self, callback: ExitCallback) -> None:
        self._on_exit = callback

    async def open(self) -> None:
        """Resolve the target and spawn it on a fresh PTY.

        Resolution errors (missing shell, stopped container) are raised
        before anything is spawned.
        """
        if self._process is not None:
            raise PerryError("Terminal session already started")
        if self._closed:
            raise PerryError("Terminal session is closed")

        config = await self._resolver()

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, self.size)
            self._process = await asyncio.create_subprocess_exec(
                *config.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=config.cwd,
                env={**os.environ, **config.env},
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except FileNotFoundError as e:
            os.close(master_fd)
            raise InstallationMissingError(f"{config.command[0]} is not installed") from e
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        loop = asyncio.get_running_loop()
        loop.add_reader(master_fd, self._read_available)
        self._watcher = asyncio.create_task(self._watch(self._process))
        logger.info("Terminal session opened", command=config.command[0], pid=self._process.pid)

    def _read_available(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        try:
            data = os.read(fd, READ_SIZE)
        except OSError:
            # EIO once the slave side has no more writers
            data = b""
        if not data:
            asyncio.get_running_loop().remove_reader(fd)
            return
        if self._on_data:
            self._on_data(data)

    def _drain(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        while True:
            readable, _, _ = select.select([fd], [], [], 0)
            if not readable:
                return
            try:
                data = os.read(fd, READ_SIZE)
            except OSError:
                return
            if not data:
                return
            if self._on_data:
                self._on_data(data)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        self._drain()
        if self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        logger.info("Terminal session exited", pid=process.pid, code=code)
        if self._on_exit:
            self._on_exit(code)

    def write(self, data: bytes | str) -> None:
        """Send input to the process; ignored once it has exited."""
        if not self.is_running or self._master_fd is None:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        view = memoryview(data)
        while view:
            written = os.write(self._master_fd, view)
            view = view[written:]

    def resize(self, size: TerminalSize) -> None:
        self.size = size
        if self._master_fd is None or not self.is_running:
            return
        try:
            _set_winsize(self._master_fd, size)
        except OSError as e:
            logger.debug("Terminal resize failed", error=str(e))

    async def close(self) -> None:
        """Terminate the process group and release the PTY. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError, PermissionError):
                    os.killpg(process.pid, signal.SIGKILL)
                await process.wait()

        if self._watcher is not None:
            await self._watcher
            self._watcher = None

        if self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            os.close(self._master_fd)
            self._master_fd = None
