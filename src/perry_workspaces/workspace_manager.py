"""Workspace lifecycle orchestration.

Every operation reads the current record from the state store, drives the
container through ``ContainerClient`` and writes the resulting status back.
No operation leaves a workspace in ``creating``, ``syncing`` or ``deleting``
once it returns or raises.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import socket
from collections.abc import AsyncIterator, Iterator
from pathlib import Path, PurePosixPath

import structlog

from .config import AgentConfig, PerrySettings, expand_path, load_agent_config
from .container import ContainerClient
from .errors import (
    ConflictError,
    InstallationMissingError,
    NotFoundError,
    NotRunningError,
    PerryError,
    ProcessError,
    ProcessTimeoutError,
    ResourceExhaustedError,
    WorkerBinaryTimeoutError,
    WorkspaceOperationError,
    validate_workspace_name,
)
from .models import (
    CreateWorkspaceOptions,
    TerminalSize,
    Workspace,
    WorkspaceStatus,
    now_iso,
)
from .process import ProcessClient
from .session_names import SessionNameStore
from .state import StateStore
from .terminal import TerminalSession, container_target

logger = structlog.get_logger()

SSH_CONTAINER_PORT = 22
WORKER_BINARY_NAME = "perry-worker"

# (host path relative to $HOME, container path relative to the user's home, mode)
AGENT_FILES: tuple[tuple[str, str, str], ...] = (
    (".claude/.credentials.json", ".claude/.credentials.json", "600"),
    (".claude/settings.json", ".claude/settings.json", "644"),
    (".claude/CLAUDE.md", ".claude/CLAUDE.md", "644"),
    (".gitconfig", ".gitconfig", "644"),
)
AGENT_DIRS: tuple[str, ...] = (".claude", ".claude/skills")


def _port_is_free(port: int) -> bool:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


def _repo_dir_name(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name.removesuffix(".git") or "repo"


@contextlib.contextmanager
def _operation(name: str, operation: str) -> Iterator[None]:
    """Attach workspace and operation context to low-level failures."""
    try:
        yield
    except WorkerBinaryTimeoutError:
        raise
    except (ProcessError, ProcessTimeoutError, InstallationMissingError) as e:
        logger.error(
            "Workspace operation failed", workspace=name, operation=operation, error=str(e)
        )
        raise WorkspaceOperationError(name, operation, e) from e


class WorkspaceManager:
    """Creates, starts, stops, syncs and deletes workspaces.

    Operations on the same workspace name are serialized; different names
    run concurrently.
    """

    def __init__(
        self,
        settings: PerrySettings,
        state: StateStore | None = None,
        containers: ContainerClient | None = None,
        agent_config: AgentConfig | None = None,
        session_names: SessionNameStore | None = None,
    ) -> None:
        self.settings = settings
        self.state = state or StateStore(settings.state_path)
        self.containers = containers or ContainerClient(
            ProcessClient(),
            docker_binary=settings.docker_binary,
            container_prefix=settings.container_prefix,
        )
        self.agent_config = agent_config or load_agent_config(settings.config_dir)
        self.session_names = session_names or SessionNameStore(settings.session_names_path)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        """Hold the lock for one workspace name; idle locks are dropped."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

    def container_name(self, name: str) -> str:
        return self.containers.container_name(name)

    @property
    def _home(self) -> PurePosixPath:
        return PurePosixPath("/home") / self.settings.workspace_user

    async def _require(self, name: str) -> Workspace:
        workspace = await self.state.get_workspace(name)
        if workspace is None:
            raise NotFoundError(f"Workspace '{name}' not found")
        return workspace

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, name: str) -> Workspace | None:
        return await self.state.get_workspace(name)

    async def list(self) -> list[Workspace]:
        return await self.state.get_all_workspaces()

    async def is_running(self, name: str) -> bool:
        workspace = await self.state.get_workspace(name)
        if workspace is None or workspace.status != WorkspaceStatus.RUNNING:
            return False
        return await self.containers.container_running(name)

    async def logs(self, name: str, tail: int | None = None) -> str:
        """Return the container's captured stdout and stderr."""
        await self._require(name)
        with _operation(name, "read logs of"):
            result = await self.containers.get_logs(name, tail=tail)
        return result.stdout + result.stderr

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(self, name: str, options: CreateWorkspaceOptions | None = None) -> Workspace:
        """Provision a container for a new workspace.

        The record is persisted only once every container step succeeded; a
        failure after the container exists removes it again.

        Raises:
            ValidationError: If the name is not a safe identifier
            ConflictError: If a workspace with this name already exists
            ResourceExhaustedError: If no SSH port in the range is free
            WorkspaceOperationError: If a container step failed
        """
        validate_workspace_name(name)
        options = options or CreateWorkspaceOptions()

        async with self._locked(name):
            if await self.state.get_workspace(name) is not None:
                raise ConflictError(f"Workspace '{name}' already exists")

            image = self.settings.workspace_image
            logger.info("Creating workspace", workspace=name, image=image, clone=options.clone)

            container_id = ""
            try:
                with _operation(name, "create"):
                    if not await self.containers.image_exists(image):
                        await self.containers.pull_image(image)

                    ssh_port = await self._allocate_ssh_port()
                    env = {**self.agent_config.credentials.env, **options.env}
                    container_id = await self.containers.run_container(
                        name,
                        image,
                        env=env,
                        ports={ssh_port: SSH_CONTAINER_PORT},
                        hostname=name,
                    )

                    if options.clone:
                        await self._clone(name, options.clone)

                workspace = Workspace(
                    name=name,
                    status=WorkspaceStatus.RUNNING,
                    container_id=container_id,
                    ports={"ssh": ssh_port},
                    repo=options.clone,
                )
                await self.state.set_workspace(workspace)
            except BaseException:
                if container_id:
                    await self._discard_container(name)
                raise

        logger.info("Workspace created", workspace=name, ssh_port=ssh_port)
        return workspace

    async def start(self, name: str) -> Workspace:
        async with self._locked(name):
            workspace = await self._require(name)
            running = await self.containers.container_running(name)
            if workspace.status == WorkspaceStatus.RUNNING and running:
                return workspace

            with _operation(name, "start"):
                if not await self.containers.container_exists(name):
                    await self.state.update_workspace_status(name, WorkspaceStatus.ERROR)
                    raise NotFoundError(
                        f"Container {self.container_name(name)} for workspace '{name}' not found"
                    )
                await self.containers.start_container(name)

            workspace = workspace.model_copy(
                update={"status": WorkspaceStatus.RUNNING, "last_used": now_iso()}
            )
            await self.state.set_workspace(workspace)
            logger.info("Workspace started", workspace=name)
            return workspace

    async def stop(self, name: str) -> Workspace:
        async with self._locked(name):
            workspace = await self._require(name)
            if workspace.status == WorkspaceStatus.STOPPED:
                return workspace

            with _operation(name, "stop"):
                await self.containers.stop_container(
                    name, timeout=self.settings.container_stop_timeout
                )

            workspace = workspace.model_copy(
                update={"status": WorkspaceStatus.STOPPED, "last_used": now_iso()}
            )
            await self.state.set_workspace(workspace)
            logger.info("Workspace stopped", workspace=name)
            return workspace

    async def sync(self, name: str) -> Workspace:
        """Push credentials, agent files and the worker binary into the container.

        Raises:
            NotFoundError: If the workspace does not exist
            NotRunningError: If its container is not running
            WorkerBinaryTimeoutError: If copying the worker binary timed out
            WorkspaceOperationError: If any other container step failed
        """
        async with self._locked(name):
            workspace = await self._require(name)
            if workspace.status != WorkspaceStatus.RUNNING or not (
                await self.containers.container_running(name)
            ):
                raise NotRunningError(f"Workspace '{name}' is not running")

            prior = workspace.status
            await self.state.update_workspace_status(name, WorkspaceStatus.SYNCING)
            try:
                with _operation(name, "sync"):
                    await self._sync_agent_files(name)
                    await self._copy_worker_binary(name)
            finally:
                restored = await self.state.update_workspace_status(name, prior)

            logger.info("Workspace synced", workspace=name)
            return restored or workspace

    async def delete(self, name: str) -> bool:
        """Remove the container and the record.

        Returns:
            False if no such workspace exists, True once it is gone
        """
        async with self._locked(name):
            if await self.state.get_workspace(name) is None:
                return False

            await self.state.update_workspace_status(name, WorkspaceStatus.DELETING)
            try:
                with _operation(name, "delete"):
                    await self.containers.remove_container(name, force=True)
            except PerryError:
                try:
                    still_exists = await self.containers.container_exists(name)
                except PerryError:
                    still_exists = True
                if still_exists:
                    await self.state.update_workspace_status(name, WorkspaceStatus.ERROR)
                    raise
                logger.warning("Container already gone after failed removal", workspace=name)

            await self.state.delete_workspace(name)
            try:
                await self.session_names.delete_for_workspace(name)
            except OSError as e:
                logger.warning(
                    "Failed to drop session names of deleted workspace",
                    workspace=name,
                    error=str(e),
                )
            logger.info("Workspace deleted", workspace=name)
            return True

    # ------------------------------------------------------------------
    # Record updates
    # ------------------------------------------------------------------

    async def touch(self, name: str) -> Workspace:
        workspace = await self.state.touch_workspace(name)
        if workspace is None:
            raise NotFoundError(f"Workspace '{name}' not found")
        return workspace

    async def set_display_name(self, name: str, display_name: str | None) -> Workspace:
        workspace = await self.state.set_display_name(name, display_name)
        if workspace is None:
            raise NotFoundError(f"Workspace '{name}' not found")
        return workspace

    async def open_terminal(self, name: str, size: TerminalSize | None = None) -> TerminalSession:
        """Open a login shell inside the workspace container."""
        await self._require(name)
        session = TerminalSession(
            container_target(self.containers, name, user=self.settings.workspace_user),
            size=size,
        )
        await session.open()
        await self.state.touch_workspace(name)
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _allocate_ssh_port(self) -> int:
        used = {
            port
            for workspace in await self.state.get_all_workspaces()
            for port in workspace.ports.values()
        }
        for port in range(self.settings.ssh_port_start, self.settings.ssh_port_end + 1):
            if port not in used and _port_is_free(port):
                return port
        raise ResourceExhaustedError(
            f"No free SSH port between {self.settings.ssh_port_start} "
            f"and {self.settings.ssh_port_end}"
        )

    async def _discard_container(self, name: str) -> None:
        try:
            await self.containers.remove_container(name, force=True)
        except PerryError as e:
            logger.warning(
                "Failed to remove container after failed create", workspace=name, error=str(e)
            )

    async def _clone(self, name: str, url: str) -> None:
        dest = str(self._home / _repo_dir_name(url))
        logger.info("Cloning repository", workspace=name, repo=url, dest=dest)
        await self.containers.exec_in_container(
            name, ["git", "clone", url, dest], user=self.settings.workspace_user
        )

    async def _copy_file(self, name: str, src: Path, dest: str, mode: str | None = None) -> None:
        user = self.settings.workspace_user
        parent = str(PurePosixPath(dest).parent)
        await self.containers.exec_in_container(name, ["mkdir", "-p", parent], user="root")
        await self.containers.copy_to_container(name, src, dest)
        await self.containers.exec_in_container(
            name, ["chown", f"{user}:{user}", dest], user="root"
        )
        if mode:
            await self.containers.exec_in_container(name, ["chmod", mode, dest], user="root")

    async def _sync_agent_files(self, name: str) -> None:
        user = self.settings.workspace_user
        dirs = [str(self._home / d) for d in AGENT_DIRS]
        await self.containers.exec_in_container(name, ["mkdir", "-p", *dirs], user=user)

        for dest, src in self.agent_config.credentials.files.items():
            src_path = expand_path(src)
            if not src_path.is_file():
                logger.warning(
                    "Credential file not found, skipping", workspace=name, src=str(src_path)
                )
                continue
            await self._copy_file(name, src_path, dest)

        home = Path.home()
        for host_rel, container_rel, mode in AGENT_FILES:
            src_path = home / host_rel
            if src_path.is_file():
                await self._copy_file(name, src_path, str(self._home / container_rel), mode)

    def _find_worker_binary(self) -> Path | None:
        if self.settings.worker_binary is not None:
            return self.settings.worker_binary if self.settings.worker_binary.is_file() else None
        found = shutil.which(WORKER_BINARY_NAME)
        return Path(found) if found else None

    async def _copy_worker_binary(self, name: str) -> None:
        binary = self._find_worker_binary()
        if binary is None:
            logger.warning("perry-worker binary not found, skipping copy", workspace=name)
            return

        dest = self.settings.worker_binary_dest
        timeout_ms = self.settings.worker_copy_timeout_ms
        try:
            await self.containers.copy_to_container(name, binary, dest, timeout_ms=timeout_ms)
        except ProcessTimeoutError as e:
            raise WorkerBinaryTimeoutError(
                e.command,
                timeout_ms,
                e.returncode,
                message=(
                    f"Timed out copying perry worker binary to workspace '{name}' "
                    f"after {timeout_ms}ms: {e}"
                ),
            ) from e
        await self.containers.exec_in_container(name, ["chmod", "+x", dest], user="root")
