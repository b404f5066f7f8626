"""Docker CLI operations for workspace containers.

All calls go through the ``ProcessClient`` so every container operation gets
the same timeout and failure classification.
"""

from collections.abc import Mapping, Sequence
from pathlib import Path

import structlog

from .errors import NotFoundError, ProcessError
from .models import ProcessResult
from .process import ProcessClient

logger = structlog.get_logger()

LABEL_MANAGED = "perry.managed"
LABEL_WORKSPACE = "perry.workspace"


class ContainerClient:
    """Thin wrapper over the ``docker`` CLI."""

    def __init__(
        self,
        process: ProcessClient | None = None,
        docker_binary: str = "docker",
        container_prefix: str = "workspace-",
    ) -> None:
        self.process = process or ProcessClient()
        self.docker_binary = docker_binary
        self.container_prefix = container_prefix

    def container_name(self, workspace_name: str) -> str:
        return f"{self.container_prefix}{workspace_name}"

    async def _docker(
        self,
        args: Sequence[str],
        *,
        timeout_ms: int | None = None,
        ignore_failure: bool = False,
    ) -> ProcessResult:
        return await self.process.run(
            self.docker_binary,
            list(args),
            timeout_ms=timeout_ms,
            ignore_failure=ignore_failure,
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def image_exists(self, image: str) -> bool:
        result = await self._docker(["image", "inspect", image], ignore_failure=True)
        return result.ok

    async def pull_image(self, image: str) -> None:
        logger.info("Pulling image", image=image)
        await self._docker(["pull", image])

    async def build_image(
        self,
        tag: str,
        context_dir: str | Path,
        dockerfile: str | Path | None = None,
    ) -> None:
        args = ["build", "-t", tag]
        if dockerfile:
            args += ["-f", str(dockerfile)]
        args.append(str(context_dir))
        logger.info("Building image", tag=tag, context=str(context_dir))
        await self._docker(args)

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    async def run_container(
        self,
        workspace_name: str,
        image: str,
        *,
        env: Mapping[str, str] | None = None,
        ports: Mapping[int, int] | None = None,
        labels: Mapping[str, str] | None = None,
        hostname: str | None = None,
    ) -> str:
        """Create and start a detached container for a workspace.

        Args:
            workspace_name: Workspace the container belongs to
            image: Image to run
            env: Container environment variables
            ports: Host port -> container port mappings
            labels: Extra container labels
            hostname: Container hostname (defaults to the workspace name)

        Returns:
            The new container ID
        """
        name = self.container_name(workspace_name)
        args = ["run", "-d", "--name", name, "--hostname", hostname or workspace_name]
        all_labels = {LABEL_MANAGED: "true", LABEL_WORKSPACE: workspace_name, **(labels or {})}
        for key, value in all_labels.items():
            args += ["--label", f"{key}={value}"]
        for host_port, container_port in (ports or {}).items():
            args += ["-p", f"{host_port}:{container_port}"]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args.append(image)

        result = await self._docker(args)
        container_id = result.stdout.strip()
        logger.info("Container created", container=name, container_id=container_id[:12])
        return container_id

    async def container_exists(self, workspace_name: str) -> bool:
        result = await self._docker(
            ["inspect", "--type", "container", self.container_name(workspace_name)],
            ignore_failure=True,
        )
        return result.ok

    async def container_running(self, workspace_name: str) -> bool:
        result = await self._docker(
            ["inspect", "-f", "{{.State.Running}}", self.container_name(workspace_name)],
            ignore_failure=True,
        )
        return result.ok and result.stdout.strip() == "true"

    async def get_container_ip(self, workspace_name: str) -> str | None:
        result = await self._docker(
            [
                "inspect",
                "-f",
                "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}",
                self.container_name(workspace_name),
            ],
            ignore_failure=True,
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def start_container(self, workspace_name: str) -> None:
        await self._docker(["start", self.container_name(workspace_name)])

    async def stop_container(self, workspace_name: str, timeout: int = 10) -> None:
        await self._docker(["stop", "-t", str(timeout), self.container_name(workspace_name)])

    async def remove_container(self, workspace_name: str, force: bool = True) -> None:
        """Remove a container; a container that is already gone is not an error."""
        args = ["rm", "-v"]
        if force:
            args.append("-f")
        args.append(self.container_name(workspace_name))
        result = await self._docker(args, ignore_failure=True)
        if result.ok or "No such container" in result.stderr:
            return
        raise ProcessError(
            [self.docker_binary, *args], result.exit_code, result.stdout, result.stderr
        )

    async def get_logs(self, workspace_name: str, tail: int | None = None) -> ProcessResult:
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        args.append(self.container_name(workspace_name))
        result = await self._docker(args, ignore_failure=True)
        if not result.ok and "No such container" in result.stderr:
            raise NotFoundError(f"Container not found: {self.container_name(workspace_name)}")
        if not result.ok:
            raise ProcessError(
                [self.docker_binary, *args], result.exit_code, result.stdout, result.stderr
            )
        return result

    # ------------------------------------------------------------------
    # Exec / copy
    # ------------------------------------------------------------------

    def exec_command(
        self,
        workspace_name: str,
        command: Sequence[str],
        *,
        user: str | None = None,
        workdir: str | None = None,
        env: Mapping[str, str] | None = None,
        interactive: bool = False,
        tty: bool = False,
    ) -> list[str]:
        """Build the full ``docker exec`` argv for a command in a container."""
        args = [self.docker_binary, "exec"]
        if interactive:
            args.append("-i")
        if tty:
            args.append("-t")
        if user:
            args += ["-u", user]
        if workdir:
            args += ["-w", workdir]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args.append(self.container_name(workspace_name))
        args.extend(command)
        return args

    async def exec_in_container(
        self,
        workspace_name: str,
        command: Sequence[str],
        *,
        user: str | None = None,
        workdir: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        ignore_failure: bool = False,
    ) -> ProcessResult:
        argv = self.exec_command(workspace_name, command, user=user, workdir=workdir, env=env)
        return await self.process.run(
            argv[0],
            argv[1:],
            timeout_ms=timeout_ms,
            ignore_failure=ignore_failure,
        )

    async def copy_to_container(
        self,
        workspace_name: str,
        src: str | Path,
        dest: str,
        *,
        timeout_ms: int | None = None,
    ) -> None:
        """Copy a host file into a container (``docker cp``).

        Raises:
            ProcessTimeoutError: If the copy did not finish within timeout_ms
            ProcessError: If docker cp failed
        """
        await self._docker(
            ["cp", str(src), f"{self.container_name(workspace_name)}:{dest}"],
            timeout_ms=timeout_ms,
        )
