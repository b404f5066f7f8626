"""Supervision of the ``tailscaled`` VPN daemon and ``tailscale`` CLI helpers."""

import asyncio
import contextlib
import json
import os
import shutil
import signal
import subprocess
from typing import IO

import structlog

from .config import PerrySettings
from .errors import InstallationMissingError, PerryError
from .models import TailscaleStatus
from .process import ProcessClient

logger = structlog.get_logger()

LOG_TAIL_LINES = 20
STATUS_TIMEOUT_MS = 5_000
STOP_GRACE_SECONDS = 5.0


class TailscaleDaemonSupervisor:
    """Owns at most one ``tailscaled`` child process.

    The daemon writes stdout and stderr into a single append-mode log file.
    When it exits, a watcher task appends an exit line, closes the log and
    drops the handle so the next ``ensure()`` starts a fresh daemon.
    """

    def __init__(self, settings: PerrySettings, process: ProcessClient | None = None) -> None:
        self.settings = settings
        self.process = process or ProcessClient()
        self.last_log_tail: list[str] = []
        self._daemon: asyncio.subprocess.Process | None = None
        self._log_file: IO[str] | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._daemon is not None and self._daemon.returncode is None

    @property
    def pid(self) -> int | None:
        return self._daemon.pid if self.is_running and self._daemon else None

    def is_installed(self) -> bool:
        """Check whether the ``tailscale`` CLI is on PATH."""
        try:
            return shutil.which(self.settings.tailscale_binary) is not None
        except OSError:
            return False

    def _daemon_argv(self) -> list[str]:
        state_file = self.settings.tailscale_state_dir / "tailscaled.state"
        return [
            self.settings.tailscaled_binary,
            f"--state={state_file}",
            f"--socket={self.settings.tailscale_socket}",
        ]

    async def start(self) -> asyncio.subprocess.Process:
        """Spawn ``tailscaled`` unconditionally.

        Raises:
            InstallationMissingError: If the tailscaled binary does not exist
            OSError: If the daemon could not be spawned for another reason
        """
        self.settings.tailscale_state_dir.mkdir(parents=True, exist_ok=True)
        self.settings.tailscale_socket.parent.mkdir(parents=True, exist_ok=True)
        self.settings.tailscale_log_path.parent.mkdir(parents=True, exist_ok=True)

        log_file = open(self.settings.tailscale_log_path, "a", encoding="utf-8")  # noqa: SIM115
        argv = self._daemon_argv()

        logger.info("Starting tailscaled", command=argv, log=str(self.settings.tailscale_log_path))
        try:
            daemon = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                start_new_session=True,
            )
        except OSError as e:
            log_file.write(f"[tailscaled] error: {e}\n")
            log_file.close()
            self._daemon = None
            logger.error("Failed to start tailscaled", error=str(e))
            if isinstance(e, FileNotFoundError):
                raise InstallationMissingError(
                    f"{self.settings.tailscaled_binary} is not installed or not on PATH"
                ) from e
            raise

        self._daemon = daemon
        self._log_file = log_file
        self._watcher = asyncio.create_task(self._watch(daemon, log_file))
        logger.info("tailscaled started", pid=daemon.pid)
        return daemon

    async def _watch(self, daemon: asyncio.subprocess.Process, log_file: IO[str]) -> None:
        code = await daemon.wait()
        try:
            log_file.write(f"[tailscaled] exited with code {code}\n")
        finally:
            log_file.close()
        if self._daemon is daemon:
            self._daemon = None
            self._log_file = None
        logger.warning("tailscaled exited", pid=daemon.pid, code=code)

    async def ensure(self) -> asyncio.subprocess.Process:
        """Return the live daemon, starting one if none is running."""
        async with self._lock:
            if self._daemon is not None and self._daemon.returncode is None:
                return self._daemon
            return await self.start()

    async def wait_for_ready(self) -> bool:
        """Poll ``tailscale status`` until the daemon answers.

        The daemon counts as ready when the status command exits 0 or reports
        "Logged out" (reachable but not yet authenticated).

        Returns:
            True once ready, False after the configured number of attempts
        """
        attempts = self.settings.tailscale_ready_attempts
        interval = self.settings.tailscale_ready_interval

        for attempt in range(1, attempts + 1):
            try:
                result = await self.process.run(
                    self.settings.tailscale_binary,
                    [f"--socket={self.settings.tailscale_socket}", "status"],
                    timeout_ms=STATUS_TIMEOUT_MS,
                    ignore_failure=True,
                )
            except InstallationMissingError:
                raise
            except PerryError as e:
                logger.debug("tailscale status failed", attempt=attempt, error=str(e))
            else:
                if result.ok or "Logged out" in result.stderr:
                    logger.info("tailscaled ready", attempt=attempt)
                    return True

            if attempt < attempts:
                await asyncio.sleep(interval)

        self.last_log_tail = self.read_log_tail()
        logger.error(
            "tailscaled did not become ready",
            attempts=attempts,
            log_tail="\n".join(self.last_log_tail),
        )
        return False

    def read_log_tail(self, lines: int = LOG_TAIL_LINES) -> list[str]:
        """Last non-blank lines of the daemon log; empty if unreadable."""
        try:
            with open(self.settings.tailscale_log_path, encoding="utf-8", errors="replace") as f:
                content = [line.rstrip("\n") for line in f if line.strip()]
        except OSError:
            return []
        return content[-lines:]

    async def stop(self) -> None:
        """Terminate the daemon if it is running and wait for the watcher."""
        daemon = self._daemon
        if daemon is not None and daemon.returncode is None:
            logger.info("Stopping tailscaled", pid=daemon.pid)
            with contextlib.suppress(ProcessLookupError):
                os.killpg(daemon.pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(daemon.wait(), timeout=STOP_GRACE_SECONDS)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(daemon.pid, signal.SIGKILL)
                await daemon.wait()

        if self._watcher is not None:
            await self._watcher
            self._watcher = None


async def get_tailscale_status(
    process: ProcessClient, binary: str = "tailscale"
) -> TailscaleStatus:
    """Summarize ``tailscale status --json``; any failure reads as not running."""
    try:
        result = await process.run(
            binary, ["status", "--json"], timeout_ms=STATUS_TIMEOUT_MS, ignore_failure=True
        )
    except PerryError:
        return TailscaleStatus()

    if not result.ok:
        return TailscaleStatus()

    try:
        status = json.loads(result.stdout)
    except json.JSONDecodeError:
        return TailscaleStatus()

    if status.get("BackendState") != "Running":
        return TailscaleStatus()

    me = status.get("Self") or {}
    dns_name = (me.get("DNSName") or "").rstrip(".") or None
    tailnet_name = None
    if dns_name:
        tailnet_name = ".".join(dns_name.split(".")[1:]) or None
    ipv4 = next((ip for ip in me.get("TailscaleIPs") or [] if ":" not in ip), None)

    return TailscaleStatus(
        running=True,
        dns_name=dns_name,
        tailnet_name=tailnet_name,
        ipv4=ipv4,
        https_enabled=bool(status.get("CertDomains")),
    )


async def start_serve(process: ProcessClient, port: int, binary: str = "tailscale") -> bool:
    """Expose a local port over HTTPS on the tailnet (``tailscale serve --bg``)."""
    try:
        result = await process.run(binary, ["serve", "--bg", str(port)], ignore_failure=True)
    except PerryError as e:
        logger.warning("tailscale serve failed", port=port, error=str(e))
        return False
    return result.ok


async def stop_serve(process: ProcessClient, binary: str = "tailscale") -> bool:
    try:
        result = await process.run(binary, ["serve", "off"], ignore_failure=True)
    except PerryError as e:
        logger.warning("tailscale serve off failed", error=str(e))
        return False
    return result.ok
