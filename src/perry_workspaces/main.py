#!/usr/bin/env python3
"""Perry workspaces - CLI entry point."""

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .config import PerrySettings, load_config
from .errors import PerryError
from .models import CreateWorkspaceOptions
from .process import ProcessClient
from .session_names import SessionNameStore
from .tailscale import TailscaleDaemonSupervisor, get_tailscale_status, start_serve, stop_serve
from .workspace_manager import WorkspaceManager

T = TypeVar("T")


def _init_sentry() -> bool:
    """Initialize Sentry for error tracking when SENTRY_DSN is set."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"perry-workspaces@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="perry-workspaces",
        ignore_errors=[
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )

    sentry_sdk.set_tag("service", "perry-workspaces")
    return True


def _configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


_sentry_enabled = _init_sentry()

logger = structlog.get_logger()


def _error(message: str) -> None:
    click.echo(click.style("Error: ", fg="red", bold=True) + message, err=True)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning orchestration errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except PerryError as e:
        logger.debug("Command failed", kind=e.kind, error=str(e))
        _error(str(e))
        sys.exit(1)
    finally:
        if _sentry_enabled:
            sentry_sdk.flush(timeout=2.0)


def _manager(ctx: click.Context) -> WorkspaceManager:
    settings: PerrySettings = ctx.obj["settings"]
    try:
        return WorkspaceManager(settings)
    except (OSError, ValueError) as e:
        _error(f"Invalid agent config {settings.agent_config_path}: {e}")
        sys.exit(1)


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env


@click.group()
@click.version_option(version=__version__, prog_name="perry-workspaces")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None) -> None:
    """Perry - isolated containerized development workspaces.

    Configuration is loaded from (in priority order):
    1. Environment variables (PERRY_*)
    2. Config file (~/.config/perry/perry.toml or --config)
    """
    settings = load_config(config_file)
    _configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# =============================================================================
# WORKSPACE COMMANDS
# =============================================================================


@cli.command("list")
@click.pass_context
def list_workspaces(ctx: click.Context) -> None:
    """List workspaces."""
    workspaces = _run(_manager(ctx).list())

    if not workspaces:
        click.echo(click.style("No workspaces.", fg="yellow"))
        return

    colors = {"running": "green", "stopped": "yellow", "error": "red"}
    for ws in sorted(workspaces, key=lambda w: w.name):
        status = click.style(ws.status.value, fg=colors.get(ws.status.value, "cyan"))
        ssh = ws.ports.get("ssh")
        label = f" ({ws.display_name})" if ws.display_name else ""
        click.echo(f"  {ws.name}{label}  {status}  ssh:{ssh or '-'}  created {ws.created}")


@cli.command()
@click.argument("name")
@click.option("--clone", help="Git repository to clone into the workspace")
@click.option(
    "--env",
    "env_pairs",
    multiple=True,
    help="Container environment variable KEY=VALUE (can be repeated)",
)
@click.pass_context
def create(ctx: click.Context, name: str, clone: str | None, env_pairs: tuple[str, ...]) -> None:
    """Create a workspace."""
    options = CreateWorkspaceOptions(clone=clone, env=_parse_env(env_pairs))
    ws = _run(_manager(ctx).create(name, options))
    click.echo(
        click.style("Created ", fg="green") + f"{ws.name} (ssh port {ws.ports.get('ssh')})"
    )


@cli.command()
@click.argument("name")
@click.pass_context
def start(ctx: click.Context, name: str) -> None:
    """Start a stopped workspace."""
    ws = _run(_manager(ctx).start(name))
    click.echo(click.style("Started ", fg="green") + ws.name)


@cli.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """Stop a running workspace."""
    ws = _run(_manager(ctx).stop(name))
    click.echo(click.style("Stopped ", fg="green") + ws.name)


@cli.command()
@click.argument("name")
@click.pass_context
def sync(ctx: click.Context, name: str) -> None:
    """Copy credentials, agent files and the worker binary into a workspace."""
    ws = _run(_manager(ctx).sync(name))
    click.echo(click.style("Synced ", fg="green") + ws.name)


@cli.command()
@click.argument("name")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, name: str, yes: bool) -> None:
    """Delete a workspace and its container."""
    if not yes:
        click.confirm(f"Delete workspace '{name}'?", abort=True)

    if not _run(_manager(ctx).delete(name)):
        _error(f"Workspace '{name}' not found")
        sys.exit(1)
    click.echo(click.style("Deleted ", fg="green") + name)


@cli.command()
@click.argument("name")
@click.option("--tail", type=int, default=None, help="Number of lines from the end")
@click.pass_context
def logs(ctx: click.Context, name: str, tail: int | None) -> None:
    """Show a workspace container's logs."""
    click.echo(_run(_manager(ctx).logs(name, tail=tail)), nl=False)


# =============================================================================
# DAEMON
# =============================================================================


async def _run_daemon(settings: PerrySettings, serve_port: int | None) -> bool:
    supervisor = TailscaleDaemonSupervisor(settings)
    await supervisor.ensure()

    if not await supervisor.wait_for_ready():
        _error("tailscaled did not become ready. Last log lines:")
        for line in supervisor.last_log_tail:
            click.echo(f"  {line}", err=True)
        await supervisor.stop()
        return False

    status = await get_tailscale_status(supervisor.process, settings.tailscale_binary)
    click.echo(click.style("tailscaled ready", fg="green", bold=True))
    if status.dns_name:
        click.echo(f"  DNS name: {status.dns_name}")
    if status.ipv4:
        click.echo(f"  IPv4: {status.ipv4}")

    if serve_port is not None:
        if await start_serve(supervisor.process, serve_port, settings.tailscale_binary):
            click.echo(f"  Serving port {serve_port} on the tailnet")
        else:
            click.echo(click.style("  Could not enable tailscale serve", fg="yellow"))

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    await shutdown_event.wait()
    click.echo("\nShutting down...")

    if serve_port is not None:
        await stop_serve(supervisor.process, settings.tailscale_binary)
    await supervisor.stop()
    return True


@cli.command()
@click.option("--serve-port", type=int, default=None, help="Local port to expose over HTTPS")
@click.pass_context
def daemon(ctx: click.Context, serve_port: int | None) -> None:
    """Run and supervise tailscaled until interrupted."""
    settings: PerrySettings = ctx.obj["settings"]
    if not _run(_run_daemon(settings, serve_port)):
        sys.exit(1)


# =============================================================================
# SYSTEM CHECK
# =============================================================================


CHECK_TIMEOUT_MS = 10_000


def _report(label: str, status: str, color: str, detail: str | None = None) -> None:
    line = click.style(f"  {label}: ", bold=True) + click.style(status, fg=color)
    click.echo(f"{line} ({detail})" if detail else line)


async def _docker_cli_version(settings: PerrySettings) -> str:
    """Ask the configured docker CLI for the server version it talks to."""
    result = await ProcessClient().run(
        settings.docker_binary,
        ["version", "--format", "{{.Server.Version}}"],
        timeout_ms=CHECK_TIMEOUT_MS,
    )
    return result.stdout.strip()


def _existing_parent(path: Path) -> Path:
    return next(p for p in (path, *path.parents) if p.exists())


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Check system requirements for running workspaces.

    Verifies the docker CLI Perry drives, the Docker daemon, Tailscale and
    the worker binary, and shows system resources.
    """
    import platform
    import shutil

    settings: PerrySettings = ctx.obj["settings"]

    click.echo(click.style("System Check", fg="cyan", bold=True))
    click.echo()

    all_ok = True

    # Workspace operations go through this binary, not the SDK
    try:
        server = asyncio.run(_docker_cli_version(settings))
        _report("Docker CLI", "OK", "green", f"{settings.docker_binary}, server v{server}")
    except PerryError as e:
        _report("Docker CLI", "FAILED", "red", str(e).splitlines()[0])
        all_ok = False

    try:
        import docker

        client = docker.from_env()
        info = client.info()
        managed = client.containers.list(all=True, filters={"label": "perry.managed=true"})
        _report(
            "Docker daemon",
            "OK",
            "green",
            f"v{info['ServerVersion']}, {len(managed)} workspace containers",
        )
    except Exception as e:
        _report("Docker daemon", "FAILED", "red", str(e))
        all_ok = False

    try:
        import psutil

        gib = 1024**3
        mem = psutil.virtual_memory()
        disk_path = _existing_parent(settings.config_dir)
        disk = psutil.disk_usage(str(disk_path))

        click.echo(
            click.style("  Memory: ", bold=True)
            + f"{mem.available / gib:.1f} GB free of {mem.total / gib:.1f} GB"
        )
        click.echo(click.style("  CPU cores: ", bold=True) + f"{psutil.cpu_count()}")
        click.echo(
            click.style("  Disk: ", bold=True) + f"{disk.free / gib:.1f} GB free at {disk_path}"
        )
    except Exception as e:
        _report("Resources", "FAILED", "red", str(e))
        all_ok = False

    # Tailscale is optional: workspaces work without a tailnet
    if TailscaleDaemonSupervisor(settings).is_installed():
        _report("Tailscale", "OK", "green")
    else:
        _report("Tailscale", "NOT FOUND", "yellow", "optional, required for remote access")

    worker = settings.worker_binary or shutil.which("perry-worker")
    if worker:
        _report("perry-worker", "OK", "green", str(worker))
    else:
        _report("perry-worker", "NOT FOUND", "yellow", "sync will skip the worker binary")

    click.echo(click.style("  Platform: ", bold=True) + f"{platform.system()} {platform.release()}")
    click.echo(click.style("  Architecture: ", bold=True) + platform.machine())
    click.echo()

    if all_ok:
        click.echo(click.style("All checks passed!", fg="green", bold=True))
    else:
        click.echo(click.style("Some checks failed.", fg="red", bold=True))
        sys.exit(1)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"perry-workspaces v{__version__}")


# =============================================================================
# SESSION NAME COMMANDS
# =============================================================================


@cli.group("session-name")
def session_name() -> None:
    """Manage custom names for agent sessions."""
    pass


def _session_names(ctx: click.Context) -> SessionNameStore:
    settings: PerrySettings = ctx.obj["settings"]
    return SessionNameStore(settings.session_names_path)


@session_name.command("set")
@click.argument("workspace")
@click.argument("session_id")
@click.argument("name")
@click.pass_context
def session_name_set(ctx: click.Context, workspace: str, session_id: str, name: str) -> None:
    """Name a session."""
    _run(_session_names(ctx).set(workspace, session_id, name))
    click.echo(click.style("Named ", fg="green") + f"{session_id} -> {name}")


@session_name.command("list")
@click.argument("workspace")
@click.pass_context
def session_name_list(ctx: click.Context, workspace: str) -> None:
    """List named sessions in a workspace."""
    names = _run(_session_names(ctx).list_for_workspace(workspace))
    if not names:
        click.echo(click.style("No named sessions.", fg="yellow"))
        return
    for session_id, name in sorted(names.items()):
        click.echo(f"  {session_id}  {name}")


@session_name.command("delete")
@click.argument("workspace")
@click.argument("session_id")
@click.pass_context
def session_name_delete(ctx: click.Context, workspace: str, session_id: str) -> None:
    """Remove a session's custom name."""
    _run(_session_names(ctx).delete(workspace, session_id))
    click.echo(click.style("Removed name for ", fg="green") + session_id)


if __name__ == "__main__":
    cli()
