"""Error taxonomy for the workspace orchestration core.

Every error carries a stable ``kind`` string so callers (CLI, web API) can
branch without matching on message text. Message texts that callers already
depend on ("timed out", "Timed out copying perry worker binary") are kept
verbatim.
"""

from __future__ import annotations

import re
from typing import ClassVar

# Workspace names end up in container names, hostnames and file keys.
SAFE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")


class PerryError(Exception):
    """Base class for all orchestration errors."""

    kind: ClassVar[str] = "perry"


class NotFoundError(PerryError):
    """Raised when a workspace, container or session does not exist."""

    kind = "not_found"


class ConflictError(PerryError):
    """Raised when creating a workspace whose name is already taken."""

    kind = "conflict"


class ValidationError(PerryError, ValueError):
    """Raised when input validation fails."""

    kind = "validation"


class NotRunningError(PerryError):
    """Raised when an operation needs a running container and there is none."""

    kind = "not_running"


class ResourceExhaustedError(PerryError):
    """Raised when a host resource such as the SSH port range has run out."""

    kind = "resource_exhausted"


class StorageError(PerryError):
    """Raised when a persisted file exists but cannot be read or parsed."""

    kind = "storage"


class InstallationMissingError(PerryError):
    """Raised when a required external binary is not installed."""

    kind = "installation_missing"


class ProcessError(PerryError):
    """Raised when an external command exits with a non-zero code."""

    kind = "process"

    def __init__(
        self,
        command: list[str],
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip()
        message = f"Command failed with exit code {exit_code}: {' '.join(command)}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)


class ProcessTimeoutError(PerryError, TimeoutError):
    """Raised when an external command does not finish within its deadline.

    The process group has already been terminated when this is raised.
    """

    kind = "timeout"

    def __init__(
        self,
        command: list[str],
        timeout_ms: int,
        returncode: int | None = None,
        message: str | None = None,
    ) -> None:
        self.command = command
        self.timeout_ms = timeout_ms
        self.returncode = returncode
        super().__init__(message or f"Command timed out after {timeout_ms}ms: {' '.join(command)}")


class WorkerBinaryTimeoutError(ProcessTimeoutError):
    """Raised when copying the perry worker binary into a container times out."""

    kind = "worker_binary_timeout"


class WorkspaceOperationError(PerryError):
    """A lower-level failure enriched with the workspace and operation it hit.

    ``kind`` mirrors the wrapped error so callers can still branch on the
    underlying cause.
    """

    def __init__(self, workspace: str, operation: str, cause: Exception) -> None:
        self.workspace = workspace
        self.operation = operation
        self.cause = cause
        self.kind = getattr(cause, "kind", PerryError.kind)  # type: ignore[misc]
        super().__init__(f"Failed to {operation} workspace '{workspace}': {cause}")


def validate_workspace_name(name: str) -> str:
    """Validate a workspace name.

    Args:
        name: Human-chosen workspace name

    Returns:
        The validated name (unchanged if valid)

    Raises:
        ValidationError: If the name is empty or contains unsafe characters
    """
    if not name:
        raise ValidationError("Invalid workspace name: cannot be empty")

    if not SAFE_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid workspace name '{name}': use letters, digits, '_' and '-' only"
        )

    return name
