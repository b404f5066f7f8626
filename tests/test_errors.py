"""Tests for the error taxonomy and name validation."""

import pytest

from perry_workspaces.errors import (
    ConflictError,
    NotFoundError,
    PerryError,
    ProcessError,
    ProcessTimeoutError,
    ResourceExhaustedError,
    ValidationError,
    WorkerBinaryTimeoutError,
    WorkspaceOperationError,
    validate_workspace_name,
)


class TestErrorKinds:
    """Test the stable kind strings."""

    def test_kinds(self) -> None:
        assert NotFoundError("x").kind == "not_found"
        assert ConflictError("x").kind == "conflict"
        assert ValidationError("x").kind == "validation"
        assert ResourceExhaustedError("x").kind == "resource_exhausted"
        assert ProcessTimeoutError(["docker", "cp"], 10).kind == "timeout"
        assert WorkerBinaryTimeoutError(["docker", "cp"], 10).kind == "worker_binary_timeout"

    def test_builtin_bases(self) -> None:
        assert isinstance(ValidationError("x"), ValueError)
        assert isinstance(ProcessTimeoutError(["x"], 10), TimeoutError)
        assert isinstance(WorkerBinaryTimeoutError(["x"], 10), ProcessTimeoutError)

    def test_timeout_message(self) -> None:
        error = ProcessTimeoutError(["docker", "cp", "a", "b"], 10)
        assert str(error) == "Command timed out after 10ms: docker cp a b"

    def test_process_error_message(self) -> None:
        error = ProcessError(["docker", "rm", "x"], 1, "", "No such container: x\n")
        assert str(error) == "Command failed with exit code 1: docker rm x\nNo such container: x"

    def test_operation_error_mirrors_cause(self) -> None:
        cause = ProcessTimeoutError(["docker", "stop", "workspace-a"], 1000)
        error = WorkspaceOperationError("a", "stop", cause)

        assert error.kind == "timeout"
        assert str(error).startswith("Failed to stop workspace 'a': Command timed out")
        assert PerryError.kind == "perry"

    def test_operation_error_with_plain_cause(self) -> None:
        error = WorkspaceOperationError("a", "sync", OSError("disk full"))
        assert error.kind == "perry"


class TestValidateWorkspaceName:
    """Test workspace name validation."""

    @pytest.mark.parametrize("name", ["alpha", "my-project", "proj_2", "A1"])
    def test_valid(self, name: str) -> None:
        assert validate_workspace_name(name) == name

    @pytest.mark.parametrize("name", ["", "-lead", "has space", "../etc", "a/b", "semi;colon"])
    def test_invalid(self, name: str) -> None:
        with pytest.raises(ValidationError):
            validate_workspace_name(name)
