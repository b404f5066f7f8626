"""Perry workspaces - orchestration core for container-backed dev environments."""

__version__ = "0.3.0"
