"""Exceptions shared by every runbook."""

from __future__ import annotations


class ToolkitError(RuntimeError):
    """Base class for failures reported as ``error: ...`` by the CLI."""


class PreflightError(ToolkitError):
    """Raised when a precondition for a runbook is not met."""


class ConfigError(ToolkitError):
    """Raised when the toolkit configuration file is missing or invalid."""


class OperationAborted(ToolkitError):
    """Raised when the operator declines a confirmation prompt."""

    def __init__(self, message: str = "Operation cancelled.", *, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code
