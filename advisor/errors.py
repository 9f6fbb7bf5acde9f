"""Exceptions shared across the orchestration layers."""

from __future__ import annotations


class ToolError(Exception):
    """A tool could not complete; the message is shown to the model as-is."""


class WorkflowError(Exception):
    """A workflow step could not complete and the task must fail."""


class TaskNotFoundError(KeyError):
    """Raised when a task id does not exist."""
