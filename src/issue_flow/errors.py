"""Exception types raised by the dispatcher and the workflow engine."""

from __future__ import annotations

from enum import Enum
from typing import Any


class DispatchErrorCode(str, Enum):
    GITHUB_AUTH_ERROR = "GITHUB_AUTH_ERROR"
    GITHUB_RATE_LIMIT = "GITHUB_RATE_LIMIT"
    GITHUB_NOT_FOUND = "GITHUB_NOT_FOUND"
    GITHUB_API_ERROR = "GITHUB_API_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    INVALID_CONFIG = "INVALID_CONFIG"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    IO_ERROR = "IO_ERROR"


class DispatchError(Exception):
    """Error raised by the dispatch pipeline.

    Args:
        message: Human-readable description.
        code: Closed error kind used by callers to branch on the failure.
        details: Optional diagnostics such as the HTTP status and raw response body.
    """

    def __init__(self, message: str, code: DispatchErrorCode, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details: dict[str, Any] = dict(details or {})

    @property
    def status(self) -> int | None:
        value = self.details.get("status")
        return value if isinstance(value, int) else None

    def __repr__(self) -> str:
        return f"DispatchError(code={self.code.value!r}, message={str(self)!r})"


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class StepNotFoundError(WorkflowError):
    """The current step name has no registered definition. Never retried."""

    def __init__(self, step_name: str, instance_id: str) -> None:
        super().__init__(f"Step {step_name!r} is not defined (instance {instance_id!r})")
        self.step_name = step_name
        self.instance_id = instance_id


class StepExecutionError(WorkflowError):
    """A concrete step failed while executing."""

    def __init__(self, message: str, *, step_name: str, kind: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"[{kind}:{step_name}] {message}")
        self.step_name = step_name
        self.kind = kind
        self.details: dict[str, Any] = dict(details or {})


class TransitionError(WorkflowError):
    """A transition value has an unrecognized shape or cannot be evaluated."""


class WorkflowDefinitionError(WorkflowError):
    """A workflow step map does not satisfy the step contract."""
