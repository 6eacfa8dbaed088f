"""
Structured error types for shipline.

Every failure the deployment pipeline can hit is raised as a
``ShiplineError`` subclass. Errors carry a category, a retry flag, an
``ErrorContext`` describing where they happened (step, host, command,
exit code, URL) and the chained underlying exception.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       ShiplineError                           │
        │  (category, retryable, retry_after, context, cause)           │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  ConfigError          CommandError        ComposeFileError    │
        │  (CONFIG)             (EXECUTION)         (VALIDATION)        │
        │      │                    │                                   │
        │  MissingConfigError   CommandTimeoutError                     │
        │  InvalidConfigError   (retryable)                             │
        │  ToolNotFoundError                                            │
        │                                                               │
        │  TransferError        HealthCheckError    RollbackError       │
        │  (NETWORK, retryable) (HEALTH)            (EXECUTION)         │
        │                                                               │
        │  ActivationError                                              │
        │  (EXECUTION)                                                  │
        └──────────────────────────────────────────────────────────────┘

Examples:
    A failed ``docker compose up`` on the target host:

    >>> err = CommandError(
    ...     "compose up failed",
    ...     command=["docker", "compose", "up", "-d"],
    ...     exit_code=1,
    ...     stderr="no such service: app",
    ... ).with_context(step="activate", host="203.0.113.10")
    >>> err.context.exit_code
    1
    >>> err.to_dict()["category"]
    'EXECUTION'

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and reporting."""

    # Environment / configuration (never retryable)
    CONFIG = "CONFIG"             # Missing settings, missing binaries
    VALIDATION = "VALIDATION"     # Invalid compose file, bad input

    # Infrastructure (often transient)
    NETWORK = "NETWORK"           # SSH/SCP, registry, HTTP connectivity
    EXECUTION = "EXECUTION"       # External command exited non-zero

    # Application
    HEALTH = "HEALTH"             # Post-deploy health endpoint failure

    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only the fields that are set end up in ``to_dict()``, so the same
    dataclass works for a failed SSH command and a failed health probe.
    """

    # Pipeline context
    step: str | None = None
    run_id: str | None = None

    # Execution context
    host: str | None = None
    service: str | None = None
    command: str | None = None
    exit_code: int | None = None

    # Request context
    url: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Set fields plus metadata, flattened into one dict."""
        out = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "metadata" and getattr(self, f.name) is not None
        }
        return {**out, **self.metadata}


class ShiplineError(Exception):
    """Base exception for all shipline errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ShiplineError:
        """Attach context fields and return self for chaining.

        Unknown keys go to ``context.metadata``::

            raise TransferError("scp failed").with_context(
                step="transfer", host="203.0.113.10", archive="app.tar.gz"
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if context := self.context.to_dict():
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(ShiplineError):
    """Configuration is missing or invalid."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """A required setting was not provided."""

    def __init__(self, setting: str, message: str | None = None, **kwargs: Any):
        super().__init__(message or f"Missing required setting: {setting}", **kwargs)
        self.setting = setting
        self.context.metadata["setting"] = setting


class InvalidConfigError(ConfigError):
    """A setting was provided but has an unusable value."""

    def __init__(self, setting: str, message: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.setting = setting
        self.context.metadata["setting"] = setting


class ToolNotFoundError(ConfigError):
    """An external binary (docker, ssh, scp, gzip) is not on PATH."""

    def __init__(self, tool: str, message: str | None = None, **kwargs: Any):
        super().__init__(
            message or f"{tool!r} not found on PATH. Install it or add it to PATH.",
            **kwargs,
        )
        self.tool = tool
        self.context.metadata["tool"] = tool


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class CommandError(ShiplineError):
    """An external command exited with a non-zero status."""

    default_category = ErrorCategory.EXECUTION

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | str | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        if isinstance(command, list):
            command = " ".join(command)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        if command is not None:
            self.context.command = command
        if exit_code is not None:
            self.context.exit_code = exit_code


class CommandTimeoutError(CommandError):
    """An external command did not finish within its timeout."""

    default_category = ErrorCategory.EXECUTION
    default_retryable = True

    def __init__(self, message: str, *, timeout: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        if timeout is not None:
            self.context.metadata["timeout_seconds"] = timeout


class ComposeFileError(ShiplineError):
    """Compose or env file could not be read, parsed or interpolated."""

    default_category = ErrorCategory.VALIDATION


class TransferError(ShiplineError):
    """Shipping the image to the target host failed."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class ActivationError(ShiplineError):
    """Declared compose services did not reach a running state."""

    default_category = ErrorCategory.EXECUTION


class HealthCheckError(ShiplineError):
    """The post-deploy health endpoint did not report healthy."""

    default_category = ErrorCategory.HEALTH

    def __init__(self, message: str, *, report: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.report = report


class RollbackError(ShiplineError):
    """Reverting to the previous release was impossible or failed."""

    default_category = ErrorCategory.EXECUTION


__all__ = [
    "ActivationError",
    "CommandError",
    "CommandTimeoutError",
    "ComposeFileError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "HealthCheckError",
    "InvalidConfigError",
    "MissingConfigError",
    "RollbackError",
    "ShiplineError",
    "ToolNotFoundError",
    "TransferError",
]
