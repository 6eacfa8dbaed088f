"""
Core primitives shared by every shipline subpackage.

Modules:
    errors      ShiplineError hierarchy with categories and context
    logging     structlog configuration and context binding
    settings    ShiplineSettings (pydantic-settings, ``SHIPLINE_*``)
"""

from shipline.core.errors import (
    ActivationError,
    CommandError,
    CommandTimeoutError,
    ComposeFileError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    HealthCheckError,
    InvalidConfigError,
    MissingConfigError,
    RollbackError,
    ShiplineError,
    ToolNotFoundError,
    TransferError,
)

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
