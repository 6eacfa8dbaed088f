"""
Structured logging for shipline.

The CLI calls ``configure_logging()`` once. Pipeline code logs through
structlog; library modules log diagnostics through stdlib ``logging``.
Both end up on stderr, so ``--json`` results on stdout stay parseable.

Usage Flow:
    ::

        configure_logging(level="INFO", json_format=None)
        logger = get_logger(__name__)

        with LogContext(run_id="3f2a9c1d0b7e", project="shop"):
            logger.info("step.started", step="build", image="shop:1.4")

    Output (JSON format, one line)::

        {"@timestamp": "...", "log.level": "info", "service.name": "shipline",
         "run_id": "3f2a9c1d0b7e", "project": "shop", "event": "step.started",
         "step": "build", "image": "shop:1.4", "logger": "shipline.deploy.steps"}

Guardrails:
    - JSON when stderr is not a terminal (CI), console renderer otherwise
    - Values of secret-looking keys (``password``, ``key_material``...) are
      masked before rendering
    - ECS-compatible field names (``@timestamp``, ``log.level``)
    - httpx request logging is held at WARNING; health probes log their own
      outcome

Tags:
    logging, structlog, json-logging, redaction
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SERVICE_NAME = "shipline"

_SECRET_KEYS = ("password", "passwd", "secret", "token", "key_material", "api_key")
_MASK = "**********"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore")


def _service_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", SERVICE_NAME)
    return event_dict


def _mask_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values whose key names a credential."""
    for key in event_dict:
        if any(marker in key.lower() for marker in _SECRET_KEYS) and event_dict[key]:
            event_dict[key] = _MASK
    return event_dict


def _ecs_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """Configure structlog and stdlib logging to write to stderr.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Unknown names mean INFO.
        json_format: True for JSON lines, False for the console renderer,
            None to pick JSON unless stderr is a terminal.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _service_name,
        _mask_secrets,
    ]
    if json_format:
        processors += [_ecs_names, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str | None = None) -> Any:
    """Get a structlog bound logger."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields (``run_id``, ``host``...) to every later log line."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    Fields that were already bound outside the block get their outer value
    back on exit, so nested contexts can override ``step`` or ``host``.

    Example:
        with LogContext(run_id="3f2a9c1d0b7e"):
            with LogContext(step="activate"):
                logger.info("compose.up")
    """

    def __init__(self, **kwargs: Any):
        self._fields = kwargs
        self._outer: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        bound = structlog.contextvars.get_contextvars()
        self._outer = {k: bound[k] for k in self._fields if k in bound}
        structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self._fields)
        if self._outer:
            structlog.contextvars.bind_contextvars(**self._outer)


__all__ = [
    "SERVICE_NAME",
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
]
