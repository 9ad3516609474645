"""
Structured logging for the sandbox harness.

Every module calls ``configure_logging()`` at import time and then asks for a
named logger with ``get_logger(name, **context)``. Events are dotted names
(``sandbox.ready``) with key/value context::

    log = get_logger("supervisor", node_url="http://localhost:8080")
    log.info("sandbox.ready", duration_ms=1520)

Environment:
    LOG_LEVEL   minimum level (default INFO)
    LOG_FORMAT  "json" for JSON lines, anything else for console output
"""

import logging
import os
import sys
from typing import Any

import structlog

_configured = False


def _render_exc(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render ``exc=`` values as ``TypeName: message`` strings."""
    exc = event_dict.get("exc")
    if isinstance(exc, BaseException):
        event_dict["exc"] = f"{type(exc).__name__}: {exc}"
    return event_dict


def configure_logging(force: bool = False) -> None:
    """Configure structlog once per process."""
    global _configured
    if _configured and not force:
        return

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    if os.environ.get("LOG_FORMAT", "").lower() == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _render_exc,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str, **context: Any) -> Any:
    """Return a logger bound to ``component=name`` plus any extra context."""
    return structlog.get_logger(f"sandbox_harness.{name}").bind(component=name, **context)
