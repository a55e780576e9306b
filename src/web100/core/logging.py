"""
web100 - structured logging

All library modules log through :func:`get_logger`. Nothing is configured on
import; applications call :func:`setup_logging` once.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog

from .config import Web100Config


def setup_logging(level: Optional[str] = None, json: bool = False) -> None:
    """Route structlog through stdlib logging on stderr.

    ``level`` defaults to ``WEB100_LOG_LEVEL`` (see ``Web100Config``).
    """
    if level is None:
        level = Web100Config.from_env().log_level

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Any
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    web100_logger = logging.getLogger("web100")
    web100_logger.handlers.clear()
    web100_logger.addHandler(handler)
    web100_logger.setLevel(getattr(logging, level.upper(), logging.WARNING))


def get_logger(name: str) -> Any:
    """structlog logger on top of the stdlib logger ``name``.

    Until :func:`setup_logging` is called the stdlib defaults apply, so debug
    events stay silent.
    """
    return structlog.wrap_logger(logging.getLogger(name), wrapper_class=structlog.stdlib.BoundLogger)
