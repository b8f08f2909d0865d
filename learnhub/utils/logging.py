# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Structured logging configuration using structlog.

Modules log through the standard library (logging.getLogger(__name__));
setup_logging() installs a structlog ProcessorFormatter on the root
handler, so every record is rendered by structlog together with the
context bound by bind_context(), e.g. the job a worker is running.

Records render as JSON, or as colored console output in development.

Example:
    >>> setup_logging(get_settings())
    >>> bind_context(job_id="j1", job_type="send-email")
    >>> logging.getLogger(__name__).info("Sending %s", "welcome")
    {"event": "Sending welcome", "job_id": "j1", "job_type": "send-email", ...}
"""

import logging
import sys
from typing import IO, TYPE_CHECKING, Optional

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from learnhub.core.config.settings import Settings

# Libraries whose INFO output drowns out application logs
_QUIET_LOGGERS = ("sqlalchemy", "asyncio", "redis", "dramatiq")

_handler: Optional[logging.Handler] = None


def _renderer(settings: "Settings") -> Processor:
    if settings.is_development or settings.debug:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.JSONRenderer()


def setup_logging(settings: "Settings", stream: Optional[IO[str]] = None) -> None:
    """Route standard library and structlog output through one formatter.

    Calling it again replaces the handler installed by the previous call.

    Args:
        settings: Application settings (log_level, environment, debug).
        stream: Output stream, stdout by default.
    """
    global _handler

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _renderer(settings),
            ],
        )
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(log_level)
    _handler = handler

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("learnhub").setLevel(log_level)


def bind_context(**kwargs: object) -> None:
    """Bind key-value pairs to every log record of the current context.

    Args:
        **kwargs: Key-value pairs, e.g. job_id.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables.

    Called at the end of each job so context never leaks into the next one.
    """
    structlog.contextvars.clear_contextvars()
