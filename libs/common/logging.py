"""Structured logging configuration for platform services.

Logging across the gateway and workers goes through ``structlog``. Output is
either JSON (for machines) or a pretty console format (for humans), and every
line carries the service name. Job processing binds ``job_id``/``tenant_id``
through ``structlog.contextvars`` so concurrent workers stay distinguishable.

Typical usage
- Call ``configure_logging(service_name, log_level, log_format)`` at startup
- Acquire loggers via ``structlog.get_logger(name)`` or ``ServiceLogger``
- Wrap per-job work in ``job_log_context(job_id=..., tenant_id=...)``
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    **context: Any
) -> None:
    """Configure structured logging for a service.

    Parameters
    - service_name: Logical service identifier bound to each log line
    - log_level: ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR`` (case-insensitive)
    - log_format: ``json`` for production; ``console`` for local dev
    - context: Extra process-wide context (e.g. ``worker_id``)
    """

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_logger_name,
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name, **context)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def job_log_context(**context: Any) -> Iterator[None]:
    """Bind job-scoped fields to every log line emitted inside the block.

    Context variables are task-local under asyncio, so concurrent workers
    in one process do not see each other's job ids.
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield


class ServiceLogger:
    """Service-specific logger with common context."""

    def __init__(self, service_name: str, **context: Any):
        self.service_name = service_name
        self.logger = structlog.get_logger(service_name)
        self.context = context

    def bind(self, **kwargs: Any) -> "ServiceLogger":
        """Return a new ``ServiceLogger`` carrying the merged context."""
        return ServiceLogger(self.service_name, **{**self.context, **kwargs})

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, **{**self.context, **kwargs})

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, **{**self.context, **kwargs})

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(message, **{**self.context, **kwargs})

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, **{**self.context, **kwargs})

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self.logger.exception(message, **{**self.context, **kwargs})
