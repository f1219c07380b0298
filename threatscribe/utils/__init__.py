"""Structured logging configuration using structlog.

Log lines go to stderr so the CLI's rendered event stream on stdout stays
clean. Job-scoped code binds ``job_id`` through contextvars, so every line
logged inside a job task carries it without threading it through calls.
"""

from __future__ import annotations

import sys

import structlog

from threatscribe.config import settings

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "warn": 30, "error": 40, "critical": 50}


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog for threatscribe.

    Args:
        level: Overrides ``settings.log_level`` (e.g. from a ``--log-level`` flag).
        fmt:   ``"console"`` (coloured, dev) or ``"json"`` (production).
    """
    fmt = fmt or settings.log_format
    log_level = _LEVELS.get((level or settings.log_level).lower(), 20)

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_job_context(job_id: str, run_number: int) -> None:
    """Attach job identity to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(job_id=job_id, run=run_number)


def clear_job_context() -> None:
    structlog.contextvars.unbind_contextvars("job_id", "run")
