"""structlog setup for the worker process.

stdout can carry protocol traffic inside the sandbox, so rendered lines go to
stderr or, when the host installs one, to a line callback.
"""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any, Callable, TextIO

import structlog

from agent_runner.config import Config, LoggingConfig

LineSink = Callable[[str], None]

_host_sink: LineSink | None = None


class _LineStream:
    """Text stream that hands each completed line to a callback."""

    def __init__(self, sink: LineSink):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        *lines, self._pending = (self._pending + text).split("\n")
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            line, self._pending = self._pending, ""
            self._sink(line)


def set_system_log_sink(sink: LineSink | None) -> None:
    """Forward rendered lines to ``sink`` from the next ``configure_logging`` on."""
    global _host_sink
    _host_sink = sink


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(str(name or "").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(config: Config | LoggingConfig) -> None:
    """Configure structlog from the ``logging`` section.

    A host sink always receives JSON lines; otherwise ``format`` chooses
    between the console and JSON renderers.
    """
    section = config.logging if isinstance(config, Config) else config
    stream: TextIO | _LineStream = _LineStream(_host_sink) if _host_sink else sys.stderr
    if _host_sink is not None or section.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_resolve_level(section.level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def log_context(**fields: Any) -> AbstractContextManager[Any]:
    """Bind ``fields`` to every event logged inside the ``with`` block."""
    return structlog.contextvars.bound_contextvars(**fields)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
