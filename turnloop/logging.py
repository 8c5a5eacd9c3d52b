"""structlog setup shared by the CLI and embedding front ends."""

import logging
import sys
from typing import Callable, TextIO

import structlog

from turnloop.config import Config, LoggingConfig

LineSink = Callable[[str], None]

_line_sink: LineSink | None = None


class _LineWriter:
    """Text stream that hands each complete line to ``sink``."""

    def __init__(self, sink: LineSink):
        self.sink = sink
        self.pending = ""

    def write(self, text: str) -> int:
        *lines, self.pending = (self.pending + text).split("\n")
        for line in lines:
            if line:
                self.sink(line)
        return len(text)

    def flush(self) -> None:
        if self.pending:
            line, self.pending = self.pending, ""
            self.sink(line)


def set_log_sink(sink: LineSink | None) -> None:
    """Send log lines to ``sink`` on the next ``configure_logging`` call; ``None`` restores stderr."""
    global _line_sink
    _line_sink = sink


def _renderer(settings: LoggingConfig):
    if settings.format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _output() -> TextIO | _LineWriter:
    return _LineWriter(_line_sink) if _line_sink is not None else sys.stderr


def configure_logging(config: Config | None = None) -> None:
    settings = (config or Config()).logging
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_output()),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a logger; ``name`` is attached to every record as ``logger``."""
    if name:
        return structlog.get_logger().bind(logger=name)
    return structlog.get_logger()
