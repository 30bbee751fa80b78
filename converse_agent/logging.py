"""Structured logging for converse-agent.

Every module logs key/value events through ``get_logger(__name__)``. While a
turn runs, :func:`conversation_context` binds the session id so lines from the
transport, dispatcher and registry can be tied back to their conversation.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import structlog

from converse_agent.config import get_config

_log_sink: Callable[[str], None] | None = None


class _LineWriter:
    """Buffer rendered output and hand complete lines to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._sink(self._pending)
            self._pending = ""


def set_log_sink(sink: Callable[[str], None] | None) -> None:
    """Send rendered log lines to ``sink`` instead of stderr.

    Embedders showing a conversation in their own UI use this to keep log
    output out of the streamed answer. Takes effect on the next
    :func:`configure_logging` call.
    """
    global _log_sink
    _log_sink = sink


def configure_logging(level: str | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Overrides ``logging.level`` (the CLI passes DEBUG for ``-v``)
    """
    config = get_config()
    level_name = (level or config.logging.level).upper()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if config.logging.format == "console":
        # A callback sink is not a terminal.
        processors.append(structlog.dev.ConsoleRenderer(colors=_log_sink is None))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_LineWriter(_log_sink) if _log_sink else sys.stderr
        ),
        cache_logger_on_first_use=True,
    )


@contextmanager
def conversation_context(session_id: str, **fields: Any) -> Iterator[None]:
    """Bind ``session_id`` (and extra fields) to every log line in this task."""
    with structlog.contextvars.bound_contextvars(session_id=session_id, **fields):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
