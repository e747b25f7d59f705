# -*- coding: utf-8 -*-
"""
Logging configuration for the engine process.

Evaluations run under a per-usage lock, so a log call must never wait on a
slow stdout: records go through a QueueHandler and a single listener thread
does the stream I/O.

Routing:
- DEBUG..WARNING -> STDOUT (decisions, vetoes, sweep iterations)
- ERROR, CRITICAL -> STDERR (rollbacks, ledger and worker failures)

Lifecycle records written with log_event() carry their ids as `extra`
attributes; StructuredFormatter appends them so that a single line tells
which usage, link or program a decision was about. asyncpg and redis are
held at WARNING or above.
"""

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

# Driver loggers that flood INFO with connection chatter
QUIET_LOGGERS = ("asyncpg", "redis")

# Attributes set by log_event(); appended in this order when present
STRUCTURED_FIELDS = (
    "correlation_id",
    "usage_id",
    "link_id",
    "program_id",
    "user_id",
    "duration_ms",
)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class MaxLevelFilter(logging.Filter):
    """Passes records up to max_level (inclusive)."""

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


class StructuredFormatter(logging.Formatter):
    """Standard line format plus the ids attached by log_event()."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if fields:
            line = f"{line} [{' '.join(fields)}]"
        return line


_log_listener: Optional[QueueListener] = None


def setup_logging(level: int = logging.INFO) -> None:
    """
    Install the queue handler on the root logger and start the listener.

    Calling it again while the listener runs is a no-op.
    """
    global _log_listener

    if _log_listener is not None:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = StructuredFormatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    root_logger.addHandler(QueueHandler(queue.Queue()))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _log_listener = QueueListener(
        root_logger.handlers[0].queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(stop_logging)


def stop_logging() -> None:
    """Flush queued records and stop the listener thread."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
