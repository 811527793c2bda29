"""Structured logging for Deckhand.

Everything goes through structlog. Log lines carry the active session id once
``bind_session`` has been called, and chatty third-party stdlib loggers are
held at WARNING unless debug logging is on.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from deckhand.config import get_config

_QUIET_LIBRARIES = ("httpx", "httpcore")

_log_file: TextIO | None = None


def _open_sink(path: str) -> TextIO:
    global _log_file
    if _log_file is not None:
        _log_file.close()
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    _log_file = open(target, "a", encoding="utf-8")
    return _log_file


def configure_logging() -> None:
    """Set up structlog from the ``logging`` config section."""
    config = get_config().logging
    level = getattr(logging, config.level.upper(), logging.INFO)

    sink: TextIO = _open_sink(config.file) if config.file else sys.stderr
    if config.format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=not config.file and sink.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sink),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(stream=sink, level=level, format="%(name)s %(levelname)s %(message)s", force=True)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)


def bind_session(session_id: str) -> None:
    """Attach *session_id* to every log line from this context on."""
    structlog.contextvars.bind_contextvars(session_id=session_id)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, usually with ``__name__``."""
    return structlog.get_logger(name) if name else structlog.get_logger()
