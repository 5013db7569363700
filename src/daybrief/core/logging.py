"""Log rendering for daybrief.

Modules log through ``logging.getLogger(__name__)``; this module only decides
how those records look. A structlog ``ProcessorFormatter`` renders them as
colored console lines (``text``) or JSON lines (``json``), and every record
gets the user being processed plus the active trace and span ids.

With ``[daybrief.logging] log_root`` set, JSON copies are also written to
``<log_root>/daybrief.log``, and the chatter of the HTTP and database drivers
goes to ``<log_root>/http.log``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from daybrief.config import LoggingConfig

APP_LOG_FILE = "daybrief.log"
TRANSPORT_LOG_FILE = "http.log"

# Driver loggers kept at WARNING on the console.
TRANSPORT_LOGGERS = ("httpx", "httpcore", "asyncpg")

# Each scheduler action runs in its own task, so this never leaks between users.
_current_user: ContextVar[str | None] = ContextVar("daybrief_user_id", default=None)


def set_user_context(user_id: str | None) -> None:
    _current_user.set(user_id)


def get_user_context() -> str | None:
    return _current_user.get()


def add_daybrief_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``user_id`` and, inside a recording span, ``trace_id``/``span_id``."""
    user_id = _current_user.get()
    if user_id is not None:
        event_dict.setdefault("user_id", user_id)
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=timestamp_fmt == "iso"),
        add_daybrief_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(handler: logging.Handler, renderer: structlog.types.Processor, timestamp_fmt: str):
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_pre_chain(timestamp_fmt),
        )
    )
    return handler


def _json_file(path: Path) -> logging.Handler:
    return _handler(
        logging.FileHandler(path, encoding="utf-8"), structlog.processors.JSONRenderer(), "iso"
    )


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Install daybrief's handlers on the root logger, replacing any previous ones."""
    config = config or LoggingConfig()
    if config.format == "json":
        console = _handler(logging.StreamHandler(sys.stderr), structlog.processors.JSONRenderer(), "iso")
    else:
        console = _handler(logging.StreamHandler(sys.stderr), structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    root = logging.getLogger()
    for old in root.handlers:
        old.close()
    root.handlers = [console]
    root.setLevel(logging.getLevelNamesMapping().get(config.level.upper(), logging.INFO))

    transport_handlers: list[logging.Handler] = []
    if config.log_root:
        log_root = Path(config.log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file(log_root / APP_LOG_FILE))
        transport_handlers.append(_json_file(log_root / TRANSPORT_LOG_FILE))

    for name in TRANSPORT_LOGGERS:
        transport = logging.getLogger(name)
        transport.setLevel(logging.WARNING)
        transport.handlers = list(transport_handlers)
