"""Root logger setup driven by ``LoggingSettings``.

Modules keep logging through ``logging.getLogger(__name__)``; the handlers
installed here render every record through a structlog processor chain,
as JSON lines or as plain console text.
"""
from __future__ import annotations

import logging

import structlog

from .config import LoggingSettings, settings

# Applied to records coming from the standard library loggers
_PRE_CHAIN = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def build_formatter(fmt: str) -> structlog.stdlib.ProcessorFormatter:
    if fmt == "json":
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ]
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=_PRE_CHAIN, processors=processors)


def setup_logging(config: LoggingSettings | None = None) -> None:
    """Install handlers on the root logger. Safe to call more than once."""
    config = config or settings.logging
    formatter = build_formatter(config.format)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._am_ingest = True

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_am_ingest", False):
            root.removeHandler(existing)
            existing.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(config.level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
