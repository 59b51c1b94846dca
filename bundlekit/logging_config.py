"""
Structured logging configuration using structlog.

Produces JSON logs in production, human-readable colored logs in development.
Optionally appends every record as one JSON line to a per-day log file.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TextIO

import structlog

from .config import Settings, settings as default_settings


class DailyJsonFileHandler(logging.Handler):
    """
    Append-only handler writing to ``<log_dir>/YYYY-MM-DD.log``.

    The file is chosen per record from the record's UTC date, so output
    rotates at midnight without any rollover bookkeeping. Write failures go
    to the fallback stream only.
    """

    terminator = "\n"

    def __init__(
        self,
        log_dir: Path,
        level: int = logging.NOTSET,
        fallback: Optional[TextIO] = None,
    ):
        super().__init__(level)
        self.log_dir = Path(log_dir)
        self.fallback = fallback

    def path_for(self, record: logging.LogRecord) -> Path:
        day = datetime.fromtimestamp(record.created, tz=timezone.utc).date().isoformat()
        return self.log_dir / f"{day}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            path = self.path_for(record)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line + self.terminator)
        except Exception as exc:
            stream = self.fallback or sys.stderr
            stream.write(f"Failed to write to log file: {exc}\n")


def setup_logging(
    log_level: Optional[str] = None,
    config: Optional[Settings] = None,
) -> None:
    """Configure structlog for structured JSON logging.

    Args:
        log_level: Override log level (default: from settings.log_level)
        config: Settings to read log level and file sink options from
    """
    config = config or default_settings
    level = getattr(logging, (log_level or config.log_level).upper(), logging.INFO)
    is_dev = level == logging.DEBUG

    # Shared processors for both structlog and stdlib
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if is_dev:
        # Development: colored console output
        renderer = structlog.dev.ConsoleRenderer()
    else:
        # Production: JSON lines
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer(default=str)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging through structlog's formatter
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    if config.enable_logging:
        # Files always get JSON, whatever the console renderer is
        file_formatter = structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*shared_processors, structlog.processors.format_exc_info]
            if is_dev
            else shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(default=str),
            ],
        )
        file_handler = DailyJsonFileHandler(config.log_dir)
        file_handler.setFormatter(file_formatter)
        root.addHandler(file_handler)

    # Quiet noisy third-party loggers
    for name in ("httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)
