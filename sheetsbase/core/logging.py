"""Structured logging for SheetsBase.

Every module logs through ``get_logger(__name__)`` with key/value context
(``table``, ``operation``, ``field``...). Output is one JSON object per line
(``LOG_FORMAT=json``) or a padded console line for local runs.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional

import orjson
import structlog

from sheetsbase.core.config import Settings

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "googleapiclient.discovery_cache", "google.auth.transport")


def _orjson_dumps(event: Any, **kwargs) -> str:
    return orjson.dumps(event, default=str).decode()


def configure_logging(settings: Settings) -> None:
    """Configure stdlib handlers and the structlog processor chain."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer(serializer=_orjson_dumps))
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_store_call(logger: structlog.BoundLogger, table: str, operation: str,
                   start_time: float, end_time: float, **kwargs) -> None:
    """Log one completed spreadsheet call with its duration."""
    logger.info(
        "Store call completed",
        table=table,
        operation=operation,
        duration_ms=round((end_time - start_time) * 1000, 1),
        **kwargs
    )


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    """Log a cache operation at debug level.

    The table is taken from the key prefix (``"<table>:..."``).
    """
    log_data = {
        "operation": operation,
        "table": key.split(":", 1)[0],
        "cache_key": key,
        **kwargs
    }
    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)
