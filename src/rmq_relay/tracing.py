"""Correlation tracing and structured logging setup.

Provides correlation-id propagation for log records emitted while a message
is being processed, and Loguru configuration for text or JSON output.
"""

import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from loguru import logger

from rmq_relay.config import Settings


@contextmanager
def correlation_scope(correlation_id: str | None) -> Iterator[None]:
    """Bind a correlation id to Loguru records emitted in this context."""
    if not correlation_id:
        yield
        return

    with logger.contextualize(correlation_id=correlation_id):
        yield


def text_formatter(record: dict) -> str:
    """Human-readable formatter for console use.

    Includes correlation_id when available for easier debugging.
    """
    correlation_id = record["extra"].get("correlation_id", "")
    correlation_str = f"[{correlation_id[:8]}] " if correlation_id else ""

    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        f"<cyan>{correlation_str}</cyan>"
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>\n"
        "{exception}"
    )


def json_sink(message) -> None:
    """Custom sink that outputs JSON formatted logs."""
    record = message.record

    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "logger": record["name"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }

    for key, value in record["extra"].items():
        # Skip complex objects that can't be serialized
        try:
            json.dumps(value)
            log_entry[key] = value
        except (TypeError, ValueError):
            log_entry[key] = str(value)

    if record["exception"] is not None:
        log_entry["exception"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else None,
            "value": str(record["exception"].value) if record["exception"].value else None,
            "traceback": record["exception"].traceback is not None,
        }

    sys.stdout.write(json.dumps(log_entry) + "\n")
    sys.stdout.flush()


def setup_logging(settings: Settings) -> None:
    """Configure Loguru for the application.

    - JSON format for production (RELAY_LOG_FORMAT=json)
    - Human-readable format otherwise (RELAY_LOG_FORMAT=text)
    """
    logger.remove()

    if settings.log_format == "json":
        logger.add(
            json_sink,
            level=settings.log_level,
            backtrace=True,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stdout,
            format=text_formatter,
            level=settings.log_level,
            colorize=sys.stdout.isatty(),
            backtrace=True,
            diagnose=True,
        )

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            level=settings.log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
                "{name}:{function}:{line} - {message}"
            ),
            serialize=settings.log_format == "json",
            backtrace=True,
            diagnose=False,
        )

    logger.debug(
        "Logging configured",
        level=settings.log_level,
        format=settings.log_format,
        log_file=settings.log_file,
    )
