"""Logging setup: readable lines on stderr, optional JSON-lines file."""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

LOGGER_NAME: Final[str] = "archivist"
_TEXT_FORMAT: Final[str] = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_LOG_RECORD_FIELDS and not key.startswith("_")
    }


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` fields land under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = _extract_extra_fields(record)
        if extras:
            event["fields"] = extras
        if record.exc_info is not None:
            event["exception"] = self.formatException(record.exc_info)
        return json.dumps(event, sort_keys=True, default=str, ensure_ascii=False)


def setup_logging(
    level: int | str = "INFO",
    log_file: Path | str | None = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    resolved_level = level.upper() if isinstance(level, str) else level
    try:
        logger.setLevel(resolved_level)
    except (TypeError, ValueError):
        logger.setLevel(logging.INFO)
        logger.warning("Unknown log level %r; using INFO", level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    logger.addHandler(stream_handler)

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(JsonLinesFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
