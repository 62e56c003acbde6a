"""Logging setup for Autopilot: one JSON object per line.

Components log through ``logging.getLogger("autopilot.<module>")`` and tag
records with the goal, sub-goal, cycle, tier or tool they concern via
``extra=``.  Those tags become top-level keys in the JSON line so a single
goal's history can be filtered out of a shared log file.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "autopilot"

CONTEXT_KEYS = ("goal", "sub_goal", "cycle", "tier", "tool")

LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# httpx logs every reasoning and webhook request at INFO.
HTTP_LOGGERS = ("httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """Render a record, plus any goal/sub-goal/cycle context, as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        entry.update(
            (key, getattr(record, key))
            for key in CONTEXT_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _file_handler(log_file: str | Path, level: int) -> RotatingFileHandler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(
    *,
    level: int = logging.INFO,
    json_output: bool = True,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """Configure the ``autopilot`` logger and return it.

    The console handler writes to stdout, as JSON unless *json_output* is
    false.  *log_file* adds a rotating file that is always JSON.
    Calling this again replaces the previous handlers.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        JSONFormatter() if json_output else logging.Formatter(PLAIN_FORMAT)
    )
    logger.addHandler(console)

    if log_file is not None:
        logger.addHandler(_file_handler(log_file, level))

    http_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(http_level)

    return logger
