"""Structured JSON logging for ahacache.

One JSON object per line in ``<log_dir>/ahacache.log``, rotated at 5MB with
three backups. The MCP stdio transport owns stdout, so no console handler is
ever installed.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "ahacache.log"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

# ``extra=`` attribute -> key in the JSON entry.
_EXTRA_FIELDS: dict[str, str] = {
    "job_id": "job_id",
    "entity_type": "entity_type",
    "tool": "tool",
    "args_data": "args",
    "duration_ms": "duration_ms",
    "error": "error",
    "db_path": "db_path",
    "vector_enabled": "vector_enabled",
}

_lock = threading.Lock()


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({key: getattr(record, attr) for attr, key in _EXTRA_FIELDS.items() if hasattr(record, attr)})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def setup_logging(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    """Route the ``ahacache`` logger tree to ``<log_dir>/ahacache.log``.

    Safe to call repeatedly and from several threads: the same directory
    keeps its handler, a different one replaces it.
    """
    logger = logging.getLogger("ahacache")
    log_dir.mkdir(parents=True, exist_ok=True)
    target = os.path.abspath(log_dir / LOG_FILENAME)

    with _lock:
        file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        for handler in file_handlers:
            if handler.baseFilename != target:
                logger.removeHandler(handler)
                handler.close()
        if not any(h.baseFilename == target for h in file_handlers):
            handler = RotatingFileHandler(target, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
            handler.setFormatter(JsonLineFormatter())
            logger.addHandler(handler)
        logger.setLevel(level)
    return logger
