"""File-only JSON logging for the exporter.

The exporter runs next to an interactive tool, so log records never reach
the console: each package logger writes JSON lines to
``<log_dir>/langfuse-exporter.log`` and does not propagate to the root logger.
"""

from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FILE = "langfuse-exporter.log"
PACKAGE_LOGGERS = ("oc_shared", "oc_pipeline", "oc_langfuse", "oc_logs", "main")

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "time": datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _find_handler(log_path: Path) -> Optional[logging.FileHandler]:
    target = log_path.resolve()
    for name in PACKAGE_LOGGERS:
        for handler in logging.getLogger(name).handlers:
            if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target:
                return handler
    return None


def configure_logging(log_dir: Path, *, verbose: bool = False) -> Path:
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILE
    level = logging.DEBUG if verbose else logging.INFO

    # One handler, shared by every package logger.
    handler = _find_handler(log_path)
    if handler is None:
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(JsonLineFormatter())

    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.propagate = False
        if handler not in logger.handlers:
            logger.addHandler(handler)
    return log_path
