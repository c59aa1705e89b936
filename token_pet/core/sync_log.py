"""
Append-only sync history log.

Scheduler decisions are written as ``[timestamp] LEVEL: message`` lines to
a log file in the tool's home directory, so background runs leave a trace
even though nobody watches their output.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "token_pet"
LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


class _IsoFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds")


def configure_sync_log(path: Path, level: int = logging.INFO) -> Optional[logging.Handler]:
    """Attach a file handler for ``path`` to the package logger, once.

    Returns the handler, or None if the log file cannot be opened. Logging
    problems never propagate to the caller.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    target = str(Path(path).resolve())

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return handler

    try:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(target, mode="a", encoding="utf-8")
    except OSError:
        return None

    handler.setFormatter(_IsoFormatter(LOG_FORMAT))
    handler.setLevel(level)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    return handler
