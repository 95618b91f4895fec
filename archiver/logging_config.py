"""File logging for resync and publish runs."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from archiver import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV_VAR = "ARCHIVER_LOG_LEVEL"
MAX_LOG_BYTES = 1_000_000
LOG_BACKUPS = 3

_active_path: Optional[Path] = None


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV_VAR) or logging.INFO
    if isinstance(level, str):
        named = logging.getLevelName(level.strip().upper())
        return named if isinstance(named, int) else logging.INFO
    return int(level)


def _has_handler_for(root: logging.Logger, log_path: Path) -> bool:
    target = str(log_path.resolve())
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == target
        for handler in root.handlers
    )


def configure_logging(level: Union[int, str, None] = None, *, path: Optional[Path] = None) -> Path:
    """Attach a rotating UTF-8 file handler to the root logger.

    ``level`` may be a number or a level name; when omitted the
    ``ARCHIVER_LOG_LEVEL`` environment variable is consulted, then ``INFO``.
    Calling this again without ``path`` returns the file already in use, and a
    handler is never added twice for the same file.
    """

    global _active_path

    if path is None and _active_path is not None:
        return _active_path

    log_path = Path(path) if path is not None else app_paths.logs_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    resolved = _resolve_level(level)
    root.setLevel(min(root.level, resolved) if root.handlers else resolved)

    if not _has_handler_for(root, log_path):
        handler = RotatingFileHandler(
            log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    _active_path = log_path
    logging.getLogger(__name__).debug("Logging to %s", log_path)
    return log_path


def get_log_path() -> Path:
    return _active_path if _active_path is not None else configure_logging()


__all__ = ["LOG_FORMAT", "configure_logging", "get_log_path"]
