"""Where the archiver keeps its settings, cache, outbox and logs.

``ARCHIVER_HOME`` wins when set.  Otherwise the per-user application data
directory of the platform is used (``%LOCALAPPDATA%`` / ``%APPDATA%`` on
Windows) and ``~/.order_archiver`` everywhere else.  The location is resolved
on every call so tests can point it at a temporary directory.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

HOME_ENV_VAR = "ARCHIVER_HOME"
APP_FOLDER = "OrderArchiver"
_WINDOWS_DATA_VARS: Sequence[str] = ("LOCALAPPDATA", "APPDATA")


def app_dir() -> Path:
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    base = next((os.environ[name] for name in _WINDOWS_DATA_VARS if os.environ.get(name)), None)
    if base:
        return Path(base).expanduser().resolve() / APP_FOLDER
    return Path.home().resolve() / ".order_archiver"


def data_path(*parts: str) -> Path:
    """Return ``<app dir>/<parts...>`` after making sure its folder exists."""

    target = app_dir().joinpath(*parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def logs_path(filename: str = "archiver.log") -> Path:
    return data_path("logs", filename)


__all__ = ["HOME_ENV_VAR", "app_dir", "data_path", "logs_path"]
