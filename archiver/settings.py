"""Sync configuration stored as JSON inside the application directory."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from archiver import app_paths
from archiver.cache_store import CACHE_NAMESPACE
from archiver.records import DEFAULT_SHEET_TITLES, SheetKind

logger = logging.getLogger(__name__)

SYNC_SETTINGS_FILENAME = "sync_settings.json"
MIN_RECOVERY_ATTEMPTS = 1
MAX_RECOVERY_ATTEMPTS = 10


class SettingsError(Exception):
    """Raised when the settings file exists but cannot be parsed."""


def default_settings_path() -> Path:
    return app_paths.data_path(SYNC_SETTINGS_FILENAME)


def parse_spreadsheet_id(value: Optional[str]) -> str:
    """Normalise a spreadsheet identifier from raw input or a sheet URL."""

    if not value:
        return ""
    value = value.strip()
    if "/spreadsheets/d/" in value:
        value = value.split("/spreadsheets/d/", 1)[1]
        value = value.split("/", 1)[0]
    for separator in ("?", "#"):
        value = value.split(separator, 1)[0]
    return value


@dataclass
class SyncSettings:
    spreadsheet_id: str = ""
    credential_path: str = ""
    hidden_orders_tab: str = DEFAULT_SHEET_TITLES[SheetKind.HIDDEN_ORDERS]
    action_log_tab: str = DEFAULT_SHEET_TITLES[SheetKind.ACTION_LOG]
    user_settings_tab: str = DEFAULT_SHEET_TITLES[SheetKind.USER_SETTINGS]
    cache_path: str = ""
    namespace: str = CACHE_NAMESPACE
    max_recovery_attempts: int = 3
    last_sync: Optional[str] = None

    def tab_for(self, kind: Union[SheetKind, str]) -> str:
        kind = SheetKind.parse(kind)
        return getattr(self, f"{kind.value}_tab")

    @property
    def tabs(self) -> Dict[SheetKind, str]:
        return {kind: self.tab_for(kind) for kind in SheetKind}

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


def _defaults() -> Dict[str, object]:
    return {
        "spreadsheet_id": "",
        "credential_path": str(app_paths.data_path("credentials", "service_account.json")),
        "hidden_orders_tab": DEFAULT_SHEET_TITLES[SheetKind.HIDDEN_ORDERS],
        "action_log_tab": DEFAULT_SHEET_TITLES[SheetKind.ACTION_LOG],
        "user_settings_tab": DEFAULT_SHEET_TITLES[SheetKind.USER_SETTINGS],
        "cache_path": str(app_paths.data_path("cache.db")),
        "namespace": CACHE_NAMESPACE,
        "max_recovery_attempts": 3,
        "last_sync": None,
    }


def _ensure_sync_settings(path: Path) -> Dict[str, object]:
    default_settings = _defaults()
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        logger.info("Created default sync settings at %s", path)
        return default_settings

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Sync settings file {path} is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"Sync settings file {path} must contain a JSON object")

    merged: Dict[str, object] = dict(default_settings)
    for key, value in data.items():
        if key not in default_settings:
            continue
        if key == "max_recovery_attempts":
            try:
                merged[key] = max(MIN_RECOVERY_ATTEMPTS, min(MAX_RECOVERY_ATTEMPTS, int(value)))
            except (TypeError, ValueError):
                merged[key] = default_settings[key]
        elif key == "last_sync":
            merged[key] = value if isinstance(value, str) and value else None
        elif isinstance(value, str) and (value.strip() or key == "spreadsheet_id"):
            merged[key] = value.strip()
    return merged


def _apply_environment(data: Dict[str, object]) -> None:
    overrides = {
        "spreadsheet_id": "ARCHIVER_SPREADSHEET_ID",
        "credential_path": "ARCHIVER_CREDENTIALS_PATH",
        "cache_path": "ARCHIVER_CACHE_PATH",
    }
    for key, env_var in overrides.items():
        value = os.environ.get(env_var)
        if value:
            data[key] = value


def load_sync_settings(path: Optional[Union[str, Path]] = None) -> SyncSettings:
    settings_path = Path(path) if path is not None else default_settings_path()
    data = _ensure_sync_settings(settings_path)
    _apply_environment(data)
    return SyncSettings(
        spreadsheet_id=parse_spreadsheet_id(str(data["spreadsheet_id"])),
        credential_path=str(data["credential_path"]),
        hidden_orders_tab=str(data["hidden_orders_tab"]),
        action_log_tab=str(data["action_log_tab"]),
        user_settings_tab=str(data["user_settings_tab"]),
        cache_path=str(data["cache_path"]),
        namespace=str(data["namespace"]),
        max_recovery_attempts=int(data["max_recovery_attempts"]),  # type: ignore[arg-type]
        last_sync=data["last_sync"],  # type: ignore[arg-type]
    )


def save_sync_settings(settings: SyncSettings, path: Optional[Union[str, Path]] = None) -> None:
    settings_path = Path(path) if path is not None else default_settings_path()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with settings_path.open("w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "SettingsError",
    "SyncSettings",
    "default_settings_path",
    "load_sync_settings",
    "parse_spreadsheet_id",
    "save_sync_settings",
]
