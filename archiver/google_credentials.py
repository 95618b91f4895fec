"""Service account key files for the archive spreadsheet.

Key files are frequently pasted through environment variables or chat tools,
which turns the PEM newlines into literal ``\\n`` sequences or CRLF pairs.
:func:`ensure_service_account_file` repairs that in place so google-auth can
load the key, and reports anything else as :class:`CredentialsFileInvalidError`.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Tuple

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_TYPE = "service_account"
REQUIRED_FIELDS: Tuple[str, ...] = ("type", "project_id", "private_key_id", "private_key", "client_email", "token_uri")


class CredentialsFileInvalidError(Exception):
    """The key file is unreadable, is not a JSON object or lacks required fields."""


def _fix_pem_newlines(pem: str) -> str:
    fixed = pem.replace("\\n", "\n").replace("\r\n", "\n").replace("\r", "\n")
    if not fixed.endswith("\n"):
        fixed += "\n"
    return fixed


def _read_json_object(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8-sig").strip()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read credentials file {path}: {exc}") from exc
    if not text:
        raise CredentialsFileInvalidError(f"Credentials file {path} is empty")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"Credentials file is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise CredentialsFileInvalidError("Credentials file must contain a JSON object")
    return data


def _checked_info(raw: Dict[str, Any]) -> Dict[str, Any]:
    absent = {name for name in REQUIRED_FIELDS if not str(raw.get(name) or "").strip()}
    if raw.get("type") != SERVICE_ACCOUNT_TYPE:
        absent.add("type")
    if absent:
        raise CredentialsFileInvalidError(f"Credentials JSON missing fields: {', '.join(sorted(absent))}")
    info = dict(raw)
    info["private_key"] = _fix_pem_newlines(str(raw["private_key"]))
    return info


def load_service_account_data(path: Path) -> Dict[str, Any]:
    """Return the checked key file contents; ``path`` itself is left alone."""

    return _checked_info(_read_json_object(Path(path)))


def ensure_service_account_file(path: Path) -> Dict[str, Any]:
    """Like :func:`load_service_account_data`, rewriting ``path`` if the key was repaired."""

    path = Path(path)
    raw = _read_json_object(path)
    info = _checked_info(raw)
    if info["private_key"] != raw.get("private_key"):
        path.write_text(json.dumps(info, indent=2), encoding="utf-8")
        logger.info("Repaired private key newlines in %s", path)
    return info


__all__ = [
    "CredentialsFileInvalidError",
    "REQUIRED_FIELDS",
    "ensure_service_account_file",
    "load_service_account_data",
]
