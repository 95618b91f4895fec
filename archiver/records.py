"""Record types and sheet layouts shared by the archiver sync pipeline.

The spreadsheet stores three kinds of rows.  Each kind has a fixed positional
layout; reordering the columns at the source breaks the mapping unless the
column-count guards catch it.

``HiddenOrders``
    ``[orderId, orderDate, hiddenBy, tags, hiddenType, hiddenAt, lastModified?]``

``ActionLog``
    ``[action, orderId, performedBy, timestamp, tags, browserInfo]``

``UserSettings``
    ``[username, lastModified?]``

Records are frozen dataclasses.  Every validation or transformation call
builds fresh instances; nothing downstream mutates them.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

HIDDEN_TYPE_DETAILS = "details"
ALLOWED_HIDDEN_TYPES: Tuple[str, ...] = (HIDDEN_TYPE_DETAILS,)
ALLOWED_ACTIONS: Tuple[str, ...] = ("hide", "unhide")
DEFAULT_ACTION = "hide"


class ArchiverError(Exception):
    """Base exception for the archiver sync pipeline."""


class UnknownSheetKindError(ArchiverError, ValueError):
    """Raised when code refers to a sheet kind that does not exist."""


class SheetKind(str, Enum):
    HIDDEN_ORDERS = "hidden_orders"
    ACTION_LOG = "action_log"
    USER_SETTINGS = "user_settings"

    @classmethod
    def parse(cls, value: Union["SheetKind", str]) -> "SheetKind":
        """Return the kind for an enum member, its value or its camelCase name."""

        if isinstance(value, SheetKind):
            return value
        if isinstance(value, str):
            candidate = value.strip()
            for kind in cls:
                if candidate in (kind.value, kind.camel_name, kind.name):
                    return kind
        raise UnknownSheetKindError(f"Unknown sheet kind: {value!r}")

    @property
    def camel_name(self) -> str:
        head, *tail = self.value.split("_")
        return head + "".join(part.title() for part in tail)

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").capitalize()


SHEET_HEADERS: Mapping[SheetKind, Tuple[str, ...]] = {
    SheetKind.HIDDEN_ORDERS: (
        "Order ID",
        "Order Date",
        "Hidden By",
        "Tags",
        "Hidden Type",
        "Hidden At",
        "Last Modified",
    ),
    SheetKind.ACTION_LOG: (
        "Action",
        "Order ID",
        "Performed By",
        "Timestamp",
        "Tags",
        "Browser Info",
    ),
    SheetKind.USER_SETTINGS: ("Username", "Last Modified"),
}

DEFAULT_SHEET_TITLES: Mapping[SheetKind, str] = {
    SheetKind.HIDDEN_ORDERS: "HiddenOrders",
    SheetKind.ACTION_LOG: "ActionLog",
    SheetKind.USER_SETTINGS: "UserSettings",
}


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso_instant(value: datetime) -> str:
    """Format ``value`` as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    # Years below 1000 keep four digits.
    return f"{value.year:04d}-{value:%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


# ---------------------------------------------------------------------------
# Tag helpers
# ---------------------------------------------------------------------------
def split_tags(value: Any) -> Tuple[str, ...]:
    """Split a comma separated tag string, dropping blank tokens."""

    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        tokens: Iterable[Any] = value
    else:
        tokens = str(value).split(",")
    return tuple(text for text in (str(token).strip() for token in tokens) if text)


def join_tags(tags: Sequence[str]) -> str:
    return ", ".join(tags)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Positional row decoding
# ---------------------------------------------------------------------------
def is_row(value: Any) -> bool:
    """Return ``True`` for list-like rows (strings are not rows)."""

    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _pad(row: Sequence[Any], width: int) -> Tuple[Any, ...]:
    values = tuple(row[:width])
    return values + (None,) * (width - len(values))


class HiddenOrderRow(NamedTuple):
    order_id: Any
    order_date: Any
    hidden_by: Any
    tags: Any
    hidden_type: Any
    hidden_at: Any
    last_modified: Any = None

    @classmethod
    def decode(cls, row: Sequence[Any]) -> "HiddenOrderRow":
        return cls(*_pad(row, len(cls._fields)))


class ActionLogRow(NamedTuple):
    action: Any
    order_id: Any
    performed_by: Any
    timestamp: Any
    tags: Any
    browser_info: Any

    @classmethod
    def decode(cls, row: Sequence[Any]) -> "ActionLogRow":
        return cls(*_pad(row, len(cls._fields)))


class UserSettingsRow(NamedTuple):
    username: Any
    last_modified: Any = None

    @classmethod
    def decode(cls, row: Sequence[Any]) -> "UserSettingsRow":
        return cls(*_pad(row, len(cls._fields)))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HiddenOrderRecord:
    """An order hidden from the order history page."""

    order_id: str
    order_date: Optional[str]
    hidden_by: str
    tags: Tuple[str, ...]
    hidden_type: str
    hidden_at: str
    last_modified: Optional[str] = None

    @property
    def username(self) -> str:
        return self.hidden_by

    @property
    def timestamp(self) -> str:
        return self.hidden_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_date": self.order_date,
            "hidden_by": self.hidden_by,
            "tags": list(self.tags),
            "hidden_type": self.hidden_type,
            "hidden_at": self.hidden_at,
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HiddenOrderRecord":
        return cls(
            order_id=str(data["order_id"]),
            order_date=_optional_str(data.get("order_date")),
            hidden_by=str(data.get("hidden_by") or ""),
            tags=split_tags(data.get("tags")),
            hidden_type=str(data.get("hidden_type") or HIDDEN_TYPE_DETAILS),
            hidden_at=str(data.get("hidden_at") or ""),
            last_modified=_optional_str(data.get("last_modified")),
        )


@dataclass(frozen=True, slots=True)
class ActionLogRecord:
    """A single hide/unhide entry of the audit trail."""

    action: str
    order_id: str
    performed_by: str
    timestamp: str
    tags: Tuple[str, ...] = ()
    browser_info: str = ""

    @property
    def action_type(self) -> str:
        return self.action

    @property
    def username(self) -> str:
        return self.performed_by

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "order_id": self.order_id,
            "performed_by": self.performed_by,
            "timestamp": self.timestamp,
            "tags": list(self.tags),
            "browser_info": self.browser_info,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActionLogRecord":
        return cls(
            action=str(data.get("action") or DEFAULT_ACTION),
            order_id=str(data["order_id"]),
            performed_by=str(data.get("performed_by") or ""),
            timestamp=str(data.get("timestamp") or ""),
            tags=split_tags(data.get("tags")),
            browser_info=str(data.get("browser_info") or ""),
        )


@dataclass(frozen=True, slots=True)
class UserSettingsRecord:
    """Per-user settings row, keyed by username."""

    username: str
    last_modified: str

    @property
    def timestamp(self) -> str:
        return self.last_modified

    def to_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "last_modified": self.last_modified}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserSettingsRecord":
        return cls(
            username=str(data["username"]),
            last_modified=str(data.get("last_modified") or ""),
        )


Record = Union[HiddenOrderRecord, ActionLogRecord, UserSettingsRecord]

RECORD_TYPES: Mapping[SheetKind, type] = {
    SheetKind.HIDDEN_ORDERS: HiddenOrderRecord,
    SheetKind.ACTION_LOG: ActionLogRecord,
    SheetKind.USER_SETTINGS: UserSettingsRecord,
}


__all__ = [
    "ALLOWED_ACTIONS",
    "ALLOWED_HIDDEN_TYPES",
    "ActionLogRecord",
    "ActionLogRow",
    "ArchiverError",
    "DEFAULT_ACTION",
    "DEFAULT_SHEET_TITLES",
    "HIDDEN_TYPE_DETAILS",
    "HiddenOrderRecord",
    "HiddenOrderRow",
    "RECORD_TYPES",
    "Record",
    "SHEET_HEADERS",
    "SheetKind",
    "UnknownSheetKindError",
    "UserSettingsRecord",
    "UserSettingsRow",
    "is_row",
    "join_tags",
    "split_tags",
    "to_iso_instant",
    "utc_now",
]
