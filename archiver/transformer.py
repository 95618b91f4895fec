"""Bidirectional mapping between spreadsheet rows and cache records.

The strict direction drops any row that fails a shape, presence or lightweight
value check.  The recovery direction keeps as much as it can: it only needs the
identifying fields and fills everything else with safe defaults.  Neither
direction raises for bad data; every call returns the surviving items together
with the reasons rows were dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from archiver.records import (
    ALLOWED_ACTIONS,
    ALLOWED_HIDDEN_TYPES,
    DEFAULT_ACTION,
    HIDDEN_TYPE_DETAILS,
    ActionLogRecord,
    ActionLogRow,
    HiddenOrderRecord,
    HiddenOrderRow,
    SheetKind,
    UserSettingsRecord,
    UserSettingsRow,
    is_row,
    join_tags,
    split_tags,
    to_iso_instant,
    utc_now,
)

logger = logging.getLogger(__name__)

TRANSFORM_VERSION = "1.0"
SOURCE_SHEETS = "google-sheets"
SOURCE_CACHE = "local-cache"

MAX_ORDER_ID_LENGTH = 50
MAX_USERNAME_LENGTH = 100
MAX_TAGS_LENGTH = 500

# Minimum columns accepted by the strict and recovery readers.
STRICT_MIN_COLUMNS = {
    SheetKind.HIDDEN_ORDERS: 6,
    SheetKind.ACTION_LOG: 6,
    SheetKind.USER_SETTINGS: 1,
}
RECOVERY_MIN_COLUMNS = {
    SheetKind.HIDDEN_ORDERS: 2,
    SheetKind.ACTION_LOG: 3,
    SheetKind.USER_SETTINGS: 1,
}
# Positional slots that must be non-empty in an outgoing row.
REQUIRED_SLOTS = {
    SheetKind.HIDDEN_ORDERS: (0, 2, 5),
    SheetKind.ACTION_LOG: (0, 1, 2, 3),
    SheetKind.USER_SETTINGS: (0,),
}


@dataclass(slots=True)
class TransformResult:
    """Items that survived one transformation call plus the drop reasons."""

    data: List[Any] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass(frozen=True, slots=True)
class TransformMetadata:
    transformed_at: str
    source: str
    version: str = TRANSFORM_VERSION
    recovered: bool = False
    recovery_attempt: Optional[int] = None


@dataclass(slots=True)
class _Bundle:
    hidden_orders: List[Any]
    action_log: List[Any]
    user_settings: List[Any]
    metadata: TransformMetadata
    errors: List[str] = field(default_factory=list)

    def get(self, kind: Union[SheetKind, str]) -> List[Any]:
        return getattr(self, SheetKind.parse(kind).value)

    def as_dict(self) -> Dict[SheetKind, List[Any]]:
        return {kind: self.get(kind) for kind in SheetKind}


class RecordBundle(_Bundle):
    """Records for every kind, produced from spreadsheet rows."""


class RowBundle(_Bundle):
    """Rows for every kind, produced from cache records."""


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _is_blank(value: Any) -> bool:
    return value is None or _text(value) == ""


class SheetsTransformer:
    """Convert rows to records and back, with a bounded recovery mode."""

    def __init__(
        self,
        max_recovery_attempts: int = 3,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_recovery_attempts = max_recovery_attempts
        self.recovery_attempts = 0
        self._clock = clock

    def _now_iso(self) -> str:
        return to_iso_instant(self._clock())

    # ------------------------------------------------------------------
    # All kinds
    # ------------------------------------------------------------------
    def transform_from_external(self, sheets_data: Mapping[Any, Any]) -> RecordBundle:
        logger.debug("Starting transformation from spreadsheet rows")
        parts = _by_kind(sheets_data)
        hidden = self.transform_hidden_orders_from_external(parts[SheetKind.HIDDEN_ORDERS])
        actions = self.transform_action_log_from_external(parts[SheetKind.ACTION_LOG])
        users = self.transform_user_settings_from_external(parts[SheetKind.USER_SETTINGS])
        bundle = RecordBundle(
            hidden_orders=hidden.data,
            action_log=actions.data,
            user_settings=users.data,
            metadata=TransformMetadata(transformed_at=self._now_iso(), source=SOURCE_SHEETS),
            errors=hidden.errors + actions.errors + users.errors,
        )
        _log_outcome(bundle)
        return bundle

    def transform_to_external(self, local_data: Mapping[Any, Any]) -> RowBundle:
        logger.debug("Starting transformation to spreadsheet rows")
        parts = _by_kind(local_data)
        hidden = self.transform_hidden_orders_to_external(parts[SheetKind.HIDDEN_ORDERS])
        actions = self.transform_action_log_to_external(parts[SheetKind.ACTION_LOG])
        users = self.transform_user_settings_to_external(parts[SheetKind.USER_SETTINGS])
        bundle = RowBundle(
            hidden_orders=hidden.data,
            action_log=actions.data,
            user_settings=users.data,
            metadata=TransformMetadata(transformed_at=self._now_iso(), source=SOURCE_CACHE),
            errors=hidden.errors + actions.errors + users.errors,
        )
        _log_outcome(bundle)
        return bundle

    # ------------------------------------------------------------------
    # Strict: rows -> records
    # ------------------------------------------------------------------
    def transform_hidden_orders_from_external(self, rows: Any) -> TransformResult:
        result = TransformResult()
        if not isinstance(rows, (list, tuple)):
            result.errors.append("Hidden orders data is not a list")
            return result

        minimum = STRICT_MIN_COLUMNS[SheetKind.HIDDEN_ORDERS]
        for index, row in enumerate(rows):
            if not is_row(row) or len(row) < minimum:
                result.errors.append(f"Row {index + 1}: Insufficient columns for hidden order")
                continue
            decoded = HiddenOrderRow.decode(row)
            if any(_is_blank(value) for value in (decoded.order_id, decoded.hidden_by, decoded.hidden_at)):
                result.errors.append(
                    f"Row {index + 1}: Missing required fields (orderId, hiddenBy, or hiddenAt)"
                )
                continue

            order_id = _text(decoded.order_id)
            hidden_by = _text(decoded.hidden_by)
            raw_tags = _text(decoded.tags)
            hidden_type = _text(decoded.hidden_type).lower() or HIDDEN_TYPE_DETAILS
            hidden_at = _text(decoded.hidden_at)

            problem = None
            if len(order_id) > MAX_ORDER_ID_LENGTH:
                problem = "Invalid order ID (empty or too long)"
            elif len(hidden_by) > MAX_USERNAME_LENGTH:
                problem = f"Username too long (max {MAX_USERNAME_LENGTH} characters)"
            elif len(raw_tags) > MAX_TAGS_LENGTH:
                problem = f"Tags too long (max {MAX_TAGS_LENGTH} characters)"
            elif hidden_type not in ALLOWED_HIDDEN_TYPES:
                problem = f"Invalid hidden type: {hidden_type}"
            if problem:
                result.errors.append(f"Row {index + 1}: {problem}")
                continue

            result.data.append(
                HiddenOrderRecord(
                    order_id=order_id,
                    order_date=_text(decoded.order_date) or None,
                    hidden_by=hidden_by,
                    tags=split_tags(raw_tags),
                    hidden_type=hidden_type,
                    hidden_at=hidden_at,
                    last_modified=_text(decoded.last_modified) or hidden_at,
                )
            )
        return result

    def transform_action_log_from_external(self, rows: Any) -> TransformResult:
        result = TransformResult()
        if not isinstance(rows, (list, tuple)):
            result.errors.append("Action log data is not a list")
            return result

        minimum = STRICT_MIN_COLUMNS[SheetKind.ACTION_LOG]
        for index, row in enumerate(rows):
            if not is_row(row) or len(row) < minimum:
                result.errors.append(f"Row {index + 1}: Insufficient columns for action log")
                continue
            decoded = ActionLogRow.decode(row)
            required = (decoded.action, decoded.order_id, decoded.performed_by, decoded.timestamp)
            if any(_is_blank(value) for value in required):
                result.errors.append(
                    f"Row {index + 1}: Missing required fields "
                    "(action, orderId, performedBy, or timestamp)"
                )
                continue

            action = _text(decoded.action).lower()
            order_id = _text(decoded.order_id)
            performed_by = _text(decoded.performed_by)
            raw_tags = _text(decoded.tags)

            problem = None
            if action not in ALLOWED_ACTIONS:
                problem = f"Invalid action: {action}"
            elif len(order_id) > MAX_ORDER_ID_LENGTH:
                problem = "Invalid order ID (empty or too long)"
            elif len(performed_by) > MAX_USERNAME_LENGTH:
                problem = f"Username too long (max {MAX_USERNAME_LENGTH} characters)"
            elif len(raw_tags) > MAX_TAGS_LENGTH:
                problem = f"Tags too long (max {MAX_TAGS_LENGTH} characters)"
            if problem:
                result.errors.append(f"Row {index + 1}: {problem}")
                continue

            result.data.append(
                ActionLogRecord(
                    action=action,
                    order_id=order_id,
                    performed_by=performed_by,
                    timestamp=_text(decoded.timestamp),
                    tags=split_tags(raw_tags),
                    browser_info=_text(decoded.browser_info),
                )
            )
        return result

    def transform_user_settings_from_external(self, rows: Any) -> TransformResult:
        result = TransformResult()
        if not isinstance(rows, (list, tuple)):
            result.errors.append("User settings data is not a list")
            return result

        minimum = STRICT_MIN_COLUMNS[SheetKind.USER_SETTINGS]
        for index, row in enumerate(rows):
            if not is_row(row) or len(row) < minimum:
                result.errors.append(f"Row {index + 1}: Insufficient columns for user settings")
                continue
            decoded = UserSettingsRow.decode(row)
            if _is_blank(decoded.username):
                result.errors.append(f"Row {index + 1}: Missing required field (username)")
                continue
            username = _text(decoded.username)
            if len(username) > MAX_USERNAME_LENGTH:
                result.errors.append(f"Row {index + 1}: Invalid username (empty or too long)")
                continue
            result.data.append(
                UserSettingsRecord(
                    username=username,
                    last_modified=_text(decoded.last_modified) or self._now_iso(),
                )
            )
        return result

    # ------------------------------------------------------------------
    # Recovery: rows -> records, lenient
    # ------------------------------------------------------------------
    def transform_hidden_orders_from_external_recovery(self, rows: Any) -> TransformResult:
        result = TransformResult()
        minimum = RECOVERY_MIN_COLUMNS[SheetKind.HIDDEN_ORDERS]
        for index, row in enumerate(rows if isinstance(rows, (list, tuple)) else ()):
            if not is_row(row) or len(row) < minimum:
                result.errors.append(f"Row {index + 1}: Skipped, not enough data to recover")
                continue
            if len(row) == 2:
                order_id, hidden_by = row
                decoded = HiddenOrderRow(order_id, None, hidden_by, None, None, None)
            else:
                decoded = HiddenOrderRow.decode(row)
            if _is_blank(decoded.order_id) or _is_blank(decoded.hidden_by):
                result.errors.append(f"Row {index + 1}: Skipped, missing orderId or hiddenBy")
                continue

            now = self._now_iso()
            result.data.append(
                HiddenOrderRecord(
                    order_id=_text(decoded.order_id),
                    order_date=_text(decoded.order_date) or None,
                    hidden_by=_text(decoded.hidden_by),
                    tags=split_tags(_text(decoded.tags)),
                    hidden_type=HIDDEN_TYPE_DETAILS,
                    hidden_at=_text(decoded.hidden_at) or now,
                    last_modified=_text(decoded.last_modified) or now,
                )
            )
        return result

    def transform_action_log_from_external_recovery(self, rows: Any) -> TransformResult:
        result = TransformResult()
        minimum = RECOVERY_MIN_COLUMNS[SheetKind.ACTION_LOG]
        for index, row in enumerate(rows if isinstance(rows, (list, tuple)) else ()):
            if not is_row(row) or len(row) < minimum:
                result.errors.append(f"Row {index + 1}: Skipped, not enough data to recover")
                continue
            decoded = ActionLogRow.decode(row)
            if any(_is_blank(value) for value in (decoded.action, decoded.order_id, decoded.performed_by)):
                result.errors.append(
                    f"Row {index + 1}: Skipped, missing action, orderId or performedBy"
                )
                continue

            action = _text(decoded.action).lower()
            result.data.append(
                ActionLogRecord(
                    action=action if action in ALLOWED_ACTIONS else DEFAULT_ACTION,
                    order_id=_text(decoded.order_id),
                    performed_by=_text(decoded.performed_by),
                    timestamp=_text(decoded.timestamp) or self._now_iso(),
                    tags=split_tags(_text(decoded.tags)),
                    browser_info=_text(decoded.browser_info),
                )
            )
        return result

    def transform_user_settings_from_external_recovery(self, rows: Any) -> TransformResult:
        result = TransformResult()
        for index, row in enumerate(rows if isinstance(rows, (list, tuple)) else ()):
            decoded = UserSettingsRow.decode(row) if is_row(row) and len(row) else None
            if decoded is None or _is_blank(decoded.username):
                result.errors.append(f"Row {index + 1}: Skipped, missing username")
                continue
            result.data.append(
                UserSettingsRecord(
                    username=_text(decoded.username),
                    last_modified=_text(decoded.last_modified) or self._now_iso(),
                )
            )
        return result

    def attempt_recovery(
        self,
        original_data: Mapping[Any, Any],
        errors: Optional[Sequence[str]] = None,
    ) -> Optional[RecordBundle]:
        """Re-read ``original_data`` leniently, at most ``max_recovery_attempts`` times.

        Returns ``None`` once the attempts are exhausted.  The counter is only
        reset by :meth:`clear_state`.
        """

        if self.recovery_attempts >= self.max_recovery_attempts:
            logger.error("Max recovery attempts reached, giving up")
            return None

        self.recovery_attempts += 1
        logger.warning(
            "Attempting recovery (attempt %s/%s) after %s errors",
            self.recovery_attempts,
            self.max_recovery_attempts,
            len(errors or ()),
        )

        parts = _by_kind(original_data)
        hidden = self.transform_hidden_orders_from_external_recovery(parts[SheetKind.HIDDEN_ORDERS])
        actions = self.transform_action_log_from_external_recovery(parts[SheetKind.ACTION_LOG])
        users = self.transform_user_settings_from_external_recovery(parts[SheetKind.USER_SETTINGS])
        bundle = RecordBundle(
            hidden_orders=hidden.data,
            action_log=actions.data,
            user_settings=users.data,
            metadata=TransformMetadata(
                transformed_at=self._now_iso(),
                source=SOURCE_SHEETS,
                recovered=True,
                recovery_attempt=self.recovery_attempts,
            ),
            errors=hidden.errors + actions.errors + users.errors,
        )
        logger.info(
            "Recovery produced %s hidden orders, %s actions, %s user settings",
            len(bundle.hidden_orders),
            len(bundle.action_log),
            len(bundle.user_settings),
        )
        return bundle

    # ------------------------------------------------------------------
    # Records -> rows
    # ------------------------------------------------------------------
    def transform_hidden_orders_to_external(self, records: Any) -> TransformResult:
        return self._to_external(records, SheetKind.HIDDEN_ORDERS, HiddenOrderRecord, _hidden_order_row)

    def transform_action_log_to_external(self, records: Any) -> TransformResult:
        return self._to_external(records, SheetKind.ACTION_LOG, ActionLogRecord, _action_log_row)

    def transform_user_settings_to_external(self, records: Any) -> TransformResult:
        return self._to_external(
            records,
            SheetKind.USER_SETTINGS,
            UserSettingsRecord,
            lambda record: [record.username, record.last_modified or self._now_iso()],
        )

    def _to_external(
        self,
        records: Any,
        kind: SheetKind,
        record_type: type,
        to_row: Callable[[Any], List[str]],
    ) -> TransformResult:
        result = TransformResult()
        if not isinstance(records, (list, tuple)):
            result.errors.append(f"Local {kind.label.lower()} data is not a list")
            return result

        for index, record in enumerate(records):
            if isinstance(record, Mapping):
                try:
                    record = record_type.from_dict(record)
                except (KeyError, TypeError, ValueError):
                    record = None
            if not isinstance(record, record_type):
                result.errors.append(f"Record {index + 1}: Invalid {kind.label.lower()} record")
                continue
            row = to_row(record)
            if any(not row[slot] for slot in REQUIRED_SLOTS[kind]):
                result.errors.append(f"Row {index + 1}: Missing required fields for {kind.camel_name}")
                continue
            result.data.append(row)
        return result

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def get_transformation_stats(
        self, result: Union[TransformResult, _Bundle, None] = None
    ) -> Dict[str, Any]:
        errors = len(result.errors) if result is not None else 0
        return {
            "errors": errors,
            "recovery_attempts": self.recovery_attempts,
            "max_recovery_attempts": self.max_recovery_attempts,
            "has_errors": errors > 0,
            "can_recover": self.recovery_attempts < self.max_recovery_attempts,
        }

    def clear_state(self) -> None:
        self.recovery_attempts = 0


def _hidden_order_row(record: HiddenOrderRecord) -> List[str]:
    return [
        record.order_id or "",
        record.order_date or "",
        record.hidden_by or "",
        join_tags(record.tags),
        record.hidden_type or HIDDEN_TYPE_DETAILS,
        record.hidden_at or "",
        record.last_modified or record.hidden_at or "",
    ]


def _action_log_row(record: ActionLogRecord) -> List[str]:
    return [
        record.action or "",
        record.order_id or "",
        record.performed_by or "",
        record.timestamp or "",
        join_tags(record.tags),
        record.browser_info or "",
    ]


def _by_kind(data: Optional[Mapping[Any, Any]]) -> Dict[SheetKind, Any]:
    parts: Dict[SheetKind, Any] = {kind: [] for kind in SheetKind}
    for key, value in (data or {}).items():
        if value is not None:
            parts[SheetKind.parse(key)] = value
    return parts


def _log_outcome(bundle: _Bundle) -> None:
    if bundle.errors:
        logger.warning("Transformation completed with %s errors", len(bundle.errors))
        for message in bundle.errors:
            logger.debug("Transformation error: %s", message)
    else:
        logger.info("Transformation completed successfully")


__all__ = [
    "RecordBundle",
    "RowBundle",
    "SheetsTransformer",
    "TransformMetadata",
    "TransformResult",
]
