"""Validation and sanitisation of rows read from the spreadsheet.

Field validators take ``(value, index)`` and return a :class:`FieldResult`.
The index is only used to build 1-based ``Row N: ...`` messages.  Errors make
the enclosing row invalid; warnings (truncation, implausible dates, too many
tags) still yield a sanitised value.

Row validators decode a row positionally, run every field validator and only
build a record when all of them succeeded.  Batch validators keep every row
that passed individually even when the batch as a whole is flagged invalid, so
callers may proceed with the valid subset.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence

from dateutil import parser as date_parser

from archiver.records import (
    ALLOWED_ACTIONS,
    ALLOWED_HIDDEN_TYPES,
    ActionLogRecord,
    ActionLogRow,
    HiddenOrderRecord,
    HiddenOrderRow,
    Record,
    UserSettingsRecord,
    UserSettingsRow,
    is_row,
    to_iso_instant,
    utc_now,
)

logger = logging.getLogger(__name__)

HIDDEN_ORDER_COLUMNS = 6
ACTION_LOG_COLUMNS = 6
USER_SETTINGS_COLUMNS = 2

DATE_PLAUSIBLE_YEARS = 50
TIMESTAMP_PLAUSIBLE_DAYS = 365 * 10


@dataclass(frozen=True, slots=True)
class FieldLimits:
    """Maximum lengths and counts applied while sanitising fields."""

    order_id: int = 50
    username: int = 100
    action_type: int = 20
    browser_info: int = 200
    tags_count: int = 20
    tag_length: int = 50


@dataclass(slots=True)
class FieldResult:
    is_valid: bool = True
    sanitized_value: Any = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def fail(self, message: str) -> "FieldResult":
        self.is_valid = False
        self.sanitized_value = None
        self.errors.append(message)
        return self


@dataclass(slots=True)
class RowResult:
    is_valid: bool = True
    record: Optional[Record] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def absorb(self, result: FieldResult) -> FieldResult:
        if not result.is_valid:
            self.is_valid = False
            self.errors.extend(result.errors)
        self.warnings.extend(result.warnings)
        return result


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool = True
    sanitized_data: List[Record] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ValidationStats:
    """Summary numbers for a batch.

    ``total_rows`` is ``valid_rows + len(errors)``: a row that produced two
    errors counts twice, so the figure is an upper bound on the number of rows
    and ``error_rows`` is really an error count.
    """

    total_rows: int
    valid_rows: int
    error_rows: int
    warning_rows: int
    success_rate: float


def _round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


class SheetsValidator:
    """Validate and sanitise spreadsheet rows before they reach the cache."""

    def __init__(
        self,
        limits: Optional[FieldLimits] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.limits = limits or FieldLimits()
        self._clock = clock

    # ------------------------------------------------------------------
    # Batch validation
    # ------------------------------------------------------------------
    def validate_hidden_orders(self, rows: Any) -> ValidationResult:
        return self._validate_batch(rows, self.validate_hidden_order_row, "Hidden orders")

    def validate_action_log(self, rows: Any) -> ValidationResult:
        return self._validate_batch(rows, self.validate_action_log_row, "Action log")

    def validate_user_settings(self, rows: Any) -> ValidationResult:
        return self._validate_batch(rows, self.validate_user_settings_row, "User settings")

    def _validate_batch(
        self,
        rows: Any,
        validate_row: Callable[[Any, int], RowResult],
        label: str,
    ) -> ValidationResult:
        result = ValidationResult()
        if not isinstance(rows, (list, tuple)):
            result.is_valid = False
            result.errors.append(f"{label} data must be a list")
            return result

        for index, row in enumerate(rows):
            row_result = validate_row(row, index)
            if not row_result.is_valid:
                result.is_valid = False
                result.errors.extend(row_result.errors)
            result.warnings.extend(row_result.warnings)
            if row_result.record is not None:
                result.sanitized_data.append(row_result.record)

        logger.debug(
            "%s validated: %s valid, %s errors, %s warnings",
            label,
            len(result.sanitized_data),
            len(result.errors),
            len(result.warnings),
        )
        return result

    # ------------------------------------------------------------------
    # Row validation
    # ------------------------------------------------------------------
    @staticmethod
    def _check_columns(row: Any, index: int, expected: int, result: RowResult) -> bool:
        actual = len(row) if is_row(row) else 0
        if actual < expected:
            result.is_valid = False
            result.errors.append(
                f"Row {index + 1}: Insufficient columns (expected {expected}, got {actual})"
            )
            return False
        return True

    def validate_hidden_order_row(self, row: Any, index: int) -> RowResult:
        result = RowResult()
        if not self._check_columns(row, index, HIDDEN_ORDER_COLUMNS, result):
            return result

        decoded = HiddenOrderRow.decode(row)
        order_id = result.absorb(self.validate_order_id(decoded.order_id, index))
        order_date = result.absorb(self.validate_order_date(decoded.order_date, index))
        username = result.absorb(self.validate_username(decoded.hidden_by, index))
        tags = result.absorb(self.validate_tags(decoded.tags, index))
        hidden_type = result.absorb(self.validate_hidden_type(decoded.hidden_type, index))
        timestamp = result.absorb(self.validate_timestamp(decoded.hidden_at, index))

        last_modified = timestamp
        if isinstance(decoded.last_modified, str) and decoded.last_modified.strip():
            last_modified = result.absorb(self.validate_timestamp(decoded.last_modified, index))

        if result.is_valid:
            result.record = HiddenOrderRecord(
                order_id=order_id.sanitized_value,
                order_date=order_date.sanitized_value,
                hidden_by=username.sanitized_value,
                tags=tags.sanitized_value,
                hidden_type=hidden_type.sanitized_value,
                hidden_at=timestamp.sanitized_value,
                last_modified=last_modified.sanitized_value,
            )
        return result

    def validate_action_log_row(self, row: Any, index: int) -> RowResult:
        result = RowResult()
        if not self._check_columns(row, index, ACTION_LOG_COLUMNS, result):
            return result

        decoded = ActionLogRow.decode(row)
        action = result.absorb(self.validate_action_type(decoded.action, index))
        order_id = result.absorb(self.validate_order_id(decoded.order_id, index))
        username = result.absorb(self.validate_username(decoded.performed_by, index))
        tags = result.absorb(self.validate_tags(decoded.tags, index))
        timestamp = result.absorb(self.validate_timestamp(decoded.timestamp, index))
        browser_info = result.absorb(self.validate_browser_info(decoded.browser_info, index))

        if result.is_valid:
            result.record = ActionLogRecord(
                action=action.sanitized_value,
                order_id=order_id.sanitized_value,
                performed_by=username.sanitized_value,
                timestamp=timestamp.sanitized_value,
                tags=tags.sanitized_value,
                browser_info=browser_info.sanitized_value,
            )
        return result

    def validate_user_settings_row(self, row: Any, index: int) -> RowResult:
        result = RowResult()
        if not self._check_columns(row, index, USER_SETTINGS_COLUMNS, result):
            return result

        decoded = UserSettingsRow.decode(row)
        username = result.absorb(self.validate_username(decoded.username, index))
        timestamp = result.absorb(self.validate_timestamp(decoded.last_modified, index))

        if result.is_valid:
            result.record = UserSettingsRecord(
                username=username.sanitized_value,
                last_modified=timestamp.sanitized_value,
            )
        return result

    # ------------------------------------------------------------------
    # Field validation
    # ------------------------------------------------------------------
    @staticmethod
    def _required_text(value: Any, index: int, label: str, result: FieldResult) -> Optional[str]:
        if not value or not isinstance(value, str):
            result.fail(f"Row {index + 1}: {label} must be a non-empty string")
            return None
        trimmed = value.strip()
        if not trimmed:
            result.fail(f"Row {index + 1}: {label} cannot be empty or whitespace only")
            return None
        return trimmed

    @staticmethod
    def _clamp(text: str, maximum: int, index: int, label: str, result: FieldResult) -> str:
        if len(text) > maximum:
            result.warnings.append(
                f"Row {index + 1}: {label} exceeds maximum length ({maximum}), truncating"
            )
            return text[:maximum]
        return text

    def _bounded_text(self, value: Any, index: int, label: str, maximum: int) -> FieldResult:
        result = FieldResult()
        trimmed = self._required_text(value, index, label, result)
        if trimmed is not None:
            result.sanitized_value = self._clamp(trimmed, maximum, index, label, result)
        return result

    def validate_order_id(self, value: Any, index: int) -> FieldResult:
        return self._bounded_text(value, index, "Order ID", self.limits.order_id)

    def validate_username(self, value: Any, index: int) -> FieldResult:
        return self._bounded_text(value, index, "Username", self.limits.username)

    def validate_browser_info(self, value: Any, index: int) -> FieldResult:
        return self._bounded_text(value, index, "Browser info", self.limits.browser_info)

    def validate_hidden_type(self, value: Any, index: int) -> FieldResult:
        result = FieldResult()
        trimmed = self._required_text(value, index, "Hidden type", result)
        if trimmed is None:
            return result
        normalised = trimmed.lower()
        if normalised not in ALLOWED_HIDDEN_TYPES:
            return result.fail(
                f"Row {index + 1}: Invalid hidden type '{normalised}'. Only 'details' is allowed."
            )
        result.sanitized_value = normalised
        return result

    def validate_action_type(self, value: Any, index: int) -> FieldResult:
        result = FieldResult()
        trimmed = self._required_text(value, index, "Action type", result)
        if trimmed is None:
            return result
        normalised = trimmed.lower()
        # The enum is checked on the full value, before any truncation.
        if normalised not in ALLOWED_ACTIONS:
            return result.fail(
                f"Row {index + 1}: Invalid action type '{normalised}'. "
                f"Allowed values: {', '.join(ALLOWED_ACTIONS)}"
            )
        result.sanitized_value = self._clamp(
            normalised, self.limits.action_type, index, "Action type", result
        )
        return result

    def validate_tags(self, value: Any, index: int) -> FieldResult:
        result = FieldResult(sanitized_value=())
        if not value or not isinstance(value, str) or not value.strip():
            return result

        tags = [tag.strip() for tag in value.strip().split(",")]
        tags = [tag for tag in tags if tag]

        if len(tags) > self.limits.tags_count:
            result.warnings.append(
                f"Row {index + 1}: Too many tags ({len(tags)}), limiting to {self.limits.tags_count}"
            )
            tags = tags[: self.limits.tags_count]

        sanitised: List[str] = []
        for tag_index, tag in enumerate(tags):
            if len(tag) > self.limits.tag_length:
                result.warnings.append(
                    f"Row {index + 1}, Tag {tag_index + 1}: Tag exceeds maximum length "
                    f"({self.limits.tag_length}), truncating"
                )
                tag = tag[: self.limits.tag_length]
            sanitised.append(tag)

        result.sanitized_value = tuple(sanitised)
        return result

    def validate_order_date(self, value: Any, index: int) -> FieldResult:
        result = FieldResult()
        trimmed = self._required_text(value, index, "Order date", result)
        if trimmed is None:
            return result

        parsed = parse_instant(trimmed)
        if parsed is None:
            return result.fail(f"Row {index + 1}: Invalid date format: {trimmed}")

        year_diff = abs(self._clock().year - parsed.year)
        if year_diff > DATE_PLAUSIBLE_YEARS:
            result.warnings.append(
                f"Row {index + 1}: Date seems unusual ({year_diff} years from now): {trimmed}"
            )

        result.sanitized_value = to_iso_instant(parsed)
        return result

    def validate_timestamp(self, value: Any, index: int) -> FieldResult:
        result = FieldResult()
        trimmed = self._required_text(value, index, "Timestamp", result)
        if trimmed is None:
            return result

        parsed = parse_instant(trimmed)
        if parsed is None:
            return result.fail(f"Row {index + 1}: Invalid timestamp format: {trimmed}")

        days_diff = abs((self._clock() - parsed).total_seconds()) / 86400
        if days_diff > TIMESTAMP_PLAUSIBLE_DAYS:
            result.warnings.append(
                f"Row {index + 1}: Timestamp seems unusual ({int(days_diff + 0.5)} days from now): {trimmed}"
            )

        result.sanitized_value = to_iso_instant(parsed)
        return result

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    @staticmethod
    def get_validation_stats(result: ValidationResult) -> ValidationStats:
        valid_rows = len(result.sanitized_data)
        total_rows = valid_rows + len(result.errors)
        success_rate = _round_half_up(valid_rows / total_rows * 100) if total_rows else 0.0
        return ValidationStats(
            total_rows=total_rows,
            valid_rows=valid_rows,
            error_rows=len(result.errors),
            warning_rows=len(result.warnings),
            success_rate=success_rate,
        )


def parse_instant(text: str) -> Optional[datetime]:
    """Parse ``text`` into an aware UTC datetime; naive values are taken as UTC."""

    try:
        parsed = date_parser.parse(text)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


__all__ = [
    "FieldLimits",
    "FieldResult",
    "RowResult",
    "SheetsValidator",
    "ValidationResult",
    "ValidationStats",
    "parse_instant",
]
