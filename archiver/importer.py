"""Import spreadsheet rows into validated records."""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from archiver.records import (
    SHEET_HEADERS,
    Record,
    SheetKind,
    split_tags,
    to_iso_instant,
    utc_now,
)
from archiver.validation import (
    SheetsValidator,
    ValidationResult,
    ValidationStats,
    parse_instant,
)

logger = logging.getLogger(__name__)


class ImporterError(Exception):
    """Raised when exported sheet data cannot be generated."""


@dataclass(slots=True)
class ImportValidation:
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    stats: ValidationStats


@dataclass(slots=True)
class ImportResult:
    """Sanitised records of one kind together with their validation report."""

    data: List[Record]
    validation: ImportValidation

    @property
    def count(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class ValidationSummary:
    total_errors: int = 0
    total_warnings: int = 0
    success_rates: Dict[SheetKind, float] = field(default_factory=dict)


@dataclass(slots=True)
class ImportAllResult:
    timestamp: str
    imported: Dict[SheetKind, ImportResult]
    validation_summary: ValidationSummary

    def get(self, kind: Union[SheetKind, str]) -> Optional[ImportResult]:
        return self.imported.get(SheetKind.parse(kind))


class SheetsImporter:
    """Run the row validator per kind and report how the import went."""

    def __init__(
        self,
        validator: Optional[SheetsValidator] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.validator = validator or SheetsValidator(clock=clock)
        self._clock = clock
        self._validators: Dict[SheetKind, Callable[[Any], ValidationResult]] = {
            SheetKind.HIDDEN_ORDERS: self.validator.validate_hidden_orders,
            SheetKind.ACTION_LOG: self.validator.validate_action_log,
            SheetKind.USER_SETTINGS: self.validator.validate_user_settings,
        }

    def import_hidden_orders(self, rows: Sequence[Sequence[Any]]) -> ImportResult:
        return self.import_kind(SheetKind.HIDDEN_ORDERS, rows)

    def import_action_log(self, rows: Sequence[Sequence[Any]]) -> ImportResult:
        return self.import_kind(SheetKind.ACTION_LOG, rows)

    def import_user_settings(self, rows: Sequence[Sequence[Any]]) -> ImportResult:
        return self.import_kind(SheetKind.USER_SETTINGS, rows)

    def import_kind(self, kind: Union[SheetKind, str], rows: Sequence[Sequence[Any]]) -> ImportResult:
        kind = SheetKind.parse(kind)
        logger.info("Importing %s from spreadsheet rows", kind.label.lower())

        result = self._validators[kind](rows)
        if not result.is_valid:
            logger.warning("%s validation failed: %s", kind.label, result.errors)
        if result.warnings:
            logger.warning("%s validation warnings: %s", kind.label, result.warnings)

        stats = self.validator.get_validation_stats(result)
        logger.info(
            "%s import complete. %s/%s rows valid (%s%% success rate)",
            kind.label,
            stats.valid_rows,
            stats.total_rows,
            stats.success_rate,
        )
        return ImportResult(
            data=list(result.sanitized_data),
            validation=ImportValidation(
                is_valid=result.is_valid,
                errors=list(result.errors),
                warnings=list(result.warnings),
                stats=stats,
            ),
        )

    def import_all(self, sheets_data: Mapping[Any, Any]) -> ImportAllResult:
        """Import every kind present in ``sheets_data``.

        Keys may be :class:`SheetKind` members, their values or the camelCase
        names.  Kinds that are missing or ``None`` are left out of the result.
        Unknown keys raise :class:`~archiver.records.UnknownSheetKindError`.
        """

        logger.info("Importing all data from spreadsheet rows")
        present: Dict[SheetKind, Any] = {}
        for key, rows in sheets_data.items():
            kind = SheetKind.parse(key)
            if rows is not None:
                present[kind] = rows

        imported: Dict[SheetKind, ImportResult] = {}
        for kind in SheetKind:
            if kind in present:
                imported[kind] = self.import_kind(kind, present[kind])

        summary = ValidationSummary()
        for kind, outcome in imported.items():
            summary.total_errors += len(outcome.validation.errors)
            summary.total_warnings += len(outcome.validation.warnings)
            summary.success_rates[kind] = outcome.validation.stats.success_rate

        if summary.total_errors:
            logger.warning(
                "Import completed with %s errors and %s warnings",
                summary.total_errors,
                summary.total_warnings,
            )
        elif summary.total_warnings:
            logger.warning("Import completed with %s warnings", summary.total_warnings)
        else:
            logger.info("All data imported successfully with no validation issues")

        return ImportAllResult(
            timestamp=to_iso_instant(self._clock()),
            imported=imported,
            validation_summary=summary,
        )

    @staticmethod
    def get_headers(kind: Union[SheetKind, str]) -> List[str]:
        return list(SHEET_HEADERS[SheetKind.parse(kind)])


# ---------------------------------------------------------------------------
# Export helpers
# ---------------------------------------------------------------------------
def format_date_for_sheets(value: Any) -> str:
    """Return ``YYYY-MM-DD`` for a parseable date, ``""`` otherwise."""

    parsed = _coerce_datetime(value)
    return parsed.strftime("%Y-%m-%d") if parsed else ""


def format_datetime_for_sheets(value: Any) -> str:
    """Return the ISO instant form for a parseable date, ``""`` otherwise."""

    parsed = _coerce_datetime(value)
    return to_iso_instant(parsed) if parsed else ""


def parse_tags_from_sheets(value: Any) -> List[str]:
    if not value or not isinstance(value, str):
        return []
    return list(split_tags(value))


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return parse_instant(str(value))


def _check_sheet_data(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> Tuple[List[str], List[Sequence[Any]]]:
    if not headers or rows is None:
        raise ImporterError("Invalid sheet data format")
    return list(headers), list(rows)


def generate_csv(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    header_list, row_list = _check_sheet_data(headers, rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header_list)
    for row in row_list:
        writer.writerow(["" if cell is None else str(cell) for cell in row])
    return buffer.getvalue().rstrip("\n")


def generate_json(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    header_list, row_list = _check_sheet_data(headers, rows)
    payload = []
    for row in row_list:
        payload.append(
            {
                header: (row[index] if index < len(row) and row[index] else "")
                for index, header in enumerate(header_list)
            }
        )
    return json.dumps(payload, indent=2, ensure_ascii=False)


__all__ = [
    "ImportAllResult",
    "ImportResult",
    "ImportValidation",
    "ImporterError",
    "SheetsImporter",
    "ValidationSummary",
    "format_date_for_sheets",
    "format_datetime_for_sheets",
    "generate_csv",
    "generate_json",
    "parse_tags_from_sheets",
]
