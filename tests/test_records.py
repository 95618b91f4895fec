import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from archiver.records import (
    ActionLogRecord,
    HiddenOrderRecord,
    HiddenOrderRow,
    SheetKind,
    UnknownSheetKindError,
    UserSettingsRow,
    join_tags,
    split_tags,
    to_iso_instant,
)


@pytest.mark.parametrize(
    "raw",
    [SheetKind.ACTION_LOG, "action_log", "actionLog", "ACTION_LOG", " actionLog "],
)
def test_sheet_kind_parse_accepts_known_spellings(raw):
    assert SheetKind.parse(raw) is SheetKind.ACTION_LOG


def test_sheet_kind_parse_rejects_unknown_names():
    with pytest.raises(UnknownSheetKindError):
        SheetKind.parse("orders")


def test_sheet_kind_names():
    assert SheetKind.HIDDEN_ORDERS.camel_name == "hiddenOrders"
    assert SheetKind.USER_SETTINGS.label == "User settings"


def test_to_iso_instant_uses_milliseconds_and_utc():
    value = datetime(2024, 1, 15, 12, 30, 5, 123456, tzinfo=timezone(timedelta(hours=2)))

    assert to_iso_instant(value) == "2024-01-15T10:30:05.123Z"
    assert to_iso_instant(datetime(2024, 1, 15)) == "2024-01-15T00:00:00.000Z"
    assert to_iso_instant(datetime(50, 1, 1, tzinfo=timezone.utc)) == "0050-01-01T00:00:00.000Z"


def test_split_and_join_tags():
    assert split_tags(" electronics, ,gadgets ,") == ("electronics", "gadgets")
    assert split_tags(None) == ()
    assert split_tags(["a", " b "]) == ("a", "b")
    assert join_tags(("a", "b")) == "a, b"


def test_row_decoding_pads_missing_columns():
    decoded = HiddenOrderRow.decode(["1", "2024-01-01", "bob", "", "details", "ts"])

    assert decoded.hidden_by == "bob"
    assert decoded.last_modified is None
    assert UserSettingsRow.decode(["alice"]).last_modified is None


def test_record_dict_round_trip_and_aliases():
    record = HiddenOrderRecord(
        order_id="123",
        order_date=None,
        hidden_by="john_doe",
        tags=("a", "b"),
        hidden_type="details",
        hidden_at="2024-01-15T10:30:00.000Z",
        last_modified="2024-01-15T10:30:00.000Z",
    )

    assert HiddenOrderRecord.from_dict(record.to_dict()) == record
    assert record.username == "john_doe"
    assert record.timestamp == record.hidden_at

    action = ActionLogRecord.from_dict({"order_id": "123", "performed_by": "bob", "timestamp": "t"})
    assert action.action == "hide"
    assert action.action_type == "hide"
    assert action.username == "bob"
