import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from archiver.records import ActionLogRecord, HiddenOrderRecord, SheetKind, UserSettingsRecord
from archiver.transformer import RecordBundle, SheetsTransformer

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
NOW_ISO = "2024-06-01T12:00:00.000Z"

HIDDEN_ROW = [
    " 123-4567890-1234567 ",
    "2024-01-15",
    "john_doe",
    "electronics, gadgets",
    "Details",
    "2024-01-15T10:30:00Z",
]
ACTION_ROW = ["HIDE", "123-4567890-1234567", "john_doe", "2024-01-15T10:30:00Z", "electronics", "Chrome 120"]


@pytest.fixture
def transformer() -> SheetsTransformer:
    return SheetsTransformer(clock=lambda: FIXED_NOW)


def test_strict_hidden_orders_trim_and_default(transformer):
    result = transformer.transform_hidden_orders_from_external([HIDDEN_ROW])

    assert result.errors == []
    assert result.data == [
        HiddenOrderRecord(
            order_id="123-4567890-1234567",
            order_date="2024-01-15",
            hidden_by="john_doe",
            tags=("electronics", "gadgets"),
            hidden_type="details",
            hidden_at="2024-01-15T10:30:00Z",
            last_modified="2024-01-15T10:30:00Z",
        )
    ]


def test_strict_hidden_orders_blank_hidden_type_defaults_to_details(transformer):
    row = list(HIDDEN_ROW)
    row[4] = ""

    result = transformer.transform_hidden_orders_from_external([row])

    assert result.data[0].hidden_type == "details"


@pytest.mark.parametrize(
    "row, message",
    [
        (HIDDEN_ROW[:5], "Row 1: Insufficient columns for hidden order"),
        (
            ["1", "2024-01-15", "", "", "details", "2024-01-15"],
            "Row 1: Missing required fields (orderId, hiddenBy, or hiddenAt)",
        ),
        (["1", "", "bob", "", "summary", "2024-01-15"], "Row 1: Invalid hidden type: summary"),
        (["9" * 51, "", "bob", "", "details", "2024-01-15"], "Row 1: Invalid order ID (empty or too long)"),
        (["1", "", "b" * 101, "", "details", "2024-01-15"], "Row 1: Username too long (max 100 characters)"),
        (["1", "", "bob", "t" * 501, "details", "2024-01-15"], "Row 1: Tags too long (max 500 characters)"),
    ],
)
def test_strict_hidden_orders_drop_bad_rows(transformer, row, message):
    result = transformer.transform_hidden_orders_from_external([row])

    assert result.data == []
    assert result.errors == [message]


def test_strict_action_log(transformer):
    result = transformer.transform_action_log_from_external(
        [ACTION_ROW, ["delete", "1", "bob", "2024-01-15", "", ""]]
    )

    assert [record.action for record in result.data] == ["hide"]
    assert result.errors == ["Row 2: Invalid action: delete"]


def test_strict_user_settings_default_timestamp(transformer):
    result = transformer.transform_user_settings_from_external([["bob"], [""], []])

    assert result.data == [UserSettingsRecord(username="bob", last_modified=NOW_ISO)]
    assert result.errors == [
        "Row 2: Missing required field (username)",
        "Row 3: Insufficient columns for user settings",
    ]


def test_strict_never_raises_for_non_list_input(transformer):
    result = transformer.transform_action_log_from_external(None)

    assert result.data == []
    assert result.errors == ["Action log data is not a list"]


def test_to_external_layouts(transformer):
    hidden = HiddenOrderRecord(
        order_id="1",
        order_date=None,
        hidden_by="bob",
        tags=("a", "b"),
        hidden_type="details",
        hidden_at="2024-01-15T10:30:00.000Z",
    )
    action = ActionLogRecord(
        action="unhide",
        order_id="1",
        performed_by="bob",
        timestamp="2024-01-15T10:30:00.000Z",
    )

    assert transformer.transform_hidden_orders_to_external([hidden]).data == [
        ["1", "", "bob", "a, b", "details", "2024-01-15T10:30:00.000Z", "2024-01-15T10:30:00.000Z"]
    ]
    assert transformer.transform_action_log_to_external([action]).data == [
        ["unhide", "1", "bob", "2024-01-15T10:30:00.000Z", "", ""]
    ]
    assert transformer.transform_user_settings_to_external(
        [UserSettingsRecord(username="bob", last_modified="")]
    ).data == [["bob", NOW_ISO]]


def test_to_external_checks_required_slots(transformer):
    missing_user = HiddenOrderRecord(
        order_id="1",
        order_date=None,
        hidden_by="",
        tags=(),
        hidden_type="details",
        hidden_at="2024-01-15",
    )

    result = transformer.transform_hidden_orders_to_external([missing_user, "junk"])

    assert result.data == []
    assert result.errors == [
        "Row 1: Missing required fields for hiddenOrders",
        "Record 2: Invalid hidden orders record",
    ]


def test_to_external_accepts_cached_dicts(transformer):
    cached = {"username": "alice", "last_modified": "2024-02-01T00:00:00.000Z"}

    result = transformer.transform_user_settings_to_external([cached])

    assert result.data == [["alice", "2024-02-01T00:00:00.000Z"]]


def test_round_trip_is_idempotent(transformer):
    record = HiddenOrderRecord(
        order_id="123-4567890-1234567",
        order_date="2024-01-15T00:00:00.000Z",
        hidden_by="john_doe",
        tags=("electronics", "gadgets"),
        hidden_type="details",
        hidden_at="2024-01-15T10:30:00.000Z",
        last_modified="2024-01-16T10:30:00.000Z",
    )

    rows = transformer.transform_hidden_orders_to_external([record]).data
    records = transformer.transform_hidden_orders_from_external(rows).data
    again = transformer.transform_hidden_orders_to_external(records).data

    assert records == [record]
    assert again == rows


def test_action_log_round_trip_is_idempotent(transformer):
    record = ActionLogRecord(
        action="unhide",
        order_id="123-4567890-1234567",
        performed_by="jane",
        timestamp="2024-01-17T08:00:00.000Z",
        tags=("electronics", "gift"),
        browser_info="Firefox 121",
    )

    rows = transformer.transform_action_log_to_external([record]).data
    records = transformer.transform_action_log_from_external(rows).data
    again = transformer.transform_action_log_to_external(records).data

    assert records == [record]
    assert again == rows


def test_user_settings_round_trip_is_idempotent(transformer):
    record = UserSettingsRecord(username="jane", last_modified="2024-02-01T00:00:00.000Z")

    rows = transformer.transform_user_settings_to_external([record]).data
    records = transformer.transform_user_settings_from_external(rows).data
    again = transformer.transform_user_settings_to_external(records).data

    assert records == [record]
    assert again == rows == [["jane", "2024-02-01T00:00:00.000Z"]]


def test_bundle_transforms_accept_camel_case_keys(transformer):
    bundle = transformer.transform_from_external(
        {"hiddenOrders": [HIDDEN_ROW], "actionLog": [ACTION_ROW], "userSettings": None}
    )

    assert isinstance(bundle, RecordBundle)
    assert len(bundle.get(SheetKind.HIDDEN_ORDERS)) == 1
    assert len(bundle.get("actionLog")) == 1
    assert bundle.user_settings == []
    assert bundle.metadata.source == "google-sheets"
    assert bundle.metadata.recovered is False

    rows = transformer.transform_to_external(bundle.as_dict())
    assert rows.hidden_orders[0][0] == "123-4567890-1234567"
    assert rows.metadata.source == "local-cache"


def test_recovery_accepts_minimal_rows(transformer):
    hidden = transformer.transform_hidden_orders_from_external_recovery(
        [["42", "bob"], ["43", "", "carol", "", "bogus", ""], ["44"]]
    )

    assert [record.order_id for record in hidden.data] == ["42", "43"]
    assert hidden.data[0].hidden_at == NOW_ISO
    assert hidden.data[0].hidden_by == "bob"
    assert hidden.data[1].hidden_type == "details"
    assert len(hidden.errors) == 1

    actions = transformer.transform_action_log_from_external_recovery(
        [["delete", "42", "bob"], ["UNHIDE", "43", "carol", "2024-01-15"]]
    )
    assert [record.action for record in actions.data] == ["hide", "unhide"]
    assert actions.data[0].timestamp == NOW_ISO


def test_attempt_recovery_is_bounded(transformer, caplog):
    data = {"hiddenOrders": [["42", "bob"]]}

    with caplog.at_level(logging.ERROR, logger="archiver.transformer"):
        results = [transformer.attempt_recovery(data, ["boom"]) for _ in range(4)]

    assert all(result is not None for result in results[:3])
    assert results[3] is None
    assert [result.metadata.recovery_attempt for result in results[:3]] == [1, 2, 3]
    assert all(result.metadata.recovered for result in results[:3])
    messages = [record.getMessage() for record in caplog.records]
    assert messages.count("Max recovery attempts reached, giving up") == 1


def test_transformation_stats_and_clear_state(transformer):
    result = transformer.transform_hidden_orders_from_external([["short"]])
    transformer.attempt_recovery({}, result.errors)

    stats = transformer.get_transformation_stats(result)
    assert stats == {
        "errors": 1,
        "recovery_attempts": 1,
        "max_recovery_attempts": 3,
        "has_errors": True,
        "can_recover": True,
    }

    transformer.clear_state()
    assert transformer.get_transformation_stats()["recovery_attempts"] == 0
