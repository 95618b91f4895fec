import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from archiver.cache_store import MemoryCacheStore
from archiver.records import SheetKind
from archiver.settings import SyncSettings
from archiver.sheets_client import SheetsClientError
from archiver.sync_service import SyncService


class _RowsOnlyClient:
    """Spreadsheet fake without the batched ``fetch_sheets`` helper."""

    def __init__(self, tabs):
        self.tabs = tabs
        self.reads = []

    def get_rows(self, range_id):
        self.reads.append(range_id)
        return [list(row) for row in self.tabs.get(range_id, [])]

    def put_rows(self, range_id, rows):
        self.tabs[range_id] = [list(row) for row in rows]

    def append_row(self, sheet_name, row):
        self.tabs.setdefault(sheet_name, []).append(list(row))

    def clear_range(self, range_id):
        self.tabs.pop(range_id, None)

    def create_sheet(self, sheet_name):
        self.tabs.setdefault(sheet_name, [])


TABS = {
    "HiddenOrders": [
        ["Order ID", "Order Date", "Hidden By", "Tags", "Hidden Type", "Hidden At"],
        ["111", "2024-01-15", "john_doe", "a", "details", "2024-01-15T10:30:00Z"],
    ],
    "ActionLog": [
        ["Action", "Order ID", "Performed By", "Timestamp", "Tags", "Browser Info"],
        ["hide", "111", "john_doe", "2024-01-15T10:30:00Z", "a", "Chrome"],
    ],
    "UserSettings": [["Username", "Last Modified"]],
}


@pytest.fixture
def service(tmp_path):
    messages = []
    svc = SyncService(
        SyncSettings(spreadsheet_id="sheet-1"),
        client=_RowsOnlyClient({title: list(rows) for title, rows in TABS.items()}),
        cache=MemoryCacheStore(),
        settings_path=tmp_path / "sync_settings.json",
        log_callback=messages.append,
    )
    svc.messages = messages
    return svc


@pytest.mark.asyncio
async def test_fetch_sheets_data_drops_header_rows(service):
    data = await service.fetch_sheets_data()

    assert data[SheetKind.HIDDEN_ORDERS] == [TABS["HiddenOrders"][1]]
    assert data[SheetKind.USER_SETTINGS] == []
    assert service.client.reads == ["HiddenOrders", "ActionLog", "UserSettings"]
    assert service.messages[0] == "Fetched 1 hiddenOrders, 1 actionLog, 0 userSettings rows"


@pytest.mark.asyncio
async def test_resync_persists_last_sync(service, tmp_path):
    assert service.status().last_sync is None

    result = await service.resync()

    assert result.success
    saved = json.loads((tmp_path / "sync_settings.json").read_text(encoding="utf-8"))
    assert saved["last_sync"] == service.settings.last_sync
    assert saved["last_sync"] is not None
    assert service.status().last_sync == saved["last_sync"]
    assert len((await service.cache.get_all_hidden_orders()).unwrap()) == 1
    assert service.messages[-1] == "Resync finished after 6 steps"


@pytest.mark.asyncio
async def test_publish_round_trips_cache_to_spreadsheet(service):
    await service.resync()

    await service.publish()

    assert service.client.tabs["ActionLog"][1][:3] == ["hide", "111", "john_doe"]
    assert service.client.tabs["UserSettings"] == [["Username", "Last Modified"]]


def test_client_requires_spreadsheet_id(tmp_path):
    svc = SyncService(SyncSettings(credential_path=str(tmp_path / "creds.json")))

    with pytest.raises(SheetsClientError):
        svc.client


def test_recovery_budget_follows_settings(tmp_path):
    svc = SyncService(
        SyncSettings(spreadsheet_id="sheet-1", max_recovery_attempts=2),
        client=_RowsOnlyClient({}),
        cache=MemoryCacheStore(),
        settings_path=tmp_path / "sync_settings.json",
    )
    rows = {"hiddenOrders": [["111", "john_doe"]]}

    first = svc.recover(rows, ["Row 1: Insufficient columns for hidden order"])
    second = svc.recover(rows)
    assert first.metadata.recovery_attempt == 1
    assert [record.order_id for record in second.hidden_orders] == ["111"]
    assert svc.recover(rows) is None

    svc.reset_recovery()
    assert svc.recover(rows).metadata.recovery_attempt == 1
    assert svc.publisher.transformer is svc.transformer
