import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from archiver.cache_store import CacheErrorKind, CacheResult, MemoryCacheStore
from archiver.importer import SheetsImporter
from archiver.records import SheetKind
from archiver.sync import (
    STEP_CLEAR,
    STEP_FINAL_STATS,
    STEP_IMPORT,
    STEP_REBUILD,
    STEP_SNAPSHOT,
    STEP_VERIFY,
    CacheClearError,
    CacheRebuildError,
    ImportStepError,
    ResyncInProgressError,
    ResyncOrchestrator,
    ResyncState,
)
from archiver.validation import SheetsValidator

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

SHEETS_DATA = {
    "hiddenOrders": [
        ["111", "2024-01-15", "john_doe", "a, b", "details", "2024-01-15T10:30:00Z"],
        ["222", "2024-01-16", "jane", "", "details", "2024-01-16T10:30:00Z"],
    ],
    "actionLog": [
        ["hide", "111", "john_doe", "2024-01-15T10:30:00Z", "a", "Chrome"],
        ["hide", "222", "jane", "2024-01-16T10:30:00Z", "", "Arc"],
        ["unhide", "222", "jane", "2024-01-17T10:30:00Z", "", "Arc"],
    ],
    "userSettings": [["john_doe", "2024-01-01T00:00:00Z"]],
}

STALE = {
    "amazon_archiver_hidden_order_999_details": {
        "order_id": "999",
        "order_date": None,
        "hidden_by": "old",
        "tags": [],
        "hidden_type": "details",
        "hidden_at": "2023-01-01T00:00:00.000Z",
        "last_modified": None,
    },
    "other_extension_key": {"keep": True},
}


def _orchestrator(cache: MemoryCacheStore) -> ResyncOrchestrator:
    clock = lambda: FIXED_NOW  # noqa: E731
    importer = SheetsImporter(SheetsValidator(clock=clock), clock=clock)
    return ResyncOrchestrator(cache, importer, clock=clock)


class _GatedCache(MemoryCacheStore):
    """Blocks the first read until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def entries(self, prefix: str) -> CacheResult:
        await self.gate.wait()
        return await super().entries(prefix)


class _FlakyReadCache(MemoryCacheStore):
    """Fails the first ``failures`` prefix reads."""

    def __init__(self, failures: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures

    async def entries(self, prefix: str) -> CacheResult:
        if self.failures:
            self.failures -= 1
            return CacheResult.failure(CacheErrorKind.READ_FAILED, "storage offline")
        return await super().entries(prefix)


@pytest.mark.asyncio
async def test_resync_rebuilds_namespace_and_reports_counts():
    cache = MemoryCacheStore(initial=dict(STALE))
    orchestrator = _orchestrator(cache)

    result = await orchestrator.perform_resync(SHEETS_DATA)

    assert result.success
    assert result.error is None
    assert result.steps == [
        STEP_SNAPSHOT,
        STEP_CLEAR,
        STEP_IMPORT,
        STEP_REBUILD,
        STEP_FINAL_STATS,
        STEP_VERIFY,
    ]
    assert result.statistics[SheetKind.HIDDEN_ORDERS].before == 1
    assert result.statistics[SheetKind.HIDDEN_ORDERS].after == 2
    assert result.statistics[SheetKind.ACTION_LOG].after == 3
    assert result.statistics[SheetKind.USER_SETTINGS].after == 1
    assert result.validation.passed
    assert result.validation.checks == [
        "Hidden orders count matches",
        "Action log count matches",
        "User settings count matches",
    ]
    assert "amazon_archiver_hidden_order_999_details" not in cache.data
    assert cache.data["other_extension_key"] == {"keep": True}
    assert orchestrator.state is ResyncState.DONE
    assert not orchestrator.is_syncing

    status = orchestrator.get_sync_status()
    assert status.last_sync == "2024-06-01T12:00:00.000Z"
    assert status.is_syncing is False


@pytest.mark.asyncio
async def test_concurrent_resync_is_rejected_without_touching_cache():
    cache = _GatedCache()
    cache.data.update(STALE)
    orchestrator = _orchestrator(cache)

    first = asyncio.create_task(orchestrator.perform_resync(SHEETS_DATA))
    while not orchestrator.is_syncing:
        await asyncio.sleep(0)
    snapshot = dict(cache.data)
    writes = cache.writes

    with pytest.raises(ResyncInProgressError, match="Sync already in progress"):
        await orchestrator.perform_resync(SHEETS_DATA)

    assert cache.data == snapshot
    assert cache.writes == writes

    cache.gate.set()
    result = await first
    assert result.success
    assert not orchestrator.is_syncing


@pytest.mark.asyncio
async def test_snapshot_failure_degrades_to_zero():
    cache = _FlakyReadCache(failures=1, initial=dict(STALE))
    orchestrator = _orchestrator(cache)

    result = await orchestrator.perform_resync(SHEETS_DATA)

    assert result.success
    assert all(stats.before == 0 for stats in result.statistics.values())
    assert result.warnings == ["Error getting cache statistics: storage offline"]
    assert result.validation.passed


@pytest.mark.asyncio
async def test_clear_failure_aborts_and_releases_guard():
    cache = MemoryCacheStore(initial=dict(STALE), fail_on={"remove"})
    orchestrator = _orchestrator(cache)

    with pytest.raises(CacheClearError) as excinfo:
        await orchestrator.perform_resync(SHEETS_DATA)

    result = excinfo.value.result
    assert result.success is False
    assert result.error.startswith("Error clearing cache")
    assert result.steps[-1] == STEP_CLEAR
    assert orchestrator.state is ResyncState.FAILED
    assert not orchestrator.is_syncing
    assert "amazon_archiver_hidden_order_999_details" in cache.data

    cache.fail_on.clear()
    assert (await orchestrator.perform_resync(SHEETS_DATA)).success


@pytest.mark.asyncio
async def test_rebuild_failure_aborts_after_all_kinds_settle():
    cache = MemoryCacheStore(fail_on={"set"})
    orchestrator = _orchestrator(cache)

    with pytest.raises(CacheRebuildError) as excinfo:
        await orchestrator.perform_resync(SHEETS_DATA)

    message = str(excinfo.value)
    assert "Hidden orders" in message
    assert "Action log" in message
    assert "User settings" in message
    assert excinfo.value.result.steps[-1] == STEP_REBUILD
    assert excinfo.value.result.validation is None


@pytest.mark.asyncio
async def test_import_failure_is_fatal():
    orchestrator = _orchestrator(MemoryCacheStore())

    with pytest.raises(ImportStepError) as excinfo:
        await orchestrator.perform_resync({"orders": []})

    assert excinfo.value.result.steps[-1] == STEP_IMPORT
    assert orchestrator.errors == [str(excinfo.value)]


@pytest.mark.asyncio
async def test_integrity_mismatch_is_reported_not_raised():
    duplicate = ["111", "2024-01-15", "john_doe", "", "details", "2024-01-15T10:30:00Z"]
    cache = MemoryCacheStore()
    orchestrator = _orchestrator(cache)

    result = await orchestrator.perform_resync({"hiddenOrders": [duplicate, duplicate]})

    assert result.success
    assert not result.validation.passed
    assert "Hidden orders count mismatch: expected 2, got 1" in result.validation.checks


@pytest.mark.asyncio
async def test_verification_read_error_is_reported():
    cache = _FlakyReadCache(failures=0)
    orchestrator = _orchestrator(cache)
    imported = orchestrator.importer.import_all(SHEETS_DATA)
    cache.failures = 1

    report = await orchestrator.validate_sync_integrity(imported)

    assert not report.passed
    assert report.checks == ["Error during validation: storage offline"]
