"""Resync orchestration: clear the cache, import spreadsheet rows, rebuild.

The spreadsheet is the source of truth.  A resync runs these steps in a fixed
order and records each one in ``SyncResult.steps``:

1. snapshot the cache counts (failures degrade to zero with a warning)
2. clear every key under the cache namespace (fatal)
3. import and validate the supplied rows (fatal)
4. rebuild the cache, the three kinds concurrently (fatal)
5. re-read the counts and compare them with what was imported

A count mismatch is reported in ``SyncResult.validation`` and does not make the
resync fail.  Only one resync may run at a time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from archiver.cache_store import CacheResult, CacheStore
from archiver.importer import ImportAllResult, SheetsImporter
from archiver.records import ArchiverError, Record, SheetKind, to_iso_instant, utc_now

logger = logging.getLogger(__name__)

STEP_SNAPSHOT = "Getting current cache statistics..."
STEP_CLEAR = "Clearing existing cache..."
STEP_IMPORT = "Importing data from Google Sheets..."
STEP_REBUILD = "Rebuilding cache with imported data..."
STEP_FINAL_STATS = "Getting final cache statistics..."
STEP_VERIFY = "Validating sync integrity..."


class ResyncState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    CLEARING = "clearing"
    IMPORTING = "importing"
    REBUILDING = "rebuilding"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class KindStatistics:
    before: int = 0
    after: int = 0


@dataclass(slots=True)
class IntegrityReport:
    timestamp: str
    checks: List[str] = field(default_factory=list)
    passed: bool = True


@dataclass(slots=True)
class SyncResult:
    timestamp: str
    steps: List[str] = field(default_factory=list)
    statistics: Dict[SheetKind, KindStatistics] = field(
        default_factory=lambda: {kind: KindStatistics() for kind in SheetKind}
    )
    imported: Optional[ImportAllResult] = None
    validation: Optional[IntegrityReport] = None
    success: bool = False
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SyncStatus:
    is_syncing: bool
    state: ResyncState
    last_sync: Optional[str]
    timestamp: str


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class ResyncError(ArchiverError):
    """A resync step failed; ``result`` holds the partial outcome."""

    def __init__(self, message: str, result: Optional[SyncResult] = None) -> None:
        super().__init__(message)
        self.result = result


class ResyncInProgressError(ResyncError):
    """Raised when a resync is requested while another one is running."""


class CacheClearError(ResyncError):
    """Raised when the namespaced cache entries could not be removed."""


class CacheRebuildError(ResyncError):
    """Raised when at least one record could not be written back to the cache."""


class ImportStepError(ResyncError):
    """Raised when the supplied rows could not be imported."""


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class ResyncOrchestrator:
    def __init__(
        self,
        cache: CacheStore,
        importer: Optional[SheetsImporter] = None,
        *,
        namespace: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.importer = importer or SheetsImporter(clock=clock)
        self.namespace = namespace if namespace is not None else cache.namespace
        self._clock = clock
        self._is_syncing = False
        self._state = ResyncState.IDLE
        self.last_sync_timestamp: Optional[str] = None
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self._readers: Dict[SheetKind, Callable[[], Awaitable[CacheResult]]] = {
            SheetKind.HIDDEN_ORDERS: cache.get_all_hidden_orders,
            SheetKind.ACTION_LOG: cache.get_all_action_log,
            SheetKind.USER_SETTINGS: cache.get_all_user_settings,
        }
        self._writers: Dict[SheetKind, Callable[[Any], Awaitable[CacheResult]]] = {
            SheetKind.HIDDEN_ORDERS: cache.store_hidden_order,
            SheetKind.ACTION_LOG: cache.store_action_log,
            SheetKind.USER_SETTINGS: cache.store_user_settings,
        }

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def state(self) -> ResyncState:
        return self._state

    def _now_iso(self) -> str:
        return to_iso_instant(self._clock())

    def _enter(self, state: ResyncState, result: SyncResult, step: str) -> None:
        self._state = state
        result.steps.append(step)
        logger.info(step)

    async def perform_resync(self, sheets_data: Mapping[Any, Any]) -> SyncResult:
        """Rebuild the cache from ``sheets_data``.

        Raises :class:`ResyncInProgressError` without touching the cache when a
        resync is already running, and a :class:`ResyncError` subclass carrying
        the partial :class:`SyncResult` when a fatal step fails.
        """

        if self._is_syncing:
            raise ResyncInProgressError("Sync already in progress")
        self._is_syncing = True
        self.warnings = []
        self.errors = []

        logger.info("Starting Google Sheets resync")
        result = SyncResult(timestamp=self._now_iso())
        try:
            self._enter(ResyncState.SNAPSHOTTING, result, STEP_SNAPSHOT)
            for kind, count in (await self.get_cache_statistics()).items():
                result.statistics[kind].before = count

            self._enter(ResyncState.CLEARING, result, STEP_CLEAR)
            await self.clear_cache()

            self._enter(ResyncState.IMPORTING, result, STEP_IMPORT)
            imported = await self.import_from_sheets(sheets_data)
            result.imported = imported

            self._enter(ResyncState.REBUILDING, result, STEP_REBUILD)
            await self.rebuild_cache(imported)

            self._enter(ResyncState.VERIFYING, result, STEP_FINAL_STATS)
            for kind, count in (await self.get_cache_statistics()).items():
                result.statistics[kind].after = count

            result.steps.append(STEP_VERIFY)
            logger.info(STEP_VERIFY)
            result.validation = await self.validate_sync_integrity(imported)

            result.success = True
            self._state = ResyncState.DONE
            self.last_sync_timestamp = self._now_iso()
            logger.info("Google Sheets resync completed successfully")
            return result
        except ResyncError as exc:
            self._fail(result, str(exc))
            exc.result = result
            raise
        except Exception as exc:
            self._fail(result, str(exc))
            raise
        finally:
            result.warnings = list(self.warnings)
            self._is_syncing = False

    def _fail(self, result: SyncResult, message: str) -> None:
        self._state = ResyncState.FAILED
        self.errors.append(message)
        result.success = False
        result.error = message
        logger.error("Google Sheets resync failed: %s", message)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def get_cache_statistics(self) -> Dict[SheetKind, int]:
        """Return per-kind record counts, or zeros if the cache cannot be read."""

        counts: Dict[SheetKind, int] = {}
        for kind, reader in self._readers.items():
            outcome = await reader()
            if not outcome.ok:
                message = f"Error getting cache statistics: {outcome.message}"
                logger.warning(message)
                self.warnings.append(message)
                return {kind: 0 for kind in SheetKind}
            counts[kind] = len(outcome.value)
        return counts

    async def clear_cache(self) -> int:
        listed = await self.cache.list_all_keys()
        if not listed.ok:
            raise CacheClearError(f"Error clearing cache: {listed.message}")

        keys = [key for key in listed.value if key.startswith(self.namespace)]
        if not keys:
            logger.info("No cache entries found to clear")
            return 0

        removed = await self.cache.remove(keys)
        if not removed.ok:
            raise CacheClearError(f"Error clearing cache: {removed.message}")
        logger.info("Cleared %s cache entries", len(keys))
        return len(keys)

    async def import_from_sheets(self, sheets_data: Mapping[Any, Any]) -> ImportAllResult:
        try:
            imported = self.importer.import_all(sheets_data)
        except (ArchiverError, TypeError, AttributeError) as exc:
            raise ImportStepError(f"Error importing from Google Sheets: {exc}") from exc

        summary = imported.validation_summary
        logger.info(
            "Validation summary: %s errors, %s warnings",
            summary.total_errors,
            summary.total_warnings,
        )
        for kind, rate in summary.success_rates.items():
            logger.info("%s: %s%% success rate", kind.camel_name, rate)
        return imported

    async def rebuild_cache(self, imported: ImportAllResult) -> None:
        kinds = [kind for kind in SheetKind if kind in imported.imported]
        outcomes = await asyncio.gather(
            *(self._rebuild_kind(kind, imported.imported[kind].data) for kind in kinds),
            return_exceptions=True,
        )
        failures = [
            f"{kind.label}: {outcome}"
            for kind, outcome in zip(kinds, outcomes)
            if isinstance(outcome, BaseException)
        ]
        if failures:
            raise CacheRebuildError("Error rebuilding cache: " + "; ".join(failures))
        logger.info("Cache rebuilt successfully")

    async def _rebuild_kind(self, kind: SheetKind, records: Sequence[Record]) -> int:
        logger.info("Rebuilding %s cache with %s entries", kind.label.lower(), len(records))
        writer = self._writers[kind]
        for record in records:
            (await writer(record)).unwrap()
        return len(records)

    async def validate_sync_integrity(self, imported: ImportAllResult) -> IntegrityReport:
        report = IntegrityReport(timestamp=self._now_iso())
        try:
            for kind, reader in self._readers.items():
                actual = len((await reader()).unwrap())
                expected = len(imported.imported[kind].data) if kind in imported.imported else 0
                if actual == expected:
                    report.checks.append(f"{kind.label} count matches")
                else:
                    report.checks.append(
                        f"{kind.label} count mismatch: expected {expected}, got {actual}"
                    )
                    report.passed = False
        except ArchiverError as exc:
            logger.error("Error validating sync integrity: %s", exc)
            return IntegrityReport(
                timestamp=self._now_iso(),
                checks=[f"Error during validation: {exc}"],
                passed=False,
            )

        if report.passed:
            logger.info("Sync integrity validation passed")
        else:
            logger.warning("Sync integrity validation failed: %s", report.checks)
        return report

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            is_syncing=self._is_syncing,
            state=self._state,
            last_sync=self.last_sync_timestamp,
            timestamp=self._now_iso(),
        )


__all__ = [
    "CacheClearError",
    "CacheRebuildError",
    "ImportStepError",
    "IntegrityReport",
    "KindStatistics",
    "ResyncError",
    "ResyncInProgressError",
    "ResyncOrchestrator",
    "ResyncState",
    "SyncResult",
    "SyncStatus",
]
