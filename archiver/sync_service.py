"""High level wiring between settings, the spreadsheet and the local cache."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from archiver.cache_store import CacheStore, SqliteCacheStore
from archiver.importer import SheetsImporter
from archiver.offline_queue import OutboxQueue
from archiver.publisher import SheetsPublisher
from archiver.records import SheetKind
from archiver.settings import SyncSettings, save_sync_settings
from archiver.sheets_client import TabularStore, build_client
from archiver.sync import ResyncOrchestrator, SyncResult, SyncStatus
from archiver.transformer import RecordBundle, RowBundle, SheetsTransformer

logger = logging.getLogger(__name__)


class SyncService:
    """Coordinate resync and publish operations for one spreadsheet.

    The spreadsheet client and the SQLite cache are created on first use from
    ``settings`` unless explicit instances are passed in.
    """

    def __init__(
        self,
        settings: SyncSettings,
        *,
        client: Optional[TabularStore] = None,
        cache: Optional[CacheStore] = None,
        outbox: Optional[OutboxQueue] = None,
        settings_path: Optional[Path] = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.settings = settings
        self._client = client
        self._cache = cache
        self._outbox = outbox
        self._settings_path = settings_path
        self._log_callback = log_callback
        self._orchestrator: Optional[ResyncOrchestrator] = None
        self._transformer: Optional[SheetsTransformer] = None
        self._publisher: Optional[SheetsPublisher] = None

    def _log(self, message: str) -> None:
        logger.info(message)
        if self._log_callback:
            self._log_callback(message)

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    @property
    def client(self) -> TabularStore:
        if self._client is None:
            self._client = build_client(self.settings.spreadsheet_id, Path(self.settings.credential_path))
        return self._client

    @property
    def cache(self) -> CacheStore:
        if self._cache is None:
            self._cache = SqliteCacheStore(self.settings.cache_path, self.settings.namespace)
        return self._cache

    @property
    def orchestrator(self) -> ResyncOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = ResyncOrchestrator(self.cache, SheetsImporter())
        return self._orchestrator

    @property
    def transformer(self) -> SheetsTransformer:
        """Shared transformer; its recovery budget is ``settings.max_recovery_attempts``."""

        if self._transformer is None:
            self._transformer = SheetsTransformer(self.settings.max_recovery_attempts)
        return self._transformer

    @property
    def publisher(self) -> SheetsPublisher:
        if self._publisher is None:
            self._publisher = SheetsPublisher(
                self.client,
                self.settings,
                transformer=self.transformer,
                outbox=self._outbox,
            )
        return self._publisher

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def fetch_sheets_data(self) -> Dict[SheetKind, List[List[str]]]:
        """Read the data rows (header excluded) of the three worksheets."""

        tabs = self.settings.tabs
        client = self.client
        fetch_sheets = getattr(client, "fetch_sheets", None)
        if fetch_sheets is not None:
            by_title: Mapping[str, List[List[str]]] = await asyncio.to_thread(
                fetch_sheets, list(tabs.values())
            )
            data = {kind: list(by_title.get(title, [])) for kind, title in tabs.items()}
        else:
            data = {}
            for kind, title in tabs.items():
                rows = await asyncio.to_thread(client.get_rows, title)
                data[kind] = rows[1:]
        self._log(
            "Fetched "
            + ", ".join(f"{len(rows)} {kind.camel_name}" for kind, rows in data.items())
            + " rows"
        )
        return data

    async def resync(self, sheets_data: Optional[Mapping[Any, Any]] = None) -> SyncResult:
        """Rebuild the cache from the spreadsheet and remember when it happened."""

        if sheets_data is None:
            sheets_data = await self.fetch_sheets_data()
        result = await self.orchestrator.perform_resync(sheets_data)
        self.settings.last_sync = self.orchestrator.last_sync_timestamp
        save_sync_settings(self.settings, self._settings_path)
        self._log(f"Resync finished after {len(result.steps)} steps")
        if result.validation is not None and not result.validation.passed:
            self._log("Integrity check failed: " + "; ".join(result.validation.checks))
        return result

    def recover(self, sheets_data: Mapping[Any, Any], errors: Sequence[str] = ()) -> Optional[RecordBundle]:
        """Read ``sheets_data`` leniently after a strict pass reported ``errors``.

        Returns ``None`` once ``settings.max_recovery_attempts`` recoveries were
        made; :meth:`reset_recovery` starts a new budget.
        """

        bundle = self.transformer.attempt_recovery(sheets_data, list(errors))
        if bundle is None:
            self._log("Recovery budget exhausted, rows were not recovered")
        else:
            self._log(
                f"Recovery attempt {bundle.metadata.recovery_attempt} kept "
                f"{len(bundle.hidden_orders)} hidden orders, {len(bundle.action_log)} actions, "
                f"{len(bundle.user_settings)} user settings"
            )
        return bundle

    def reset_recovery(self) -> None:
        self.transformer.clear_state()

    async def publish(self) -> RowBundle:
        bundle = await self.publisher.publish_all(self.cache)
        self._log(f"Published cache to spreadsheet {self.settings.spreadsheet_id}")
        return bundle

    def status(self) -> SyncStatus:
        return self.orchestrator.get_sync_status()


__all__ = ["SyncService"]
