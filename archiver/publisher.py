"""Push cache contents back to the spreadsheet."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from archiver.cache_store import CacheStore
from archiver.offline_queue import OutboxEntry, OutboxQueue
from archiver.records import SHEET_HEADERS, ActionLogRecord, Record, SheetKind
from archiver.settings import SyncSettings
from archiver.sheets_client import SheetsClientError, TabularStore
from archiver.transformer import RowBundle, SheetsTransformer

logger = logging.getLogger(__name__)


class SheetsPublisher:
    """Write records to the spreadsheet.

    Spreadsheet calls are blocking and run in worker threads.  When an
    ``outbox`` is configured, audit rows that cannot be appended are queued and
    replayed later by :meth:`drain_outbox`.
    """

    def __init__(
        self,
        client: TabularStore,
        settings: SyncSettings,
        *,
        transformer: Optional[SheetsTransformer] = None,
        outbox: Optional[OutboxQueue] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.transformer = transformer or SheetsTransformer(settings.max_recovery_attempts)
        self.outbox = outbox

    async def publish_all(self, cache: CacheStore) -> RowBundle:
        """Replace every worksheet with a header row plus the cached records."""

        records: Dict[SheetKind, List[Record]] = {
            SheetKind.HIDDEN_ORDERS: (await cache.get_all_hidden_orders()).unwrap(),
            SheetKind.ACTION_LOG: (await cache.get_all_action_log()).unwrap(),
            SheetKind.USER_SETTINGS: (await cache.get_all_user_settings()).unwrap(),
        }
        bundle = self.transformer.transform_to_external(records)

        for kind in SheetKind:
            title = self.settings.tab_for(kind)
            rows = [list(SHEET_HEADERS[kind])] + bundle.get(kind)
            await asyncio.to_thread(self.client.clear_range, title)
            await asyncio.to_thread(self.client.put_rows, title, rows)
            logger.info("Published %s %s rows to %s", len(rows) - 1, kind.camel_name, title)
        return bundle

    async def append_action(self, record: ActionLogRecord) -> bool:
        """Append one audit row.  Returns ``False`` if it was queued instead."""

        result = self.transformer.transform_action_log_to_external([record])
        if result.errors:
            raise ValueError("; ".join(result.errors))
        sheet = self.settings.tab_for(SheetKind.ACTION_LOG)
        row = result.data[0]
        try:
            await asyncio.to_thread(self.client.append_row, sheet, row)
        except SheetsClientError as exc:
            if self.outbox is None:
                raise
            logger.warning("Queueing action for order %s: %s", record.order_id, exc)
            self.outbox.enqueue(sheet, row)
            return False
        return True

    async def drain_outbox(self) -> int:
        if self.outbox is None:
            return 0
        sent = await asyncio.to_thread(
            self.outbox.replay, self._send_entry, retry_on=(SheetsClientError,)
        )
        if sent:
            logger.info("Replayed %s queued rows", sent)
        return sent

    def _send_entry(self, entry: OutboxEntry) -> None:
        self.client.append_row(entry.sheet, list(entry.row))


__all__ = ["SheetsPublisher"]
