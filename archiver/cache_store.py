"""Local cache stores mirrored from the spreadsheet.

Every store call returns a :class:`CacheResult` instead of raising, so callers
decide per call site whether a failure degrades or aborts.  Keys are namespaced
with :data:`CACHE_NAMESPACE`::

    amazon_archiver_hidden_order_{orderId}_{hiddenType}
    amazon_archiver_action_log_{orderId}_{uuid}
    amazon_archiver_user_settings_{username}
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from archiver.records import (
    ActionLogRecord,
    ArchiverError,
    HiddenOrderRecord,
    UserSettingsRecord,
)

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "amazon_archiver_"
HIDDEN_ORDER_PREFIX = "hidden_order_"
ACTION_LOG_PREFIX = "action_log_"
USER_SETTINGS_PREFIX = "user_settings_"


class CacheErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    READ_FAILED = "read_failed"
    WRITE_FAILED = "write_failed"
    CORRUPT = "corrupt"


class CacheStoreError(ArchiverError):
    """Raised by :meth:`CacheResult.unwrap` for a failed cache call."""

    def __init__(self, kind: CacheErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True, slots=True)
class CacheResult:
    ok: bool
    value: Any = None
    error: Optional[CacheErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "CacheResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: CacheErrorKind, message: str) -> "CacheResult":
        return cls(ok=False, error=kind, message=message)

    def unwrap(self) -> Any:
        if not self.ok:
            raise CacheStoreError(self.error or CacheErrorKind.UNAVAILABLE, self.message)
        return self.value


KeyArg = Union[str, Sequence[str]]


def _as_keys(keys: KeyArg) -> List[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class CacheStore:
    """Base class for cache stores.

    Subclasses provide the raw key/value primitives (``get``, ``set``,
    ``remove``, ``list_all_keys`` and ``entries``); the typed accessors for
    the three record kinds are built on top of them here.
    """

    def __init__(self, namespace: str = CACHE_NAMESPACE) -> None:
        self.namespace = namespace
        self._last_stamp = 0

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------
    async def get(self, key: str) -> CacheResult:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> CacheResult:
        raise NotImplementedError

    async def remove(self, keys: KeyArg) -> CacheResult:
        raise NotImplementedError

    async def list_all_keys(self) -> CacheResult:
        raise NotImplementedError

    async def entries(self, prefix: str) -> CacheResult:
        """Return ``[(key, value), ...]`` for every key starting with ``prefix``."""

        raise NotImplementedError

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    def make_key(self, suffix: str) -> str:
        return f"{self.namespace}{suffix}"

    def hidden_order_key(self, record: HiddenOrderRecord) -> str:
        return self.make_key(f"{HIDDEN_ORDER_PREFIX}{record.order_id}_{record.hidden_type}")

    def _next_stamp(self) -> int:
        # Strictly increasing, even when the clock does not advance between calls.
        self._last_stamp = max(time.time_ns(), self._last_stamp + 1)
        return self._last_stamp

    def action_log_key(self, record: ActionLogRecord) -> str:
        """Keys of one order sort in the order the entries were stored."""

        stamp = self._next_stamp()
        return self.make_key(f"{ACTION_LOG_PREFIX}{record.order_id}_{stamp:020d}_{uuid.uuid4().hex[:8]}")

    def user_settings_key(self, record: UserSettingsRecord) -> str:
        return self.make_key(f"{USER_SETTINGS_PREFIX}{record.username}")

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------
    async def get_all_hidden_orders(self) -> CacheResult:
        return await self._load_records(HIDDEN_ORDER_PREFIX, HiddenOrderRecord)

    async def get_all_action_log(self) -> CacheResult:
        """Audit entries in chronological order.

        Entries are sorted by their ISO ``timestamp``; ties keep the order in
        which they were stored for the same order.
        """

        result = await self._load_records(ACTION_LOG_PREFIX, ActionLogRecord)
        if not result.ok:
            return result
        return CacheResult.success(sorted(result.value, key=lambda record: record.timestamp or ""))

    async def get_all_user_settings(self) -> CacheResult:
        return await self._load_records(USER_SETTINGS_PREFIX, UserSettingsRecord)

    async def store_hidden_order(self, record: HiddenOrderRecord) -> CacheResult:
        return await self.set(self.hidden_order_key(record), record.to_dict())

    async def store_action_log(self, record: ActionLogRecord) -> CacheResult:
        return await self.set(self.action_log_key(record), record.to_dict())

    async def store_user_settings(self, record: UserSettingsRecord) -> CacheResult:
        return await self.set(self.user_settings_key(record), record.to_dict())

    async def _load_records(self, prefix: str, record_type: type) -> CacheResult:
        result = await self.entries(self.make_key(prefix))
        if not result.ok:
            return result
        records = []
        for key, value in result.value:
            if not value:
                continue
            try:
                records.append(record_type.from_dict(value))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                return CacheResult.failure(
                    CacheErrorKind.CORRUPT, f"Cache entry {key} is not a valid record: {exc}"
                )
        return CacheResult.success(records)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class MemoryCacheStore(CacheStore):
    """Dictionary backed store.

    ``fail_on`` names primitives (``get``, ``set``, ``remove``,
    ``list_all_keys``, ``entries``) that should report a failure; it may be
    changed between calls.
    """

    def __init__(
        self,
        namespace: str = CACHE_NAMESPACE,
        *,
        initial: Optional[Dict[str, Any]] = None,
        fail_on: Iterable[str] = (),
    ) -> None:
        super().__init__(namespace)
        self.data: Dict[str, Any] = dict(initial or {})
        self.fail_on: Set[str] = set(fail_on)
        self.writes = 0

    def _fault(self, operation: str, kind: CacheErrorKind) -> Optional[CacheResult]:
        if operation in self.fail_on:
            return CacheResult.failure(kind, f"Cache {operation} failed")
        return None

    async def get(self, key: str) -> CacheResult:
        fault = self._fault("get", CacheErrorKind.READ_FAILED)
        return fault or CacheResult.success(self.data.get(key))

    async def set(self, key: str, value: Any) -> CacheResult:
        fault = self._fault("set", CacheErrorKind.WRITE_FAILED)
        if fault:
            return fault
        self.data[key] = value
        self.writes += 1
        return CacheResult.success()

    async def remove(self, keys: KeyArg) -> CacheResult:
        fault = self._fault("remove", CacheErrorKind.WRITE_FAILED)
        if fault:
            return fault
        removed = 0
        for key in _as_keys(keys):
            if self.data.pop(key, None) is not None:
                removed += 1
        self.writes += 1
        return CacheResult.success(removed)

    async def list_all_keys(self) -> CacheResult:
        fault = self._fault("list_all_keys", CacheErrorKind.READ_FAILED)
        return fault or CacheResult.success(list(self.data))

    async def entries(self, prefix: str) -> CacheResult:
        fault = self._fault("entries", CacheErrorKind.READ_FAILED)
        if fault:
            return fault
        return CacheResult.success(
            [(key, value) for key, value in self.data.items() if key.startswith(prefix)]
        )


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------
def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class SqliteCacheStore(CacheStore):
    """Persist cache entries in a single ``cache_entries`` table.

    Values are stored as JSON text.  Each call opens its own connection and
    runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, path: Union[str, Path], namespace: str = CACHE_NAMESPACE) -> None:
        super().__init__(namespace)
        self.path = Path(path)
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        with self._schema_lock:
            if self._schema_ready:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()
            finally:
                conn.close()
            self._schema_ready = True
            logger.debug("Cache schema ready at %s", self.path)

    def get_connection(self) -> sqlite3.Connection:
        self._ensure_schema()
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection()
        try:
            conn.execute("BEGIN")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Blocking helpers, run through asyncio.to_thread.
    def _get_sync(self, key: str) -> Any:
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT value FROM cache_entries WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return json.loads(row["value"]) if row else None

    def _set_sync(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO cache_entries (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, payload, _utc_now_iso()),
            )

    def _remove_sync(self, keys: List[str]) -> int:
        if not keys:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany("DELETE FROM cache_entries WHERE key = ?", [(key,) for key in keys])
            return cursor.rowcount

    def _keys_sync(self) -> List[str]:
        conn = self.get_connection()
        try:
            return [row["key"] for row in conn.execute("SELECT key FROM cache_entries ORDER BY key")]
        finally:
            conn.close()

    def _entries_sync(self, prefix: str) -> List[Tuple[str, Any]]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT key, value FROM cache_entries WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            ).fetchall()
        finally:
            conn.close()
        return [(row["key"], json.loads(row["value"])) for row in rows]

    async def _call(self, kind: CacheErrorKind, func: Any, *args: Any) -> CacheResult:
        try:
            value = await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Cache %s failed: %s", func.__name__.strip("_"), exc)
            return CacheResult.failure(kind, str(exc))
        except (TypeError, ValueError) as exc:
            return CacheResult.failure(CacheErrorKind.CORRUPT, str(exc))
        return CacheResult.success(value)

    async def get(self, key: str) -> CacheResult:
        return await self._call(CacheErrorKind.READ_FAILED, self._get_sync, key)

    async def set(self, key: str, value: Any) -> CacheResult:
        return await self._call(CacheErrorKind.WRITE_FAILED, self._set_sync, key, value)

    async def remove(self, keys: KeyArg) -> CacheResult:
        return await self._call(CacheErrorKind.WRITE_FAILED, self._remove_sync, _as_keys(keys))

    async def list_all_keys(self) -> CacheResult:
        return await self._call(CacheErrorKind.READ_FAILED, self._keys_sync)

    async def entries(self, prefix: str) -> CacheResult:
        return await self._call(CacheErrorKind.READ_FAILED, self._entries_sync, prefix)


__all__ = [
    "ACTION_LOG_PREFIX",
    "CACHE_NAMESPACE",
    "CacheErrorKind",
    "CacheResult",
    "CacheStore",
    "CacheStoreError",
    "HIDDEN_ORDER_PREFIX",
    "MemoryCacheStore",
    "SqliteCacheStore",
    "USER_SETTINGS_PREFIX",
]
