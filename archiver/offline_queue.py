"""Outbox for audit rows that could not be appended to the spreadsheet.

Rows are kept one JSON object per line so a crash mid-write loses at most the
line being written.  Replay is strictly first-in first-out: it stops at the
first row the spreadsheet still refuses, and that row and everything queued
after it stay on disk in their original order.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Type

from archiver import app_paths
from archiver.records import to_iso_instant, utc_now

logger = logging.getLogger(__name__)

OUTBOX_FILENAME = "outbox.jsonl"


@dataclass(frozen=True, slots=True)
class OutboxEntry:
    sheet: str
    row: Tuple[str, ...]
    queued_at: str = ""

    def to_line(self) -> str:
        payload = asdict(self)
        payload["row"] = list(self.row)
        return json.dumps(payload, ensure_ascii=False)

    @classmethod
    def from_line(cls, line: str) -> Optional["OutboxEntry"]:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("row"), list):
            return None
        sheet = payload.get("sheet")
        if not isinstance(sheet, str) or not sheet:
            return None
        return cls(
            sheet=sheet,
            row=tuple("" if cell is None else str(cell) for cell in payload["row"]),
            queued_at=str(payload.get("queued_at") or ""),
        )


class OutboxQueue:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else app_paths.data_path(OUTBOX_FILENAME)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def enqueue(self, sheet: str, row: Sequence[object]) -> OutboxEntry:
        entry = OutboxEntry(
            sheet=sheet,
            row=tuple("" if cell is None else str(cell) for cell in row),
            queued_at=to_iso_instant(utc_now()),
        )
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(entry.to_line() + "\n")
        logger.info("Queued %s row for later replay (%s pending)", sheet, len(self))
        return entry

    def entries(self) -> List[OutboxEntry]:
        with self._lock:
            if not self.path.exists():
                return []
            lines = self.path.read_text(encoding="utf-8").splitlines()

        entries: List[OutboxEntry] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            entry = OutboxEntry.from_line(line)
            if entry is None:
                logger.warning("Skipping unreadable outbox line %s in %s", number, self.path)
                continue
            entries.append(entry)
        return entries

    def __len__(self) -> int:
        return len(self.entries())

    def _store(self, entries: Sequence[OutboxEntry]) -> None:
        with self._lock:
            if not entries:
                self.path.unlink(missing_ok=True)
                return
            self.path.write_text("".join(entry.to_line() + "\n" for entry in entries), encoding="utf-8")

    def replay(
        self,
        send: Callable[[OutboxEntry], None],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> int:
        """Send queued rows oldest first and return how many went through."""

        queued = self.entries()
        for position, entry in enumerate(queued):
            try:
                send(entry)
            except retry_on as exc:
                logger.warning(
                    "Outbox replay stopped at row %s of %s: %s", position + 1, len(queued), exc
                )
                self._store(queued[position:])
                return position
        self._store([])
        return len(queued)


__all__ = ["OUTBOX_FILENAME", "OutboxEntry", "OutboxQueue"]
