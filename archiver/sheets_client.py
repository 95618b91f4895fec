"""Google Sheets access for the archive spreadsheet.

The sync pipeline only needs a handful of tabular operations.  They are
described by :class:`TabularStore` so the pipeline can run against any object
providing them; :class:`GoogleSheetsClient` implements them on top of the
Sheets v4 REST API.

Worksheet titles are always quoted for A1 notation, so titles containing
spaces or apostrophes never produce "Unable to parse range" errors.  All
public entry points raise subclasses of :class:`SheetsClientError`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableSequence, Protocol, Sequence, runtime_checkable

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from archiver.google_credentials import CredentialsFileInvalidError, ensure_service_account_file

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
DEFAULT_COLUMNS = 26


class SheetsClientError(RuntimeError):
    """Any failure talking to the archive spreadsheet."""


class SheetsCredentialsError(SheetsClientError):
    """The service account key is missing, unreadable or rejected by google-auth."""


class SheetsApiResponseError(SheetsClientError):
    """The Sheets API answered with an HTTP error."""


@runtime_checkable
class TabularStore(Protocol):
    def get_rows(self, range_id: str) -> List[List[str]]:
        ...

    def put_rows(self, range_id: str, rows: Sequence[Sequence[Any]]) -> None:
        ...

    def append_row(self, sheet_name: str, row: Sequence[Any]) -> None:
        ...

    def clear_range(self, range_id: str) -> None:
        ...

    def create_sheet(self, sheet_name: str) -> None:
        ...


# ---------------------------------------------------------------------------
# A1 helpers
# ---------------------------------------------------------------------------
def _normalise_title(title: str) -> str:
    """Quote ``title`` for A1 notation, doubling embedded apostrophes."""

    safe = (title or "").strip()
    if not safe:
        raise SheetsClientError("Worksheet title must not be empty")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def _column_letter(index: int) -> str:
    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def a1_full_column_range(title: str, *, columns: int = DEFAULT_COLUMNS) -> str:
    """``'Title'!A1:<last column>`` covering every row, header included."""

    return f"{_normalise_title(title)}!A1:{_column_letter(max(1, columns))}"


def a1_data_range(title: str, *, columns: int = DEFAULT_COLUMNS) -> str:
    """Return an A1 range spanning every row below the header row."""

    return f"{_normalise_title(title)}!A2:{_column_letter(max(1, columns))}"


def resolve_range(range_id: str, *, columns: int = DEFAULT_COLUMNS) -> str:
    """Accept either a bare worksheet title or an explicit A1 range."""

    if "!" in range_id:
        return range_id
    return a1_full_column_range(range_id, columns=columns)


def _stringify(rows: Sequence[Sequence[Any]]) -> List[List[str]]:
    return [["" if cell is None else str(cell) for cell in row] for row in rows]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
def _build_service(path: Path):
    try:
        payload = ensure_service_account_file(path)
    except CredentialsFileInvalidError as exc:
        raise SheetsCredentialsError(str(exc)) from exc

    try:
        credentials = service_account.Credentials.from_service_account_info(payload, scopes=SCOPES)
    except (ValueError, KeyError) as exc:
        raise SheetsCredentialsError(str(exc)) from exc

    try:
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)
    except HttpError as exc:
        raise SheetsApiResponseError(str(exc)) from exc


class GoogleSheetsClient:
    """Concrete :class:`TabularStore` that speaks to Google Sheets."""

    def __init__(self, spreadsheet_id: str, credential_path: Path | None = None, *, service=None) -> None:
        if service is None and credential_path is None:
            raise SheetsCredentialsError("A credential file is required to reach Google Sheets")
        self._spreadsheet_id = spreadsheet_id
        self._credential_path = credential_path
        self._service = service or _build_service(Path(credential_path))  # type: ignore[arg-type]

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    def _execute(self, request: Any) -> Mapping[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as exc:
            raise SheetsApiResponseError(str(exc)) from exc

    def _values(self):
        return self._service.spreadsheets().values()

    # ------------------------------------------------------------------
    # TabularStore
    # ------------------------------------------------------------------
    def get_rows(self, range_id: str) -> List[List[str]]:
        response = self._execute(
            self._values().get(
                spreadsheetId=self._spreadsheet_id,
                range=resolve_range(range_id),
                majorDimension="ROWS",
            )
        )
        return _stringify(response.get("values", []))

    def put_rows(self, range_id: str, rows: Sequence[Sequence[Any]]) -> None:
        values = _stringify(rows)
        width = max((len(row) for row in values), default=1)
        self._execute(
            self._values().update(
                spreadsheetId=self._spreadsheet_id,
                range=resolve_range(range_id, columns=width),
                valueInputOption="RAW",
                body={"values": values, "majorDimension": "ROWS"},
            )
        )
        logger.debug("Wrote %s rows to %s", len(values), range_id)

    def append_row(self, sheet_name: str, row: Sequence[Any]) -> None:
        values = _stringify([row])
        self._execute(
            self._values().append(
                spreadsheetId=self._spreadsheet_id,
                range=a1_full_column_range(sheet_name, columns=len(values[0]) or 1),
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": values},
            )
        )

    def clear_range(self, range_id: str) -> None:
        self._execute(
            self._values().clear(
                spreadsheetId=self._spreadsheet_id,
                range=resolve_range(range_id),
                body={},
            )
        )

    def create_sheet(self, sheet_name: str) -> None:
        body = {"requests": [{"addSheet": {"properties": {"title": sheet_name}}}]}
        self._execute(
            self._service.spreadsheets().batchUpdate(spreadsheetId=self._spreadsheet_id, body=body)
        )
        logger.info("Created worksheet %s", sheet_name)

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------
    def sheet_titles(self) -> List[str]:
        response = self._execute(
            self._service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                fields="sheets.properties.title",
            )
        )
        return [
            sheet.get("properties", {}).get("title", "")
            for sheet in response.get("sheets", [])
        ]

    def ensure_sheet(self, sheet_name: str) -> bool:
        """Create ``sheet_name`` if it is missing.  Returns ``True`` when created."""

        if sheet_name in self.sheet_titles():
            return False
        self.create_sheet(sheet_name)
        return True

    def fetch_sheets(self, titles: Sequence[str], *, columns: int = DEFAULT_COLUMNS) -> Dict[str, List[List[str]]]:
        """Return the data rows of each worksheet in ``titles`` in one ``batchGet``.

        The first row of every worksheet is treated as its header and dropped.
        """

        if not titles:
            return {}
        response = self._execute(
            self._values().batchGet(
                spreadsheetId=self._spreadsheet_id,
                ranges=[a1_full_column_range(title, columns=columns) for title in titles],
                majorDimension="ROWS",
            )
        )
        value_ranges: Sequence[Mapping[str, Any]] = response.get("valueRanges", [])
        results: Dict[str, List[List[str]]] = {title: [] for title in titles}
        for title, payload in zip(titles, value_ranges):
            values = _stringify(payload.get("values", []))
            results[title] = values[1:]
        return results


def build_client(spreadsheet_id: str, credential_path: Path) -> GoogleSheetsClient:
    """Factory helper used by the sync service to construct a client."""

    if not spreadsheet_id:
        raise SheetsClientError("A spreadsheet id must be configured before syncing")
    return GoogleSheetsClient(spreadsheet_id=spreadsheet_id, credential_path=Path(credential_path))


__all__ = [
    "DEFAULT_COLUMNS",
    "GoogleSheetsClient",
    "SheetsApiResponseError",
    "SheetsClientError",
    "SheetsCredentialsError",
    "TabularStore",
    "a1_data_range",
    "a1_full_column_range",
    "build_client",
    "resolve_range",
]
