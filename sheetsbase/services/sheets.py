"""Google Sheets transport using the Google API Python client.

Each worksheet is a table: row 1 holds the headers, rows 2.. hold records.
Records are addressed by sheet row number (``index in fetch_all() + 2``).

API Reference: https://developers.google.com/workspace/sheets/api/reference/rest
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from google.oauth2 import service_account
from googleapiclient.discovery import build

from sheetsbase.core.config import Settings
from sheetsbase.core.errors import StoreError
from sheetsbase.core.logging import get_logger, log_store_call
from sheetsbase.models.query import Record

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

# Widest column read when the header width is not known yet
MAX_COLUMN = "ZZ"

# Sheet row of the first record (row 1 is the header row)
FIRST_RECORD_ROW = 2

T = TypeVar("T")


class TableTransport(Protocol):
    """Row-level access to a backing table store."""

    async def fetch_all(self, table: str) -> List[Record]: ...

    async def get_headers(self, table: str) -> List[str]: ...

    async def append_record(self, table: str, record: Record) -> Dict[str, Any]: ...

    async def update_record(self, table: str, row_number: int, record: Record) -> Dict[str, Any]: ...

    async def clear_record(self, table: str, row_number: int) -> Dict[str, Any]: ...


def column_letter(index: int) -> str:
    """1-based column index to A1 letters (1 -> A, 27 -> AA)."""
    if index < 1:
        raise ValueError(f"Column index must be >= 1, got {index}")
    letters = ""
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def rows_to_records(rows: List[List[Any]]) -> List[Record]:
    """Turn a values grid into records keyed by the header row.

    Missing trailing cells and empty cells become None.
    """
    if not rows:
        return []
    headers = [str(h) for h in rows[0]]
    records = []
    for row in rows[1:]:
        record: Record = {}
        for index, header in enumerate(headers):
            cell = row[index] if index < len(row) else None
            record[header] = None if cell is None or cell == "" else str(cell)
        records.append(record)
    return records


def record_to_row(headers: List[str], record: Record) -> List[Any]:
    """Lay out a record in header order; None is written as an empty cell."""
    return ["" if record.get(h) is None else record.get(h) for h in headers]


class SheetsTransport:
    """Reads and mutates sheet rows of one spreadsheet.

    The discovery client is built on first use, so the application starts
    without credentials; every call then fails with StoreError until
    SPREADSHEET_ID and GOOGLE_SERVICE_ACCOUNT_FILE are configured.
    """

    def __init__(self, settings: Settings, service: Any = None):
        self.settings = settings
        self.spreadsheet_id = settings.spreadsheet_id
        self._service = service

    def _build_service(self):
        if not self.settings.sheets_configured:
            raise StoreError(
                "Spreadsheet not configured. Set SPREADSHEET_ID and GOOGLE_SERVICE_ACCOUNT_FILE.",
                operation="connect",
            )
        creds = service_account.Credentials.from_service_account_file(
            self.settings.google_service_account_file,
            scopes=SCOPES,
        )
        service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        logger.info("Sheets service initialized", spreadsheet_id=self.spreadsheet_id)
        return service

    async def _run(self, table: str, operation: str, call: Callable[[Any], T]) -> T:
        """Run a blocking API call in the default executor.

        Any failure (credentials, HTTP, malformed response) is re-raised as
        StoreError with the table and operation attached.
        """
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            if self._service is None:
                self._service = await loop.run_in_executor(None, self._build_service)
            service = self._service
            result = await loop.run_in_executor(None, lambda: call(service))
        except StoreError as e:
            e.table = e.table or table
            logger.error("Sheets call failed", table=table, operation=operation, error=e.message)
            raise
        except Exception as e:
            logger.error("Sheets call failed", table=table, operation=operation, error=str(e))
            raise StoreError(
                f"Sheets {operation} failed for '{table}': {e}",
                table=table,
                operation=operation,
            ) from e
        log_store_call(logger, table, operation, start_time, time.time())
        return result

    def _values(self, service):
        return service.spreadsheets().values()

    async def fetch_all(self, table: str) -> List[Record]:
        """Read every record of ``table``. An empty sheet yields []."""

        def read_values(service):
            return self._values(service).get(
                spreadsheetId=self.spreadsheet_id,
                range=f"{table}!A:{MAX_COLUMN}",
                valueRenderOption=self.settings.sheets_value_render_option,
                majorDimension="ROWS",
            ).execute()

        result = await self._run(table, "read", read_values)
        rows = result.get("values", [])
        if not isinstance(rows, list):
            raise StoreError(f"Malformed values for '{table}'", table=table, operation="read")

        records = rows_to_records(rows)
        if not records:
            logger.info("Sheet is empty", table=table)
        else:
            logger.debug("Records read", table=table, rows=len(records))
        return records

    async def get_headers(self, table: str) -> List[str]:
        def read_headers(service):
            return self._values(service).get(
                spreadsheetId=self.spreadsheet_id,
                range=f"{table}!1:1",
            ).execute()

        result = await self._run(table, "headers", read_headers)
        values = result.get("values") or [[]]
        return [str(h) for h in values[0]]

    async def _headers_for_write(self, table: str, operation: str) -> List[str]:
        headers = await self.get_headers(table)
        if not headers:
            raise StoreError(
                f"Sheet '{table}' has no header row",
                table=table,
                operation=operation,
            )
        return headers

    def _row_range(self, table: str, headers: List[str], row_number: int) -> str:
        return f"{table}!A{row_number}:{column_letter(len(headers))}{row_number}"

    async def append_record(self, table: str, record: Record) -> Dict[str, Any]:
        """Append one record after the last row."""
        headers = await self._headers_for_write(table, "append")
        dropped = [k for k in record if k not in headers]
        if dropped:
            logger.debug("Fields not in sheet headers dropped", table=table, fields=dropped)

        body = {"values": [record_to_row(headers, record)]}

        def append_values(service):
            return self._values(service).append(
                spreadsheetId=self.spreadsheet_id,
                range=f"{table}!A:{column_letter(len(headers))}",
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body=body,
            ).execute()

        result = await self._run(table, "append", append_values)
        updates = result.get("updates", {})
        logger.info("Row appended", table=table, updated_range=updates.get("updatedRange"))
        return result

    async def update_record(self, table: str, row_number: int, record: Record) -> Dict[str, Any]:
        """Overwrite the sheet row ``row_number`` with ``record``."""
        headers = await self._headers_for_write(table, "update")
        body = {"values": [record_to_row(headers, record)]}

        def update_values(service):
            return self._values(service).update(
                spreadsheetId=self.spreadsheet_id,
                range=self._row_range(table, headers, row_number),
                valueInputOption="RAW",
                body=body,
            ).execute()

        result = await self._run(table, "update", update_values)
        logger.info("Row updated", table=table, row=row_number)
        return result

    async def clear_record(self, table: str, row_number: int) -> Dict[str, Any]:
        """Blank the sheet row ``row_number``; other rows keep their positions."""
        headers = await self._headers_for_write(table, "clear")
        body = {"values": [["" for _ in headers]]}

        def clear_values(service):
            return self._values(service).update(
                spreadsheetId=self.spreadsheet_id,
                range=self._row_range(table, headers, row_number),
                valueInputOption="RAW",
                body=body,
            ).execute()

        result = await self._run(table, "clear", clear_values)
        logger.info("Row cleared", table=table, row=row_number)
        return result


def row_number_for(index: int) -> int:
    """Sheet row of the record at ``index`` in fetch_all() order."""
    return index + FIRST_RECORD_ROW


def is_blank(record: Optional[Record]) -> bool:
    """True for cleared rows (every cell empty)."""
    return not record or all(v is None for v in record.values())
