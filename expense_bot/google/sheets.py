# expense_bot/google/sheets.py
"""
Spreadsheet-backed ledger for Request Records.

The sheet is an append/update store with no transactions and no index:
- append writes one row at the end of the tab's used range,
- update does read-modify-write of a single row addressed by its 1-based row number,
- lookups scan every data row of every known tab (O(rows); this is the scalability ceiling).

Row layout (A..R, 18 columns) must stay in this order for compatibility with existing sheets.
"""

import re
import time
from typing import Any, Callable, List, Optional, Sequence

from expense_bot import monitoring
from expense_bot.config import SheetTarget
from expense_bot.errors import RecordNotFoundError, RowNotFoundError
from expense_bot.formatting import now_in_timezone, plain_amount
from expense_bot.locks import KeyedLocks
from expense_bot.schemas import RecordUpdate, RequestRecord, RequestStatus, parse_status

COLUMNS = (
    "request_id",
    "thread_id",
    "channel_id",
    "applicant_id",
    "applicant_name",
    "title",
    "amount",
    "currency",
    "usage_date",
    "remarks",
    "folder_id",
    "file_name",
    "file_link",
    "file_id",
    "status",
    "row_url",
    "created_at",
    "updated_at",
)
COLUMN_COUNT = len(COLUMNS)
LAST_COLUMN = "R"

COL_REQUEST_ID = COLUMNS.index("request_id")
COL_THREAD_ID = COLUMNS.index("thread_id")
COL_ROW_URL = COLUMNS.index("row_url")
COL_UPDATED_AT = COLUMNS.index("updated_at")

# Columns a partial update may touch, in RecordUpdate field order
UPDATABLE_COLUMNS = ("remarks", "folder_id", "file_name", "file_link", "file_id", "status")

# RAW keeps identifiers (Slack thread timestamps, request ids) byte-exact; USER_ENTERED
# would turn "1726123456.123456" into a number.
VALUE_INPUT_OPTION = "RAW"

_ROW_NUMBER_RE = re.compile(r"!\$?[A-Z]+\$?(\d+)")
_AMOUNT_CELL_RE = re.compile(r"[^0-9.\-]")

Row = List[str]
RowPredicate = Callable[[Row], bool]
StatusResolver = Callable[[RequestStatus], Optional[RequestStatus]]


def a1_range(tab_name: str, cells: str) -> str:
    quoted = tab_name.replace("'", "''")
    return f"'{quoted}'!{cells}"


def build_row_url(target: SheetTarget, row_number: int) -> str:
    base = f"https://docs.google.com/spreadsheets/d/{target.spreadsheet_id}/edit"
    if target.gid:
        return f"{base}#gid={target.gid}&range=A{row_number}"
    return f"{base}#range=A{row_number}"


def extract_row_number(updated_range: Optional[str]) -> Optional[int]:
    """Parse the row from an A1 reference like "'Requests'!A42:R42". None when unparseable."""
    if not updated_range:
        return None
    match = _ROW_NUMBER_RE.search(updated_range)
    if not match:
        return None
    return int(match.group(1))


def pad_row(row: Sequence[Any]) -> Row:
    cells = ["" if v is None else str(v) for v in row[:COLUMN_COUNT]]
    while len(cells) < COLUMN_COUNT:
        cells.append("")
    return cells


def _parse_amount_cell(cell: str) -> float:
    normalized = _AMOUNT_CELL_RE.sub("", cell or "")
    try:
        return float(normalized) if normalized else 0.0
    except ValueError:
        return 0.0


def record_to_row(record: RequestRecord) -> Row:
    """Encode a record into the positional 18-cell row."""
    values = {
        "request_id": record.request_id,
        "thread_id": record.thread_id,
        "channel_id": record.channel_id,
        "applicant_id": record.applicant_id,
        "applicant_name": record.applicant_name,
        "title": record.title,
        "amount": plain_amount(record.amount),
        "currency": record.currency,
        "usage_date": record.usage_date,
        "remarks": record.remarks,
        "folder_id": record.folder_id or "",
        "file_name": record.file_name or "",
        "file_link": record.file_link or "",
        "file_id": record.file_id or "",
        "status": record.status.value,
        "row_url": record.row_url,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }
    return [values[name] for name in COLUMNS]


def row_to_record(row: Sequence[Any], target: SheetTarget, row_number: int,
                  default_currency: str) -> RequestRecord:
    """Decode a positional row. Missing cells become empty/None; status defaults to pending."""
    cells = dict(zip(COLUMNS, pad_row(row)))
    return RequestRecord(
        request_id=cells["request_id"],
        thread_id=cells["thread_id"],
        channel_id=cells["channel_id"],
        applicant_id=cells["applicant_id"],
        applicant_name=cells["applicant_name"],
        title=cells["title"],
        amount=_parse_amount_cell(cells["amount"]),
        currency=cells["currency"] or default_currency,
        usage_date=cells["usage_date"],
        remarks=cells["remarks"],
        folder_id=cells["folder_id"],
        file_name=cells["file_name"],
        file_link=cells["file_link"],
        file_id=cells["file_id"],
        status=parse_status(cells["status"]),
        row_url=cells["row_url"] or build_row_url(target, row_number),
        spreadsheet_id=target.spreadsheet_id,
        tab_name=target.tab_name,
        row_number=row_number,
        created_at=cells["created_at"],
        updated_at=cells["updated_at"],
    )


class LedgerStore:
    """
    Request ledger on top of a Sheets v4 discovery client (`build("sheets", "v4", ...)`).

    Reads are retried `read_retries` times by googleapiclient on transient failures;
    writes (append/update) are executed once and any failure is reported to the caller.
    """

    def __init__(self, service, targets: Sequence[SheetTarget], timezone: str,
                 default_currency: str, read_retries: int = 2,
                 locks: Optional[KeyedLocks] = None):
        if not targets:
            raise ValueError("LedgerStore needs at least one sheet target")
        self._service = service
        self.targets = list(targets)
        self.timezone = timezone
        self.default_currency = default_currency
        self.read_retries = read_retries
        self._row_locks = locks or KeyedLocks()

    # ------------------------------------------------------------------
    # remote call plumbing
    # ------------------------------------------------------------------
    def _values(self):
        return self._service.spreadsheets().values()

    def _execute(self, operation: str, request, retries: int = 0) -> Any:
        start = time.time()
        try:
            result = request.execute(num_retries=retries)
        except Exception:
            monitoring.observe_ledger_call(start, operation, "error")
            raise
        monitoring.observe_ledger_call(start, operation, "success")
        return result or {}

    def _read_rows(self, target: SheetTarget, cells: str) -> List[Row]:
        request = self._values().get(
            spreadsheetId=target.spreadsheet_id,
            range=a1_range(target.tab_name, cells),
        )
        data = self._execute("get", request, retries=self.read_retries)
        return data.get("values", []) or []

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def append(self, record: RequestRecord, target: SheetTarget) -> RequestRecord:
        """
        Append `record` as a new row of `target`. Returns the record as stored, with
        row_number parsed from the API response (None if it could not be parsed) and
        a row deep link when the row number is known.
        """
        now = now_in_timezone(self.timezone)
        stored = record.model_copy(update={
            "spreadsheet_id": target.spreadsheet_id,
            "tab_name": target.tab_name,
            "row_number": None,
            "row_url": "",
            "created_at": record.created_at or now,
            "updated_at": record.updated_at or now,
        })
        request = self._values().append(
            spreadsheetId=target.spreadsheet_id,
            range=a1_range(target.tab_name, f"A1:{LAST_COLUMN}1"),
            valueInputOption=VALUE_INPUT_OPTION,
            insertDataOption="INSERT_ROWS",
            body={"values": [record_to_row(stored)]},
        )
        data = self._execute("append", request)
        row_number = extract_row_number((data.get("updates") or {}).get("updatedRange"))
        if row_number is None:
            monitoring.logger.warning(
                "Could not parse appended row number",
                extra={"request_id": record.request_id, "response": data},
            )
            return stored
        return stored.model_copy(update={
            "row_number": row_number,
            "row_url": build_row_url(target, row_number),
        })

    def update(self, target: SheetTarget, row_number: Optional[int], changes: RecordUpdate,
               resolve_status: Optional[StatusResolver] = None) -> RequestRecord:
        """
        Read-modify-write one row. Only fields set on `changes` are written; the row link
        is written only if the cell is empty; updated_at is always refreshed.

        `resolve_status`, when given, is called with the status currently stored in the row
        and returns the status to write (None keeps the stored one). It runs under the row
        lock, so it always sees the freshest row this process can observe.

        Returns the record as written. Raises RowNotFoundError if the row is empty.
        """
        if row_number is None:
            raise RecordNotFoundError("Cannot update a record whose row number is unknown")

        cells = f"A{row_number}:{LAST_COLUMN}{row_number}"
        with self._row_locks.hold((target.spreadsheet_id, target.tab_name, row_number)):
            rows = self._read_rows(target, cells)
            if not rows or not any(rows[0]):
                raise RowNotFoundError(target.spreadsheet_id, target.tab_name, row_number)

            row = pad_row(rows[0])
            fields = changes.model_dump(exclude_none=True)
            for name in UPDATABLE_COLUMNS:
                if name in fields:
                    value = fields[name]
                    row[COLUMNS.index(name)] = value.value if isinstance(value, RequestStatus) else value

            if resolve_status is not None:
                current = parse_status(row[COLUMNS.index("status")])
                resolved = resolve_status(current)
                if resolved is not None:
                    row[COLUMNS.index("status")] = resolved.value

            if not row[COL_ROW_URL]:
                row[COL_ROW_URL] = build_row_url(target, row_number)
            row[COL_UPDATED_AT] = changes.updated_at or now_in_timezone(self.timezone)

            request = self._values().update(
                spreadsheetId=target.spreadsheet_id,
                range=a1_range(target.tab_name, cells),
                valueInputOption=VALUE_INPUT_OPTION,
                body={"values": [row]},
            )
            self._execute("update", request)

        return row_to_record(row, target, row_number, self.default_currency)

    def find_first(self, predicate: RowPredicate) -> Optional[RequestRecord]:
        """Linear scan of every known target; first data row (header excluded) matching wins."""
        for target in self.targets:
            rows = self._read_rows(target, f"A:{LAST_COLUMN}")
            for index, raw in enumerate(rows[1:], start=2):
                if not raw:
                    continue
                row = pad_row(raw)
                if predicate(row):
                    return row_to_record(row, target, index, self.default_currency)
        return None

    def find_by_thread(self, thread_id: str) -> Optional[RequestRecord]:
        if not thread_id:
            return None
        return self.find_first(lambda row: row[COL_THREAD_ID] == thread_id)

    def find_by_request_id(self, request_id: str) -> Optional[RequestRecord]:
        if not request_id:
            return None
        return self.find_first(lambda row: row[COL_REQUEST_ID] == request_id)
