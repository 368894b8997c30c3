from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Iterable, Union

import openpyxl
import xlrd

from excel_analytics.exceptions import ParseError

logger = logging.getLogger(__name__)

CellValue = Union[None, bool, int, float, str]

XLSX_SIGNATURE = b"PK\x03\x04"
XLS_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

EMPTY_FILE_MESSAGE = "Excel file is empty"


@dataclass
class ParsedSheet:
    """Header row plus data rows of the first worksheet."""

    headers: list[str]
    rows: list[list[CellValue]] = field(default_factory=list)

    @property
    def column_count(self) -> int:
        return len(self.headers)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def records(self) -> list[dict[str, CellValue]]:
        return to_records(self.headers, self.rows)


def detect_format(content: bytes) -> str:
    """Return 'xlsx', 'xls' or 'unknown' from the leading bytes."""
    if content.startswith(XLSX_SIGNATURE):
        return "xlsx"
    if content.startswith(XLS_SIGNATURE):
        return "xls"
    return "unknown"


def normalize_cell(value: Any) -> CellValue:
    """Convert a raw reader value into a JSON scalar."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, int):
        return value
    text = str(value)
    if not text.strip():
        return None
    return text


def normalize_headers(raw_headers: Iterable[CellValue]) -> list[str]:
    """Name every column, replacing blank or repeated names with Column_<n>."""
    headers: list[str] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_headers, start=1):
        name = str(raw).strip() if raw is not None else ""
        if not name or name in seen:
            name = f"Column_{index}"
            suffix = 2
            while name in seen:
                name = f"Column_{index}_{suffix}"
                suffix += 1
        seen.add(name)
        headers.append(name)
    return headers


def to_records(headers: list[str], rows: list[list[CellValue]]) -> list[dict[str, CellValue]]:
    """Zip each row with the header list; missing cells map to None."""
    records = []
    for row in rows:
        records.append({
            name: row[index] if index < len(row) else None
            for index, name in enumerate(headers)
        })
    return records


def _read_xlsx(content: bytes) -> list[list[CellValue]] | None:
    workbook = openpyxl.load_workbook(io.BytesIO(content), data_only=True)
    try:
        if not workbook.worksheets:
            return None
        sheet = workbook.worksheets[0]
        return [
            [normalize_cell(v) for v in row]
            for row in sheet.iter_rows(values_only=True)
        ]
    finally:
        workbook.close()


def _read_xls(content: bytes) -> list[list[CellValue]] | None:
    book = xlrd.open_workbook(file_contents=content)
    if book.nsheets == 0:
        return None
    sheet = book.sheet_by_index(0)
    table = []
    for r in range(sheet.nrows):
        row = []
        for cell in sheet.row(r):
            if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
                row.append(None)
            elif cell.ctype == xlrd.XL_CELL_DATE:
                row.append(normalize_cell(xlrd.xldate.xldate_as_datetime(cell.value, book.datemode)))
            elif cell.ctype == xlrd.XL_CELL_BOOLEAN:
                row.append(bool(cell.value))
            else:
                row.append(normalize_cell(cell.value))
        table.append(row)
    return table


def parse_spreadsheet(content: bytes) -> ParsedSheet:
    """Parse the first worksheet of an Excel workbook.

    Raises ParseError for unreadable content, a workbook without sheets,
    or a first sheet without any populated cell.
    """
    file_format = detect_format(content)
    try:
        if file_format == "xlsx":
            table = _read_xlsx(content)
        elif file_format == "xls":
            table = _read_xls(content)
        else:
            raise ParseError("Failed to process Excel file: unsupported or corrupt spreadsheet")
    except ParseError:
        raise
    except Exception as e:
        logger.warning("Spreadsheet reader failed (%s): %s", file_format, e)
        raise ParseError(f"Failed to process Excel file: {e}") from e

    if not table or all(cell is None for row in table for cell in row):
        raise ParseError(EMPTY_FILE_MESSAGE)

    # Readers pad every row to the sheet's widest row; the header row's own
    # trailing blanks do not name columns.
    header_row = list(table[0])
    while header_row and header_row[-1] is None:
        header_row.pop()
    if not header_row:
        header_row = list(table[0])
    headers = normalize_headers(header_row)
    width = len(headers)
    rows = [
        (row + [None] * (width - len(row)))[:width]
        for row in table[1:]
    ]
    return ParsedSheet(headers=headers, rows=rows)
