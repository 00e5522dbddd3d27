"""Forward-only row streaming for uploaded spreadsheets.

``.xlsx`` workbooks are read with openpyxl in read-only mode, which parses the
sheet XML lazily, so memory stays flat regardless of row count. Legacy
``.xls`` files have no streaming reader and go through pandas/xlrd.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from typing import IO, Any

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils import column_index_from_string

from bulkops.exceptions import BulkProcessingExcelParsingException

logger = logging.getLogger(__name__)

HEADER_ROWS = 1
_COPY_CHUNK = 1024 * 1024


@dataclass
class SheetRow:
    row_number: int
    values: dict[str, Any]


def spool_to_tempfile(body: Any) -> IO[bytes]:
    """Copy a streaming body to an anonymous temp file and rewind it."""
    handle = tempfile.TemporaryFile()
    try:
        shutil.copyfileobj(body, handle, _COPY_CHUNK)
    except Exception:
        handle.close()
        raise
    handle.seek(0)
    return handle


def _is_empty(raw: tuple[Any, ...]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in raw)


def _map_row(
    raw: tuple[Any, ...],
    indexes: dict[str, int],
    trim_values: bool,
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, idx in indexes.items():
        value = raw[idx] if idx < len(raw) else None
        if trim_values and isinstance(value, str):
            value = value.strip()
            if value == "":
                value = None
        values[field] = value
    return values


def _iter_xlsx(fileobj: IO[bytes], sheet_name: str | None) -> Iterator[tuple[Any, ...]]:
    try:
        workbook = load_workbook(fileobj, read_only=True, data_only=True)
    except Exception as exc:
        raise BulkProcessingExcelParsingException(f"Could not open workbook: {exc}") from exc
    try:
        if sheet_name:
            if sheet_name not in workbook.sheetnames:
                raise BulkProcessingExcelParsingException(f"Sheet '{sheet_name}' not found")
            sheet = workbook[sheet_name]
        else:
            sheet = workbook.worksheets[0]
        yield from sheet.iter_rows(values_only=True)
    finally:
        workbook.close()


def _iter_xls(fileobj: IO[bytes], sheet_name: str | None) -> Iterator[tuple[Any, ...]]:
    try:
        frame = pd.read_excel(fileobj, sheet_name=sheet_name or 0, header=None, engine="xlrd", dtype=object)
    except Exception as exc:
        raise BulkProcessingExcelParsingException(f"Could not read spreadsheet: {exc}") from exc
    frame = frame.astype(object).where(pd.notna(frame), None)
    for row in frame.itertuples(index=False, name=None):
        yield tuple(row)


def stream_rows(
    fileobj: IO[bytes],
    filename: str,
    column_mapping: dict[str, str],
    start_row: int = 1,
    skip_empty_rows: bool = True,
    trim_values: bool = True,
    sheet_name: str | None = None,
) -> Iterator[SheetRow]:
    """
    Yield data rows lazily, keyed by field name.

    ``column_mapping`` maps field names to column letters. ``start_row`` is the
    1-based index of the first data row to yield (the header is never yielded).
    ``row_number`` on each row is the spreadsheet row as a user sees it.
    """
    indexes = {field: column_index_from_string(letter) - 1 for field, letter in column_mapping.items()}
    lower = filename.lower()
    if lower.endswith(".xlsx"):
        raw_rows = _iter_xlsx(fileobj, sheet_name)
    elif lower.endswith(".xls"):
        raw_rows = _iter_xls(fileobj, sheet_name)
    else:
        raise BulkProcessingExcelParsingException(f"Unsupported spreadsheet format: {filename}")

    first_data_row = HEADER_ROWS + max(1, start_row)
    try:
        for row_number, raw in enumerate(raw_rows, start=1):
            if row_number < first_data_row:
                continue
            if skip_empty_rows and _is_empty(raw):
                continue
            yield SheetRow(row_number=row_number, values=_map_row(raw, indexes, trim_values))
    except BulkProcessingExcelParsingException:
        raise
    except (KeyError, ValueError, OSError) as exc:
        raise BulkProcessingExcelParsingException(f"Malformed spreadsheet content: {exc}") from exc
    finally:
        raw_rows.close()
