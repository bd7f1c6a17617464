"""
Format Writers - Incremental Export File Generation

One small writer per ExportFormat. Each writer is opened once with the column
layout, receives rows batch by batch, and is closed to flush the file.
No rows are accumulated in memory beyond the current batch.
"""

import csv
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Alignment, Font

from export_engine.exports.value_objects import ExportFormat
from export_engine.utils.logger import get_logger

logger = get_logger(__name__)

EXCEL_MAX_ROWS_PER_SHEET = 1_048_575  # one row reserved for the header


class FormatWriter(Protocol):
    def open(self, fieldnames: Sequence[str], labels: Optional[Dict[str, str]] = None) -> None:
        ...

    def write_batch(self, rows: List[Dict[str, Any]]) -> None:
        ...

    def close(self) -> None:
        ...


def serialize_value(value: Any) -> str:
    """
    Serialize value for text export (handle dates, decimals, None, etc.)
    """
    if value is None:
        return ""
    elif isinstance(value, bool):
        return "Yes" if value else "No"
    elif isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (list, dict)):
        return json.dumps(value)
    else:
        return str(value)


class CsvExportWriter:
    """
    Streams rows to a CSV file with csv.DictWriter.

    Written as UTF-8 with BOM so spreadsheet tools detect the encoding.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._file = None
        self._writer = None
        self._fieldnames: List[str] = []
        self.rows_written = 0

    def open(self, fieldnames: Sequence[str], labels: Optional[Dict[str, str]] = None) -> None:
        self._fieldnames = list(fieldnames)
        self._file = open(self.file_path, "w", newline="", encoding="utf-8-sig")
        self._writer = csv.DictWriter(self._file, fieldnames=self._fieldnames, extrasaction="ignore")
        labels = labels or {}
        self._writer.writerow({name: labels.get(name, name) for name in self._fieldnames})

    def write_batch(self, rows: List[Dict[str, Any]]) -> None:
        for row in rows:
            self._writer.writerow({k: serialize_value(row.get(k)) for k in self._fieldnames})
        self.rows_written += len(rows)
        self._file.flush()

    def close(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.flush()
            self._file.close()
        logger.debug("CSV export file closed", path=self.file_path, rows=self.rows_written)


class ExcelExportWriter:
    """
    Streams rows to an .xlsx file using openpyxl write-only mode.

    Rolls over to a new worksheet when the Excel row limit is reached.
    """

    def __init__(self, file_path: str, sheet_title: str = "Export",
                 max_rows_per_sheet: int = EXCEL_MAX_ROWS_PER_SHEET):
        self.file_path = file_path
        self.sheet_title = sheet_title
        self.max_rows_per_sheet = max_rows_per_sheet
        self._workbook: Optional[Workbook] = None
        self._sheet = None
        self._sheet_number = 0
        self._sheet_rows = 0
        self._fieldnames: List[str] = []
        self._header: List[str] = []
        self.rows_written = 0

    def open(self, fieldnames: Sequence[str], labels: Optional[Dict[str, str]] = None) -> None:
        self._fieldnames = list(fieldnames)
        labels = labels or {}
        self._header = [labels.get(name, name) for name in self._fieldnames]
        self._workbook = Workbook(write_only=True)
        self._new_sheet()

    def _new_sheet(self) -> None:
        self._sheet_number += 1
        title = self.sheet_title if self._sheet_number == 1 else f"{self.sheet_title} {self._sheet_number}"
        self._sheet = self._workbook.create_sheet(title=title[:31])

        header_font = Font(bold=True)
        header_alignment = Alignment(horizontal="center", vertical="center")
        header_cells = []
        for label in self._header:
            cell = WriteOnlyCell(self._sheet, value=label)
            cell.font = header_font
            cell.alignment = header_alignment
            header_cells.append(cell)
        self._sheet.append(header_cells)
        self._sheet_rows = 0

    @staticmethod
    def _cell_value(value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "Yes" if value else "No"
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (int, float, datetime, date, str)):
            return value
        return serialize_value(value)

    def write_batch(self, rows: List[Dict[str, Any]]) -> None:
        for row in rows:
            if self._sheet_rows >= self.max_rows_per_sheet:
                self._new_sheet()
            self._sheet.append([self._cell_value(row.get(k)) for k in self._fieldnames])
            self._sheet_rows += 1
        self.rows_written += len(rows)

    def close(self) -> None:
        if self._workbook is not None:
            self._workbook.save(self.file_path)
            self._workbook = None
        logger.debug("Excel export file closed", path=self.file_path, rows=self.rows_written)


WRITERS = {
    ExportFormat.CSV: CsvExportWriter,
    ExportFormat.EXCEL: ExcelExportWriter,
}


def get_writer(export_format: ExportFormat, file_path: str) -> FormatWriter:
    """Select the writer implementation for ``export_format``."""
    return WRITERS[export_format](file_path)
