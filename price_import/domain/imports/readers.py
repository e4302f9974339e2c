"""
Chunked row readers for delimited text and Excel files.

Both readers yield chunks of ``(row_number, {header: raw string})`` pairs.
Row numbers count the header as row 1 (blank lines are not counted), so
error messages point at what a user sees in a spreadsheet.

Rows with more cells than the header are truncated and shorter rows are
padded with empty strings.
"""
from __future__ import annotations

import io
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import openpyxl
import pandas as pd

from price_import.domain.imports.dialect import DialectDescriptor
from price_import.domain.imports.errors import EmptyFileError, UnsupportedFileError
from price_import.domain.imports.validators import file_extension

logger = logging.getLogger(__name__)

RowChunk = List[Tuple[int, Dict[str, str]]]


def _clean_headers(columns) -> List[str]:
    return [str(column).strip() for column in columns]


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        if value.is_integer():
            return str(int(value))
    elif not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value)


def _record(headers: Sequence[str], values: Sequence) -> Dict[str, str]:
    return {
        header: _cell_text(values[index]) if index < len(values) else ""
        for index, header in enumerate(headers)
    }


def _records(frame: pd.DataFrame, first_row_number: int) -> RowChunk:
    headers = list(frame.columns)
    return [
        (first_row_number + offset, _record(headers, values))
        for offset, values in enumerate(frame.itertuples(index=False, name=None))
    ]


class CsvRowReader:
    """
    Streams a delimited file in chunks with pandas, using a detected dialect.

    The python parser engine is used with ``index_col=False`` and a fixed
    ``usecols`` so trailing delimiters never turn the first column into an
    index, and ragged rows are cut to the header width instead of aborting
    the read.

    Args:
        content: Raw file bytes
        dialect: Dialect from the analyzer (possibly with caller overrides)
        header_row: Index of the header among non-blank lines
        data_start_row: Index of the first data line among non-blank lines
            (defaults to the line after the header)
    """

    def __init__(
        self,
        content: bytes,
        dialect: DialectDescriptor,
        header_row: int = 0,
        data_start_row: Optional[int] = None,
    ):
        self.content = content
        self.dialect = dialect
        self.header_row = max(0, header_row)
        self.data_start_row = self.header_row + 1 if data_start_row is None else max(data_start_row, self.header_row + 1)
        self.headers = self._read_headers()

    @property
    def estimated_rows(self) -> int:
        return max(0, self.dialect.estimated_lines - self.data_start_row)

    def _read_csv(self, **kwargs):
        return pd.read_csv(
            io.BytesIO(self.content),
            engine="python",
            sep=self.dialect.delimiter,
            quotechar=self.dialect.quote_char,
            doublequote=True,
            escapechar=None if self.dialect.doublequote else self.dialect.escape_char,
            encoding=self.dialect.encoding,
            encoding_errors="replace",
            header=self.header_row,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            **kwargs,
        )

    def _read_headers(self) -> List[str]:
        try:
            frame = self._read_csv(nrows=0)
        except pd.errors.EmptyDataError:
            raise EmptyFileError()
        return _clean_headers(frame.columns)

    def iter_chunks(self, batch_size: int) -> Iterator[RowChunk]:
        to_skip = self.data_start_row - self.header_row - 1
        row_number = self.header_row + 2
        try:
            reader = self._read_csv(chunksize=batch_size, usecols=list(range(len(self.headers))))
        except pd.errors.EmptyDataError:
            return

        with reader:
            for frame in reader:
                frame.columns = self.headers
                if to_skip:
                    dropped = min(to_skip, len(frame))
                    frame = frame.iloc[dropped:]
                    to_skip -= dropped
                    row_number += dropped
                if frame.empty:
                    continue
                chunk = _records(frame, row_number)
                row_number += len(frame)
                yield chunk


class ExcelRowReader:
    """
    Reads the first sheet of an xls/xlsx workbook with every cell as text.

    xlsx workbooks are streamed with openpyxl in read-only mode, so memory
    stays flat however many rows the sheet has. Legacy xls files go through
    pandas and xlrd, which always load the whole sheet.
    """

    def __init__(
        self,
        content: bytes,
        file_name: str,
        header_row: int = 0,
        data_start_row: Optional[int] = None,
    ):
        self.content = content
        self.file_name = file_name
        self.legacy = file_extension(file_name) == "xls"
        self.header_row = max(0, header_row)
        self.data_start_row = self.header_row + 1 if data_start_row is None else max(data_start_row, self.header_row + 1)
        self._sheet_rows = 0

        self.headers = None
        seen = 0
        rows = self._iter_rows()
        try:
            for index, values in enumerate(rows):
                seen = index + 1
                if index == self.header_row:
                    headers = _clean_headers(_cell_text(value) for value in values)
                    # Sheets report their widest row, so the header may end in empty cells.
                    while headers and not headers[-1]:
                        headers.pop()
                    self.headers = headers
                    break
        finally:
            rows.close()
        if seen == 0:
            raise EmptyFileError(file_name)
        if self.headers is None:
            raise EmptyFileError(file_name, f"Header row {self.header_row} is beyond the end of the sheet")
        logger.info("Opened Excel sheet with %d columns and about %d data rows", len(self.headers), self.estimated_rows)

    @property
    def estimated_rows(self) -> int:
        return max(0, self._sheet_rows - self.data_start_row)

    def _iter_rows(self) -> Iterator[Sequence]:
        """Yield the non-blank rows of the first sheet as raw cell values."""
        if self.legacy:
            try:
                frame = pd.read_excel(io.BytesIO(self.content), sheet_name=0, header=None, dtype=str, engine="xlrd")
            except Exception as e:
                raise UnsupportedFileError(f"Could not read Excel file: {e}")
            self._sheet_rows = len(frame)
            rows = frame.itertuples(index=False, name=None)
            workbook = None
        else:
            try:
                workbook = openpyxl.load_workbook(io.BytesIO(self.content), read_only=True, data_only=True)
            except Exception as e:
                raise UnsupportedFileError(f"Could not read Excel file: {e}")
            worksheet = workbook.worksheets[0]
            self._sheet_rows = worksheet.max_row or 0
            rows = worksheet.iter_rows(values_only=True)

        try:
            for values in rows:
                if any(_cell_text(value).strip() for value in values):
                    yield values
        finally:
            if workbook is not None:
                workbook.close()

    def iter_chunks(self, batch_size: int) -> Iterator[RowChunk]:
        chunk: RowChunk = []
        for index, values in enumerate(self._iter_rows()):
            if index < self.data_start_row:
                continue
            chunk.append((index + 1, _record(self.headers, values)))
            if len(chunk) >= batch_size:
                yield chunk
                chunk = []
        if chunk:
            yield chunk
