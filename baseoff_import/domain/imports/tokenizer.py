"""
Row tokenizers for client spreadsheets.

CSV files are split into lines once and each line is parsed on demand, so a
driver invocation only pays for the slice of rows it actually processes.
Excel workbooks are decoded with pandas/openpyxl (first sheet only) into
lists of strings.
"""
import io
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from .errors import MalformedInputError, UnsupportedFormatError

logger = logging.getLogger(__name__)

CSV_DELIMITERS = (",", ";")
SPREADSHEET_EXTENSIONS = (".xlsx", ".xlsm")

_LINE_BREAK = re.compile(r"\r?\n")


def detect_file_format(file_name: str) -> str:
    """
    Detect the import format from a file name.

    Returns:
        'csv' or 'excel'

    Raises:
        UnsupportedFormatError: for anything else (including legacy .xls)
    """
    lowered = (file_name or "").lower().strip()
    if lowered.endswith(".csv"):
        return "csv"
    if lowered.endswith(SPREADSHEET_EXTENSIONS):
        return "excel"
    raise UnsupportedFormatError(
        f"Unsupported file format for '{file_name}'. Convert the file to CSV or XLSX before importing."
    )


def parse_csv_line(line: str) -> List[str]:
    """
    Split one CSV line on commas or semicolons outside double quotes.

    Quote characters toggle the quoted state and are not kept; every field
    is trimmed.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False

    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char in CSV_DELIMITERS and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)

    fields.append("".join(current).strip())
    return fields


def decode_text(file_content: bytes) -> str:
    """Decode CSV bytes as UTF-8 (BOM tolerated), falling back to Latin-1."""
    try:
        return file_content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("CSV is not valid UTF-8; decoding as Latin-1")
        return file_content.decode("latin-1")


def split_csv_lines(text: str) -> List[str]:
    """Split on LF/CRLF and drop blank lines."""
    return [line for line in _LINE_BREAK.split(text) if line.strip()]


@dataclass
class TokenizedFile:
    """
    Header row plus data rows of a source file.

    ``rows`` holds either already-split rows or raw lines; when
    ``parse_row`` is set it is applied lazily as rows are read.
    """

    headers: List[str]
    rows: Sequence[Any]
    file_format: str
    parse_row: Optional[Callable[[Any], List[str]]] = field(default=None, repr=False)

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def row(self, index: int) -> List[str]:
        return self.materialize(self.rows[index])

    def iter_slice(self, start: int, end: int) -> Iterator[Tuple[int, Any]]:
        """
        Yield ``(index, raw_row)`` for data rows in ``[start, end)``.

        Use :meth:`materialize` to turn a raw row into cells; keeping the two
        steps apart lets callers treat a parse failure as a row error.
        """
        end = min(end, self.total_rows)
        for index in range(max(start, 0), end):
            yield index, self.rows[index]

    def materialize(self, raw: Any) -> List[str]:
        return self.parse_row(raw) if self.parse_row else raw


def tokenize_csv(file_content: bytes) -> TokenizedFile:
    lines = split_csv_lines(decode_text(file_content))

    if len(lines) < 2:
        raise MalformedInputError("File is empty or has no data rows (a header and at least one row are required)")

    headers = parse_csv_line(lines[0])
    logger.info("Tokenized CSV: %d data rows, %d header columns", len(lines) - 1, len(headers))
    return TokenizedFile(headers=headers, rows=lines[1:], file_format="csv", parse_row=parse_csv_line)


def _cell_to_text(value: Any) -> str:
    """Stringify one spreadsheet cell; empty cells become ''."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.hour == 0 and value.minute == 0 and value.second == 0:
            return value.strftime("%Y-%m-%d")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def tokenize_excel(file_content: bytes) -> TokenizedFile:
    """Decode the first sheet of an XLSX workbook into string rows."""
    try:
        df = pd.read_excel(
            io.BytesIO(file_content),
            sheet_name=0,
            header=None,
            dtype=object,
            engine="openpyxl",
        )
    except Exception as e:
        raise MalformedInputError(f"Could not read Excel file: {str(e)}")

    rows: List[List[str]] = []
    for values in df.itertuples(index=False, name=None):
        cells = [_cell_to_text(value) for value in values]
        if any(cells):
            rows.append(cells)

    if len(rows) < 2:
        raise MalformedInputError("File is empty or has no data rows (a header and at least one row are required)")

    headers = rows[0]
    # Trailing empty header cells come from the used range, not real columns.
    while headers and not headers[-1]:
        headers = headers[:-1]

    logger.info("Tokenized workbook: %d data rows, %d header columns", len(rows) - 1, len(headers))
    return TokenizedFile(headers=headers, rows=rows[1:], file_format="excel")


def tokenize(
    file_content: bytes,
    file_format: str,
    *,
    max_spreadsheet_bytes: Optional[int] = None,
) -> TokenizedFile:
    """
    Tokenize file bytes of a declared format.

    Raises:
        UnsupportedFormatError: unknown format, or a workbook above ``max_spreadsheet_bytes``
        MalformedInputError: fewer than two non-blank rows
    """
    if file_format == "csv":
        return tokenize_csv(file_content)

    if file_format == "excel":
        if max_spreadsheet_bytes is not None and len(file_content) > max_spreadsheet_bytes:
            size_mb = len(file_content) / (1024 * 1024)
            raise UnsupportedFormatError(
                f"Workbook is too large to import directly ({size_mb:.1f} MB). Convert it to CSV before importing."
            )
        return tokenize_excel(file_content)

    raise UnsupportedFormatError(f"Unsupported file format '{file_format}'")
