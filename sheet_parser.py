"""Turn uploaded CSV files and spreadsheet workbooks into bulk records."""
from __future__ import annotations

import csv
import datetime
import io
import logging
import math
import re
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence, Union

import pandas as pd

from bulk_types import Record, SheetImportError
from card_fields import FieldValue, default_fields


logger = logging.getLogger(__name__)

ACCEPTED_EXTENSIONS = (".csv", ".xlsx", ".xls")

IDENTIFIER_HEADER_TOKENS = (
    "student_id",
    "studentid",
    "roll",
    "enrollment",
    "employee_id",
    "employeeid",
)
PHOTO_HEADER_TOKENS = ("photo", "image", "picture")

TEMPLATE_EXAMPLE_VALUES = {
    "name": "John Doe",
    "dob": "2010-01-15",
    "phone": "555-1234",
    "bloodGroup": "O+",
    "class": "10-A",
    "address": "123 Main Street",
    "emergencyContact": "555-5678",
}

_SEPARATOR_RE = re.compile(r"[\s_-]+")
_QUOTE_RE = re.compile(r"['\"]")

Source = Union[str, Path, bytes]


class ParseResult(NamedTuple):
    records: List[Record]
    identifier_column: Optional[str]
    photo_column: Optional[str]
    skipped_rows: int


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, float):
        return math.isnan(value)
    return value is pd.NaT


def _cell_text(value: object) -> str:
    if _is_missing(value):
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime.datetime):
        if value.time() == datetime.time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, datetime.date):
        return value.isoformat()
    return str(value).strip()


def check_extension(file_name: str) -> str:
    suffix = Path(file_name).suffix.lower()
    if suffix not in ACCEPTED_EXTENSIONS:
        raise SheetImportError(
            "Please upload a CSV or Excel file ({})".format(", ".join(ACCEPTED_EXTENSIONS))
        )
    return suffix


def _read_bytes(source: Source) -> bytes:
    if isinstance(source, bytes):
        return source
    try:
        return Path(source).read_bytes()
    except OSError as exc:
        logger.error("Could not read %s: %s", source, exc)
        raise SheetImportError(f"Could not read {Path(source).name}") from exc


def _unclosed_quote_line(text: str) -> Optional[int]:
    """Line on which a double quote is opened and never closed, if any."""

    line = 1
    opened_on = None
    for char in text:
        if char == '"':
            opened_on = line if opened_on is None else None
        elif char == "\n":
            line += 1
    return opened_on


def tokenize_csv(text: str) -> List[List[str]]:
    """Split CSV text into trimmed cells, honouring double-quoted fields.

    Text after a closing quote stays in the cell, so ``"Asha Rao" ,R100``
    reads as ``Asha Rao`` and ``R100``. A quote left open at the end of the
    input is an error.
    """

    text = text.strip()
    open_line = _unclosed_quote_line(text)
    if open_line is not None:
        logger.warning("Unterminated quote starting on line %d", open_line)
        raise SheetImportError(f"Malformed quoting on line {open_line}")

    reader = csv.reader(io.StringIO(text), skipinitialspace=True)
    try:
        return [[cell.strip() for cell in row] for row in reader]
    except csv.Error as exc:
        logger.warning("Malformed CSV near line %s: %s", reader.line_num, exc)
        raise SheetImportError(f"Malformed quoting on line {reader.line_num}") from exc


def _read_workbook(data: bytes, file_name: str) -> List[List[str]]:
    try:
        frame = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=object)
    except Exception as exc:
        logger.exception("Failed to read workbook %s", file_name)
        raise SheetImportError("Failed to parse file") from exc
    return [[_cell_text(value) for value in row] for row in frame.itertuples(index=False)]


def read_rows(source: Source, file_name: Optional[str] = None) -> List[List[str]]:
    """Read every row of the first sheet as lists of cell strings."""

    if file_name is None:
        if isinstance(source, bytes):
            raise ValueError("file_name is required when parsing raw bytes")
        file_name = Path(source).name
    suffix = check_extension(file_name)
    data = _read_bytes(source)
    if suffix == ".csv":
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise SheetImportError("CSV files must be UTF-8 encoded") from exc
        return tokenize_csv(text)
    return _read_workbook(data, file_name)


def normalise_header(value: str) -> str:
    return _QUOTE_RE.sub("", str(value or "").strip().lower())


def _compact(value: str) -> str:
    return _SEPARATOR_RE.sub("", value.lower())


def find_field_column(headers: Sequence[str], item: FieldValue) -> int:
    """Index of the first header naming ``item`` by key or label, else -1."""

    key = item.key.lower()
    label = item.label.lower()
    compact_label = _compact(label)
    for index, header in enumerate(headers):
        if header in (key, label):
            return index
        compact = _compact(header)
        if compact == key or compact == compact_label:
            return index
    return -1


def find_identifier_column(headers: Sequence[str]) -> int:
    for index, header in enumerate(headers):
        if header == "id" or any(token in header for token in IDENTIFIER_HEADER_TOKENS):
            return index
    return -1


def find_photo_column(headers: Sequence[str]) -> int:
    for index, header in enumerate(headers):
        if any(token in header for token in PHOTO_HEADER_TOKENS):
            return index
    return -1


def _is_blank_row(row: Sequence[str]) -> bool:
    if not row:
        return True
    if len(row) == 1:
        return not row[0].strip()
    return all(not cell.strip() for cell in row)


def parse_rows(rows: Sequence[Sequence[str]], category: str) -> ParseResult:
    if len(rows) < 2:
        raise SheetImportError("File must have a header row and at least one data row")

    headers = [normalise_header(value) for value in rows[0]]
    template = default_fields(category)
    columns = [find_field_column(headers, item) for item in template]
    id_column = find_identifier_column(headers)
    photo_column = find_photo_column(headers)

    records: List[Record] = []
    skipped = 0
    for row_index in range(1, len(rows)):
        row = [str(cell).strip() for cell in rows[row_index]]
        if _is_blank_row(row):
            skipped += 1
            continue

        fields = []
        for item, column in zip(template, columns):
            value = row[column] if 0 <= column < len(row) else ""
            fields.append(FieldValue(item.key, item.label, value, item.enabled))

        photo = row[photo_column] if 0 <= photo_column < len(row) else ""
        records.append(
            Record(row_index=row_index, fields=fields, profile_photo=photo or None)
        )

    if not records:
        raise SheetImportError("No valid records found in file")

    return ParseResult(
        records=records,
        identifier_column=headers[id_column] if id_column >= 0 else None,
        photo_column=headers[photo_column] if photo_column >= 0 else None,
        skipped_rows=skipped,
    )


def parse_sheet(source: Source, category: str, *, file_name: Optional[str] = None) -> ParseResult:
    """Parse an uploaded data file into records for ``category``."""

    rows = read_rows(source, file_name)
    result = parse_rows(rows, category)
    logger.info(
        "Parsed %d record(s) from %s (%d blank row(s) skipped)",
        len(result.records),
        file_name or Path(source).name,
        result.skipped_rows,
    )
    return result


def template_file_name(category: str) -> str:
    return f"bulk-id-card-template-{category}.csv"


def build_template_csv(category: str) -> str:
    fields = default_fields(category)
    headers = ["Student_ID"] + [item.label for item in fields] + ["Photo_URL"]
    example = ["STU001"] + [TEMPLATE_EXAMPLE_VALUES.get(item.key, "") for item in fields] + [""]

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    writer.writerow(example)
    return buffer.getvalue()


def write_template(category: str, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    destination = output_dir / template_file_name(category)
    destination.write_text(build_template_csv(category), encoding="utf-8")
    return destination
