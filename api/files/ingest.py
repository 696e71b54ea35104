"""
Normalization of uploaded CSV data

Data rows are reordered by their numeric second column, highest first,
before the file is encrypted. Rows with equal values keep their original
order. A single unparseable value rejects the whole upload.
"""
import csv
import math
import re
from collections.abc import Iterable

from core.errors import FormatError

DEFAULT_CONTENT_TYPES = ("text/csv", "application/csv")
SORT_COLUMN = 1

# Plain decimal with optional exponent, as written by CSV producers
NUMBER_PATTERN = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)


def _fields(line: str, line_number: int) -> list[str]:
    try:
        return next(csv.reader([line]), [])
    except csv.Error as exc:
        raise FormatError(f"Line {line_number}: {exc}") from exc


def _sort_value(line: str, line_number: int) -> float:
    fields = _fields(line, line_number)
    if len(fields) <= SORT_COLUMN:
        raise FormatError(
            f"Line {line_number}: expected at least {SORT_COLUMN + 1} columns"
        )
    raw = fields[SORT_COLUMN].strip()
    if not NUMBER_PATTERN.fullmatch(raw):
        raise FormatError(f"Line {line_number}: '{raw}' is not a number")
    value = float(raw)
    if not math.isfinite(value):
        raise FormatError(f"Line {line_number}: '{raw}' is not a finite number")
    return value


def check_content_type(
    content_type: str | None,
    allowed_content_types: Iterable[str] = DEFAULT_CONTENT_TYPES,
) -> None:
    """Reject a declared content type that is not a CSV type"""
    if content_type is None:
        return
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type not in {allowed.lower() for allowed in allowed_content_types}:
        raise FormatError(f"Only CSV files are allowed, got '{content_type}'")


def normalize(
    raw: bytes,
    content_type: str | None = None,
    allowed_content_types: Iterable[str] = DEFAULT_CONTENT_TYPES,
) -> bytes:
    """
    Produce the canonical form of an uploaded CSV file

    Args:
        raw: Uploaded bytes, UTF-8 encoded
        content_type: Declared content type, checked when given
        allowed_content_types: Content types accepted as CSV

    Returns:
        Header followed by data rows sorted by the second column in
        non-increasing order, using the input's line terminator

    Raises:
        FormatError: If the input is not a CSV with a header and at least
            one data row whose second column is a finite number
    """
    check_content_type(content_type, allowed_content_types)

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("File is not valid UTF-8 text") from exc

    terminator = "\r\n" if "\r\n" in text else "\n"
    bare = text.replace("\r\n", "")
    if "\r" in bare or (terminator == "\r\n" and "\n" in bare):
        raise FormatError("File mixes line endings; use either LF or CRLF throughout")
    trailing_terminator = text.endswith(terminator)

    lines = text.split(terminator)
    while lines and not lines[-1].strip():
        lines.pop()

    if not lines:
        raise FormatError("File is empty")

    header, rows = lines[0], lines[1:]
    if len(_fields(header, 1)) <= SORT_COLUMN:
        raise FormatError(
            f"Header must have at least {SORT_COLUMN + 1} columns"
        )
    if not rows:
        raise FormatError("File has a header but no data rows")

    keyed = [
        (_sort_value(row, line_number), row)
        for line_number, row in enumerate(rows, start=2)
    ]
    # list.sort is stable, including with reverse=True
    keyed.sort(key=lambda item: item[0], reverse=True)

    output = terminator.join([header] + [row for _, row in keyed])
    if trailing_terminator:
        output += terminator
    return output.encode("utf-8")
