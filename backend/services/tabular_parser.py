"""
Structural parsing of spreadsheets without fixed cell coordinates.

Finds the relevant sheet, the header row (merging a wrapped two-line header when
the row above adds text), and the data region; or, for time-series statements,
the month header row and fiscal year.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Optional, Sequence, Union

import openpyxl
from openpyxl.workbook.workbook import Workbook

from models import RawTabularRecord

logger = logging.getLogger(__name__)

Row = Sequence[Any]

MONTH_ABBRS: tuple[str, ...] = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_MONTH_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|"
    r"sept?(?:ember)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\b\.?",
    re.I,
)
_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_SHORT_YEAR_RE = re.compile(r"[\s\-'/](\d{2})$")
_STOP_ROW_RE = re.compile(r"^\s*(grand\s+total|totals?\b|summary\b)", re.I)


class StructuralParseError(Exception):
    """The workbook could not be parsed into a header + data region."""


@dataclass(frozen=True)
class SheetVocabulary:
    """Keywords describing what a target sheet looks like."""
    sheet_keywords: tuple[str, ...] = ()
    sheet_patterns: tuple[str, ...] = ()
    header_keywords: tuple[str, ...] = ()


@dataclass
class ParsedSheet:
    sheet_name: str
    header_row_index: int
    headers: list[str]
    rows: list[RawTabularRecord] = field(default_factory=list)


@dataclass
class MonthHeader:
    row_index: int
    month_columns: dict[str, int]
    fiscal_year: Optional[int] = None


def open_workbook(source: Union[bytes, str, Path, BinaryIO, Workbook]) -> Workbook:
    """Load a workbook with cached formula values. Raises StructuralParseError if unreadable."""
    if isinstance(source, Workbook):
        return source
    try:
        if isinstance(source, (bytes, bytearray)):
            return openpyxl.load_workbook(BytesIO(source), data_only=True)
        return openpyxl.load_workbook(source, data_only=True)
    except Exception as e:
        raise StructuralParseError(f"Unreadable workbook: {e}") from e


def sheet_rows(ws: Any, max_rows: Optional[int] = None) -> list[tuple]:
    rows: list[tuple] = []
    for i, row in enumerate(ws.iter_rows(values_only=True)):
        if max_rows is not None and i >= max_rows:
            break
        rows.append(tuple(row))
    return rows


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value).strip()


def is_blank_row(row: Row) -> bool:
    return not any(cell_text(v) for v in row)


def populated_row_count(rows: Iterable[Row]) -> int:
    return sum(1 for r in rows if not is_blank_row(r))


def select_sheet(wb: Workbook, vocabulary: SheetVocabulary, scan_rows: int = 500) -> Any:
    """
    Pick the worksheet that best matches the vocabulary.

    Score = 10 per sheet-name keyword hit + 5 per sheet-name pattern hit +
    populated rows in the first `scan_rows`.
    """
    best_sheet = None
    best_score = -1
    for ws in wb.worksheets:
        name = ws.title.lower()
        score = 10 * sum(1 for kw in vocabulary.sheet_keywords if kw in name)
        score += 5 * sum(1 for p in vocabulary.sheet_patterns if re.search(p, name, re.I))
        score += populated_row_count(sheet_rows(ws, scan_rows))
        if score > best_score:
            best_score = score
            best_sheet = ws
    return best_sheet


def _keyword_score(cells: Sequence[str], keywords: Sequence[str]) -> int:
    blob = " ".join(c.lower() for c in cells if c)
    return sum(1 for kw in keywords if kw in blob)


def find_header_row(
    rows: Sequence[Row],
    keywords: Sequence[str],
    max_scan: int = 20,
    min_cells: int = 4,
) -> tuple[int, list[str]]:
    """
    Return (0-based header row index, header strings) or (-1, []) when no row
    in the first `max_scan` scores above zero with at least `min_cells` cells.

    A wrapped two-line header is merged with the row above only when the
    merged cells score higher than the header row alone.
    """
    best_index = -1
    best_headers: list[str] = []
    best_score = 0
    for idx, row in enumerate(rows[:max_scan]):
        cells = [cell_text(v) for v in row]
        if sum(1 for c in cells if c) < min_cells:
            continue
        score = _keyword_score(cells, keywords)
        if score > best_score:
            best_score = score
            best_index = idx
            best_headers = cells
    if best_index < 0:
        return -1, []

    if best_index > 0:
        above = [cell_text(v) for v in rows[best_index - 1]]
        merged = merge_header_rows(above, best_headers)
        if merged is not None and _keyword_score(merged, keywords) > best_score:
            logger.debug("[parser] merged two-line header at row %d", best_index)
            best_headers = merged
    return best_index, best_headers


def merge_header_rows(above: Sequence[str], header: Sequence[str]) -> Optional[list[str]]:
    """
    Merge a wrapped two-line header ("Sale" over "Price" -> "Sale Price").

    Returns None when the row above is a title (fewer than two cells) or adds
    no text the header does not already contain.
    """
    if sum(1 for a in above if a) < 2:
        return None
    merged: list[str] = []
    added = False
    for i, h in enumerate(header):
        a = above[i] if i < len(above) else ""
        if a and not h:
            merged.append(a)
            added = True
        elif a and h and a.lower() not in h.lower():
            merged.append(f"{a} {h}")
            added = True
        else:
            merged.append(h)
    return merged if added else None


def is_stop_row(row: Row) -> bool:
    for v in row:
        text = cell_text(v)
        if text:
            return bool(_STOP_ROW_RE.match(text))
    return False


def extract_records(
    rows: Sequence[Row],
    header_index: int,
    headers: Sequence[str],
    max_rows: int = 2000,
) -> list[RawTabularRecord]:
    """Rows after the header until a total/summary row or the row budget; blank rows skipped."""
    records: list[RawTabularRecord] = []
    for row in rows[header_index + 1: header_index + 1 + max_rows]:
        if is_blank_row(row):
            continue
        if is_stop_row(row):
            break
        record: RawTabularRecord = {}
        for i, h in enumerate(headers):
            if h and i < len(row):
                record[h] = row[i]
        records.append(record)
    return records


def parse_sheet(wb: Workbook, vocabulary: SheetVocabulary, max_rows: int = 2000) -> ParsedSheet:
    ws = select_sheet(wb, vocabulary)
    if ws is None:
        raise StructuralParseError("Workbook has no worksheets")
    rows = sheet_rows(ws, max_rows + 25)
    header_index, headers = find_header_row(rows, vocabulary.header_keywords)
    if header_index < 0:
        raise StructuralParseError(f"No header row found in sheet '{ws.title}'")
    records = extract_records(rows, header_index, headers, max_rows=max_rows)
    logger.info(
        "[parser] sheet=%r header_row=%d columns=%d rows=%d",
        ws.title, header_index + 1, sum(1 for h in headers if h), len(records),
    )
    return ParsedSheet(sheet_name=ws.title, header_row_index=header_index, headers=list(headers), rows=records)


# ---- Month-header (time-series) variant ----


def month_of(value: Any) -> tuple[Optional[str], Optional[int]]:
    """Recognize a month header cell. Returns (month abbreviation, year if the cell carries one)."""
    if isinstance(value, (datetime, date)):
        return MONTH_ABBRS[value.month - 1], value.year
    text = cell_text(value)
    if not text or len(text) > 24:
        return None, None
    m = _MONTH_RE.search(text)
    if not m:
        return None, None
    token = m.group(1)[:3].lower()
    abbr = next(a for a in MONTH_ABBRS if a.lower() == token)
    year: Optional[int] = None
    y = _YEAR_RE.search(text)
    if y:
        year = int(y.group(1))
    else:
        short = _SHORT_YEAR_RE.search(text)
        if short:
            year = 2000 + int(short.group(1))
    return abbr, year


def _year_from_row(row: Row) -> Optional[int]:
    for v in row:
        if isinstance(v, (datetime, date)):
            return v.year
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            if 2000 <= int(v) <= 2100:
                return int(v)
            continue
        text = cell_text(v)
        if text:
            m = _YEAR_RE.search(text)
            if m:
                return int(m.group(1))
    return None


def find_month_header_row(rows: Sequence[Row], max_scan: int = 20, min_months: int = 6) -> Optional[MonthHeader]:
    """
    Locate the row holding month column headers (names, abbreviations or date cells).

    The fiscal year comes from the month cells themselves (year of the last
    month column) or else from the row directly above. Returns None when no
    row in `max_scan` carries at least `min_months` distinct months.
    """
    for idx, row in enumerate(rows[:max_scan]):
        month_columns: dict[str, int] = {}
        years: list[int] = []
        for col, value in enumerate(row):
            abbr, year = month_of(value)
            if abbr is None or abbr in month_columns:
                continue
            month_columns[abbr] = col
            if year is not None:
                years.append(year)
        if len(month_columns) < min_months:
            continue
        fiscal_year = years[-1] if years else None
        if fiscal_year is None and idx > 0:
            fiscal_year = _year_from_row(rows[idx - 1])
        return MonthHeader(row_index=idx, month_columns=month_columns, fiscal_year=fiscal_year)
    return None


def find_total_column(header_row: Row, month_columns: dict[str, int]) -> Optional[int]:
    """Annual total column: a total/annual/year/ytd header, else the last populated column."""
    month_cols = set(month_columns.values())
    for col, value in enumerate(header_row):
        if col in month_cols:
            continue
        text = cell_text(value).lower()
        if text and any(kw in text for kw in ("total", "annual", "year", "ytd")):
            return col
    last = None
    for col, value in enumerate(header_row):
        if cell_text(value):
            last = col
    return last
