"""
Rent roll and T-12 operating statement extraction from Excel workbooks.

Rent roll: header detection, unit rows with optional charge-detail rows and a
"Charge Total" row per unit, occupancy from status, summary statistics.

T-12: month header row (names, abbreviations or date cells), total column,
line items keyed by label with GL codes stripped, summary fields classified by
the line-item taxonomy, monthly NOI / revenue / expense series.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from openpyxl.workbook.workbook import Workbook

from models import RentRollExtraction, RentRollSummary, RentRollUnit, T12Extraction
from services.tabular_parser import (
    SheetVocabulary,
    StructuralParseError,
    cell_text,
    find_header_row,
    find_month_header_row,
    find_total_column,
    is_blank_row,
    select_sheet,
    sheet_rows,
)
from services.taxonomy import DEFAULT_TAXONOMY, TaxonomyMatcher, clean_label
from services.value_normalizer import clean_numeric, clean_text, parse_date

logger = logging.getLogger(__name__)

RENT_ROLL_VOCABULARY = SheetVocabulary(
    sheet_keywords=("rent roll", "rentroll", "roster", "unit"),
    header_keywords=(
        "unit", "sqft", "sq ft", "sf", "status", "rent", "resident", "tenant",
        "lease", "move in", "market", "type", "bldg",
    ),
)

T12_VOCABULARY = SheetVocabulary(
    sheet_keywords=("t12", "t-12", "operating", "financials", "income", "statement"),
)

CHARGE_DETAIL_NAMES = frozenset({
    "rent", "amenity rent", "internet", "parking", "parking fee", "package concierge",
    "valet trash", "trash", "pet rent", "garage", "storage", "utility", "water", "sewer",
    "cable", "admin fee",
})
VACANT_STATUSES = ("vacant", "unrented", "model", "employee")
NON_REVENUE_STATUSES = ("model", "employee")
_STOP_WORDS = ("total", "summary", "grand total", "property")
_SHEET_DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%Y-%m-%d", "%m-%d-%Y", "%B %d, %Y")
_EMBEDDED_DATE_RE = re.compile(r"\b(\d{1,2}/\d{1,2}/\d{2,4})\b")


# ---- Filename dates ----


def parse_date_from_filename(filename: str) -> Optional[date]:
    """
    Pull a report date out of a filename.

    "1160_Hammond_RR_1_28_26.xlsx" -> 2026-01-28, "RentRoll_2026-01-28.xlsx" -> 2026-01-28,
    "RR_01282026.xlsx" -> 2026-01-28, "T12_FY_2025.xlsx" -> 2025-12-31.
    """
    if not filename:
        return None
    patterns = (
        (r"(\d{4})[-_](\d{1,2})[-_](\d{1,2})", lambda m: date(int(m[1]), int(m[2]), int(m[3]))),
        (r"(\d{1,2})[-_](\d{1,2})[-_](\d{2})(?!\d)", lambda m: date(2000 + int(m[3]), int(m[1]), int(m[2]))),
        (r"(\d{2})(\d{2})(\d{4})", lambda m: date(int(m[3]), int(m[1]), int(m[2]))),
        (r"(\d{2})(\d{2})(\d{2})", lambda m: date(2000 + int(m[3]), int(m[1]), int(m[2]))),
        (r"FY[_\s]?(\d{4})", lambda m: date(int(m[1]), 12, 31)),
        (r"(?<!\d)(20\d{2})(?!\d)", lambda m: date(int(m[1]), 12, 31)),
    )
    for pattern, build in patterns:
        match = re.search(pattern, filename, re.I)
        if not match:
            continue
        try:
            return build(match)
        except ValueError:
            continue
    return None


# ---- Sheet metadata ----


def _document_date(rows: Sequence[Sequence[Any]]) -> Optional[date]:
    for row in rows[:5]:
        for value in row:
            if isinstance(value, (datetime, date)):
                return value.date() if isinstance(value, datetime) else value
            text = cell_text(value)
            if not text:
                continue
            parsed = parse_date(text, _SHEET_DATE_FORMATS)
            if parsed is None:
                embedded = _EMBEDDED_DATE_RE.search(text)
                if embedded:
                    parsed = parse_date(embedded.group(1), _SHEET_DATE_FORMATS)
            if parsed is not None:
                return parsed
    return None


def _property_name(rows: Sequence[Sequence[Any]]) -> Optional[str]:
    for row in rows[:5]:
        for value in row:
            if isinstance(value, (datetime, date, int, float)):
                continue
            text = cell_text(value)
            if not (5 < len(text) < 100):
                continue
            low = text.lower()
            if re.match(r"^\d+[/\-]\d+", text) or low.startswith(("rent roll", "as of", "page", "t12", "t-12")):
                continue
            if low in ("unit", "status", "resident"):
                continue
            return text
    return None


# ---- Rent roll ----


def map_rent_roll_columns(headers: Sequence[str]) -> Dict[str, int]:
    """Canonical rent-roll field -> 0-based column index."""
    col_map: Dict[str, int] = {}
    for idx, header in enumerate(headers):
        h = (header or "").lower().strip()
        if not h:
            continue
        if any(kw in h for kw in ("unit", "apt", "apartment")) and "type" not in h:
            col_map.setdefault("unit", idx)
        if "type" in h and "property" not in h:
            col_map["unit_type"] = idx
        if any(kw in h for kw in ("sqft", "sq ft", "square")) or re.search(r"\bsf\b", h):
            col_map["sqft"] = idx
        if "status" in h:
            col_map["status"] = idx
        if any(kw in h for kw in ("resident", "tenant", "name")):
            col_map.setdefault("resident", idx)
        if "move in" in h or "move-in" in h:
            col_map["move_in"] = idx
        if "lease" in h:
            if "start" in h or "from" in h:
                col_map["lease_start"] = idx
            elif "end" in h or re.search(r"\bto\b", h) or "expir" in h:
                col_map["lease_end"] = idx
        if "market" in h and "rent" in h:
            col_map["market_rent"] = idx
        elif any(kw in h for kw in ("in place", "in-place", "current rent", "actual rent", "charge", "rent")):
            col_map.setdefault("in_place_rent", idx)
    return col_map


def _value(row: Sequence[Any], col: Optional[int]) -> Any:
    if col is None or col >= len(row):
        return None
    return row[col]


def _unit_from_row(row: Sequence[Any], col_map: Dict[str, int]) -> RentRollUnit:
    status = clean_text(_value(row, col_map.get("status")))
    status_low = (status or "").lower()
    return RentRollUnit(
        unit_number=clean_text(_value(row, col_map.get("unit", 0))),
        unit_type=clean_text(_value(row, col_map.get("unit_type"))),
        sqft=clean_numeric(_value(row, col_map.get("sqft"))),
        status=status,
        is_occupied=not any(kw in status_low for kw in VACANT_STATUSES),
        resident_name=clean_text(_value(row, col_map.get("resident"))),
        move_in_date=parse_date(_value(row, col_map.get("move_in"))),
        lease_start=parse_date(_value(row, col_map.get("lease_start"))),
        lease_end=parse_date(_value(row, col_map.get("lease_end"))),
        market_rent=clean_numeric(_value(row, col_map.get("market_rent"))),
        in_place_rent=clean_numeric(_value(row, col_map.get("in_place_rent"))) or 0.0,
    )


def _finish_unit(unit: RentRollUnit, charges: Dict[str, float]) -> RentRollUnit:
    if charges and unit.in_place_rent == 0:
        unit.in_place_rent = round(sum(charges.values()), 2)
    if charges and not unit.charge_details:
        unit.charge_details = dict(charges)
    return unit


def parse_rent_roll_units(rows: Sequence[Sequence[Any]], header_index: int, col_map: Dict[str, int]) -> List[RentRollUnit]:
    """
    Unit rows after the header. Charge-detail rows below a unit add to its
    charges; a "Charge Total" row sets its in-place rent. Stops at a
    total/summary/property row.
    """
    label_col = col_map.get("unit", 0)
    amount_col = col_map.get("in_place_rent")
    units: List[RentRollUnit] = []
    current: Optional[RentRollUnit] = None
    charges: Dict[str, float] = {}

    for row in rows[header_index + 1:]:
        if is_blank_row(row):
            continue
        label = cell_text(_value(row, label_col))
        if not label:
            continue
        low = label.lower()

        if "charge total" in low or "total charges" in low:
            if current is not None:
                total = clean_numeric(_value(row, amount_col))
                if total:
                    current.in_place_rent = total
                current.charge_details = dict(charges)
                charges = {}
            continue
        if any(kw in low for kw in _STOP_WORDS):
            break
        if low in CHARGE_DETAIL_NAMES:
            amount = clean_numeric(_value(row, amount_col))
            if amount:
                charges[label] = amount
            continue

        if current is not None:
            units.append(_finish_unit(current, charges))
            charges = {}
        current = _unit_from_row(row, col_map)

    if current is not None:
        units.append(_finish_unit(current, charges))
    return units


def summarize_rent_roll(units: Sequence[RentRollUnit]) -> RentRollSummary:
    """
    Model and employee units are not revenue units. Average market rent covers
    all revenue units; average in-place rent covers occupied units only.
    loss_to_lease_pct = (avg_market - avg_in_place) / avg_market x 100.
    """
    revenue = [
        u for u in units
        if u.status and not any(kw in u.status.lower() for kw in NON_REVENUE_STATUSES)
    ]
    total = len(revenue)
    if total == 0:
        return RentRollSummary()
    occupied = sum(1 for u in revenue if u.is_occupied)

    market = [u.market_rent for u in revenue if u.market_rent]
    in_place = [u.in_place_rent for u in revenue if u.is_occupied and u.in_place_rent]
    sqfts = [u.sqft for u in revenue if u.sqft]

    avg_market = sum(market) / len(market) if market else None
    avg_in_place = sum(in_place) / len(in_place) if in_place else None
    avg_sqft = sum(sqfts) / len(sqfts) if sqfts else None
    loss_to_lease = None
    if avg_market and avg_in_place is not None and avg_market > 0:
        loss_to_lease = (avg_market - avg_in_place) / avg_market * 100

    def _r(v: Optional[float]) -> Optional[float]:
        return round(v, 2) if v is not None else None

    return RentRollSummary(
        total_units=total,
        occupied_units=occupied,
        vacant_units=total - occupied,
        physical_occupancy_pct=round(occupied / total * 100, 2),
        avg_market_rent=_r(avg_market),
        avg_in_place_rent=_r(avg_in_place),
        avg_sqft=_r(avg_sqft),
        loss_to_lease_pct=_r(loss_to_lease),
    )


def extract_rent_roll(wb: Workbook, filename: str = "") -> RentRollExtraction:
    """Raises StructuralParseError when no header row is found."""
    ws = select_sheet(wb, RENT_ROLL_VOCABULARY)
    if ws is None:
        raise StructuralParseError("Workbook has no worksheets")
    rows = sheet_rows(ws)
    header_index, headers = find_header_row(rows, RENT_ROLL_VOCABULARY.header_keywords, max_scan=15)
    if header_index < 0:
        raise StructuralParseError("Could not find rent roll header row")

    col_map = map_rent_roll_columns(headers)
    units = parse_rent_roll_units(rows, header_index, col_map)
    warnings: List[str] = []
    if "market_rent" not in col_map:
        warnings.append("No market rent column detected")
    if not units:
        warnings.append("No unit rows found after header")

    document_date = _document_date(rows) or parse_date_from_filename(filename)
    logger.info("[rent_roll] sheet=%r header_row=%d units=%d", ws.title, header_index + 1, len(units))
    return RentRollExtraction(
        document_date=document_date,
        property_name=_property_name(rows[:header_index]),
        units=units,
        summary=summarize_rent_roll(units),
        warnings=warnings,
    )


# ---- T-12 ----


def parse_t12_line_items(
    rows: Sequence[Sequence[Any]],
    header_index: int,
    month_columns: Dict[str, int],
    total_col: Optional[int],
) -> Dict[str, Dict[str, Optional[float]]]:
    """{"Line Item": {"Jan": 123.0, ..., "Total": 1476.0}} for labelled rows carrying any value."""
    items: Dict[str, Dict[str, Optional[float]]] = {}
    for row in rows[header_index + 1:]:
        label = cell_text(row[0] if row else None)
        label = re.sub(r"^\d{5,}[\s\-.:]*", "", label).strip()
        if len(label) < 2:
            continue
        monthly = {}
        for month, col in month_columns.items():
            value = clean_numeric(_value(row, col))
            if value is not None:
                monthly[month] = value
        total = clean_numeric(_value(row, total_col)) if total_col is not None and total_col not in month_columns.values() else None
        if total is None and monthly and len(monthly) == len(month_columns):
            total = round(sum(monthly.values()), 2)
        if monthly or total is not None:
            items[label] = {**monthly, "Total": total}
    return items


_MONTHLY_SERIES = {"noi": "noi", "egi": "revenue", "total_opex": "expenses"}


def extract_t12(
    wb: Workbook,
    filename: str = "",
    matcher: Optional[TaxonomyMatcher] = None,
) -> T12Extraction:
    """Raises StructuralParseError when fewer than 6 month columns are found."""
    matcher = matcher or TaxonomyMatcher(DEFAULT_TAXONOMY)
    ws = select_sheet(wb, T12_VOCABULARY)
    if ws is None:
        raise StructuralParseError("Workbook has no worksheets")
    rows = sheet_rows(ws)
    header = find_month_header_row(rows)
    if header is None:
        raise StructuralParseError("Could not find T-12 month headers (need at least 6 months)")

    total_col = find_total_column(rows[header.row_index], header.month_columns)
    line_items = parse_t12_line_items(rows, header.row_index, header.month_columns, total_col)

    summary: Dict[str, float] = {}
    monthly: Dict[str, Dict[str, float]] = {"noi": {}, "revenue": {}, "expenses": {}}
    unmatched: List[str] = []
    for label, values in line_items.items():
        key = matcher.match(label)
        if key is None:
            if not matcher.is_non_data(clean_label(label)):
                unmatched.append(label)
            continue
        field = matcher.summary_field(key)
        if field and field not in summary and values.get("Total") is not None:
            summary[field] = values["Total"]
        series = _MONTHLY_SERIES.get(key)
        if series and not monthly[series]:
            monthly[series] = {m: v for m, v in values.items() if m != "Total" and v is not None}

    expense_ratio = noi_margin = None
    revenue = summary.get("total_revenue")
    if revenue and revenue > 0:
        expense_ratio = round(summary.get("total_operating_expenses", 0) / revenue * 100, 2)
        noi_margin = round(summary.get("net_operating_income", 0) / revenue * 100, 2)

    warnings: List[str] = []
    fiscal_year = header.fiscal_year
    if fiscal_year is None:
        from_name = parse_date_from_filename(filename)
        if from_name is not None:
            fiscal_year = from_name.year
            warnings.append("Fiscal year taken from filename")
    if "net_operating_income" not in summary:
        warnings.append("No NOI line item matched")

    logger.info(
        "[t12] sheet=%r months=%d line_items=%d matched=%d unmatched=%d",
        ws.title, len(header.month_columns), len(line_items), len(summary), len(unmatched),
    )
    return T12Extraction(
        fiscal_year=fiscal_year,
        property_name=_property_name(rows[: header.row_index]),
        summary=summary,
        monthly=monthly,
        line_items=line_items,
        unmatched_line_items=unmatched,
        expense_ratio_pct=expense_ratio,
        noi_margin_pct=noi_margin,
        warnings=warnings,
    )
