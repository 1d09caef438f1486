"""Tests for header detection, two-line header merge, stop rows and month headers."""
from datetime import datetime

import openpyxl
import pytest

from services.tabular_parser import (
    SheetVocabulary,
    StructuralParseError,
    extract_records,
    find_header_row,
    find_month_header_row,
    find_total_column,
    is_stop_row,
    merge_header_rows,
    month_of,
    open_workbook,
    parse_sheet,
    select_sheet,
)

COMP_KEYWORDS = ("property name", "sale price", "cap rate", "year built", "units", "buyer")


# ---- Header row ----

def test_header_found_below_title_rows():
    rows = [
        ("Austin Sales Comps Q1", None, None, None, None),
        (None, None, None, None, None),
        ("Property Name", "Units", "Sale Price", "Cap Rate", "Buyer"),
        ("Oak Ridge", 200, 40_000_000, 0.055, "Buyer A"),
    ]
    idx, headers = find_header_row(rows, COMP_KEYWORDS)
    assert idx == 2
    assert headers == ["Property Name", "Units", "Sale Price", "Cap Rate", "Buyer"]


def test_no_header_row():
    rows = [("a", "b"), ("c", "d")]
    assert find_header_row(rows, COMP_KEYWORDS) == (-1, [])


def test_two_line_header_is_merged():
    rows = [
        ("Property", "Sale", "Cap", "Year", None),
        ("Name", "Price", "Rate", "Built", "Units"),
        ("Oak Ridge", 40_000_000, 0.055, 2015, 200),
    ]
    idx, headers = find_header_row(rows, COMP_KEYWORDS)
    assert idx == 1
    assert headers == ["Property Name", "Sale Price", "Cap Rate", "Year Built", "Units"]


def test_title_row_above_is_not_merged():
    assert merge_header_rows(["Sales Comps", "", ""], ["Property Name", "Units", "Buyer"]) is None


def test_merge_skips_text_already_in_header():
    assert merge_header_rows(["Sale", "Cap"], ["Sale Price", "Cap Rate"]) is None


# ---- Data region ----

def test_stop_rows():
    assert is_stop_row(("Total", 400)) is True
    assert is_stop_row((None, "Grand Total", 400)) is True
    assert is_stop_row(("Summary",)) is True
    assert is_stop_row(("Totally Renovated Lofts", 120)) is False
    assert is_stop_row((None, None)) is False


def test_extract_records_skips_blanks_and_stops_at_total():
    headers = ["Property Name", "Units", ""]
    rows = [
        ("Property Name", "Units", None),
        ("Oak Ridge", 200, "ignored"),
        (None, None, None),
        ("Elm Court", 150, None),
        ("Total", 350, None),
        ("After Total", 1, None),
    ]
    records = extract_records(rows, 0, headers)
    assert records == [
        {"Property Name": "Oak Ridge", "Units": 200},
        {"Property Name": "Elm Court", "Units": 150},
    ]


def test_select_sheet_prefers_keyword_name():
    wb = openpyxl.Workbook()
    wb.active.title = "Cover"
    for i in range(5):
        wb.active.append([f"note {i}"])
    comps = wb.create_sheet("Sale Comps")
    comps.append(["Property Name"])
    chosen = select_sheet(wb, SheetVocabulary(sheet_keywords=("comp",)))
    assert chosen.title == "Sale Comps"


def test_parse_sheet_without_header_raises():
    wb = openpyxl.Workbook()
    wb.active.append(["just a note"])
    with pytest.raises(StructuralParseError):
        parse_sheet(wb, SheetVocabulary(header_keywords=COMP_KEYWORDS))


def test_open_workbook_unreadable_bytes():
    with pytest.raises(StructuralParseError):
        open_workbook(b"not a workbook")


# ---- Month headers ----

def test_month_of_variants():
    assert month_of("Jan-25") == ("Jan", 2025)
    assert month_of("September 2024") == ("Sep", 2024)
    assert month_of(datetime(2025, 3, 1)) == ("Mar", 2025)
    assert month_of("Apr") == ("Apr", None)
    assert month_of("Total") == (None, None)
    assert month_of("Mayfair Apartments") == (None, None)


def test_month_header_year_from_row_above():
    months = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
    rows = [
        ("Fiscal Year 2024",),
        tuple(["Account"] + months + ["Total"]),
    ]
    header = find_month_header_row(rows)
    assert header is not None
    assert header.row_index == 1
    assert header.fiscal_year == 2024
    assert header.month_columns["Jan"] == 1
    assert find_total_column(rows[1], header.month_columns) == 13


def test_month_header_needs_six_months():
    rows = [("Account", "Jan", "Feb", "Mar")]
    assert find_month_header_row(rows) is None
