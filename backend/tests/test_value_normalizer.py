"""Tests for cell-value normalization: sentinels, money suffixes, rates, dates, status."""
from datetime import date, datetime

import pytest

from models import ProjectStatus
from services.value_normalizer import (
    clean_int,
    clean_numeric,
    clean_text,
    normalize_cap_rate,
    normalize_occupancy,
    normalize_status,
    parse_date,
    parse_money,
    parse_year_built,
)


# ---- Sentinels ----

@pytest.mark.parametrize("value", ["TBD", "N/A", "-", "", "  ", "null", None])
def test_sentinels_are_none_not_zero(value):
    assert clean_numeric(value) is None
    assert parse_money(value) is None
    assert normalize_cap_rate(value) is None


def test_clean_text_collapses_whitespace():
    assert clean_text("  Oak   Ridge ") == "Oak Ridge"
    assert clean_text("n/a") is None


# ---- Money ----

def test_millions_suffix():
    assert parse_money("$63.88M") == 63_880_000.0
    assert parse_money("63.88 million") == 63_880_000.0
    assert parse_money("$1.2MM") == 1_200_000.0


def test_thousands_suffix_and_separators():
    assert parse_money("450K") == 450_000.0
    assert parse_money("$1,234,567.891") == 1_234_567.89


def test_parentheses_are_negative():
    assert clean_numeric("(1,250)") == -1250.0


def test_garbage_is_none():
    assert clean_numeric("call broker") is None
    assert clean_numeric(True) is None


def test_clean_int_rounds():
    assert clean_int("312") == 312
    assert clean_int(199.6) == 200


# ---- Rates ----

def test_cap_rate_percent_converted_once():
    assert normalize_cap_rate(5.5) == pytest.approx(0.055)
    assert normalize_cap_rate("5.25%") == pytest.approx(0.0525)


def test_cap_rate_decimal_unchanged():
    assert normalize_cap_rate(0.055) == 0.055


def test_cap_rate_is_idempotent():
    once = normalize_cap_rate("6.1%")
    assert normalize_cap_rate(once) == once


def test_occupancy_allows_over_100_percent_economic():
    assert normalize_occupancy(95) == pytest.approx(0.95)
    assert normalize_occupancy(1.02) == 1.02


# ---- Dates ----

def test_parse_date_formats():
    assert parse_date("03/15/2024") == date(2024, 3, 15)
    assert parse_date("2024-03-15") == date(2024, 3, 15)
    assert parse_date("Mar 2024") == date(2024, 3, 1)
    assert parse_date(datetime(2024, 3, 15, 10, 30)) == date(2024, 3, 15)
    assert parse_date("TBD") is None
    assert parse_date("sometime") is None


def test_parse_year_built_with_renovation():
    assert parse_year_built("1987/2017") == (1987, 2017)
    assert parse_year_built("1995") == (1995, None)
    assert parse_year_built(1995.0) == (1995, None)
    assert parse_year_built("N/A") == (None, None)
    assert parse_year_built(42) == (None, None)


# ---- Pipeline status ----

@pytest.mark.parametrize("raw, expected", [
    ("Lease-Up", ProjectStatus.LEASE_UP),
    ("Stabilizing", ProjectStatus.LEASE_UP),
    ("Under Construction", ProjectStatus.UNDER_CONSTRUCTION),
    ("UC", ProjectStatus.UNDER_CONSTRUCTION),
    ("Planned", ProjectStatus.PROPOSED),
    ("Delivered", ProjectStatus.DELIVERED),
    ("On hold", ProjectStatus.UNKNOWN),
])
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_normalize_status_sentinel_is_none():
    assert normalize_status("TBD") is None
