"""
Cell-value normalization shared by every extraction path.

Rules:
- sentinel strings (TBD, N/A, "-", empty, ...) become None, never 0
- "$63.88M" / "63.88 million" -> 63_880_000; "450K" -> 450_000
- rates: a value above the decimal ceiling is a percentage and is divided by 100
  exactly once; values already at or below the ceiling are returned unchanged
- dates: ordered format list, first match wins
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Optional

from models import ProjectStatus

SENTINELS = frozenset({"", "tbd", "n/a", "na", "-", "--", "none", "null", "nan", "n.a.", "—"})

# Cap rates above this are percentages (5.5 -> 0.055)
CAP_RATE_DECIMAL_CEILING = 0.3
# Occupancy above this is a percentage (95 -> 0.95); 1.0-1.5 covers >100% economic occupancy
OCCUPANCY_DECIMAL_CEILING = 1.5

DATE_FORMATS: tuple[str, ...] = (
    "%m/%d/%Y",
    "%Y-%m-%d",
    "%m-%d-%Y",
    "%m/%d/%y",
    "%b %Y",
    "%B %Y",
    "%Y",
)

_MILLIONS_RE = re.compile(r"^(?P<num>-?[\d.]+)\s*(m|mm|mil|million|millions)$", re.I)
_THOUSANDS_RE = re.compile(r"^(?P<num>-?[\d.]+)\s*(k|thousand)$", re.I)


def is_sentinel(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in SENTINELS
    return False


def clean_text(value: Any) -> Optional[str]:
    if is_sentinel(value):
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def clean_numeric(value: Any) -> Optional[float]:
    """Parse a number from messy spreadsheet input. Handles $, commas, %, parentheses, M/K suffixes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if is_sentinel(value):
        return None
    s = str(value).strip()
    negative = s.startswith("(") and s.endswith(")")
    s = s.strip("()").replace("$", "").replace(",", "").replace("%", "").strip()
    multiplier = 1.0
    m = _MILLIONS_RE.match(s)
    if m:
        s, multiplier = m.group("num"), 1_000_000.0
    else:
        k = _THOUSANDS_RE.match(s)
        if k:
            s, multiplier = k.group("num"), 1_000.0
    try:
        num = float(s) * multiplier
    except ValueError:
        return None
    return -num if negative else num


def parse_money(value: Any) -> Optional[float]:
    """Dollar amount rounded to cents. "$63.88M" -> 63_880_000.0."""
    num = clean_numeric(value)
    return round(num, 2) if num is not None else None


def clean_int(value: Any) -> Optional[int]:
    num = clean_numeric(value)
    return int(round(num)) if num is not None else None


def normalize_rate(value: Any, ceiling: float = CAP_RATE_DECIMAL_CEILING) -> Optional[float]:
    """Return a rate as a decimal. 5.5 / "5.5%" -> 0.055; 0.055 stays 0.055."""
    num = clean_numeric(value)
    if num is None:
        return None
    if num > ceiling:
        return num / 100.0
    return num


def normalize_cap_rate(value: Any) -> Optional[float]:
    return normalize_rate(value, CAP_RATE_DECIMAL_CEILING)


def normalize_occupancy(value: Any) -> Optional[float]:
    return normalize_rate(value, OCCUPANCY_DECIMAL_CEILING)


def parse_date(value: Any, formats: tuple[str, ...] = DATE_FORMATS) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if is_sentinel(value):
        return None
    s = str(value).strip()
    for fmt in formats:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def parse_year_built(value: Any) -> tuple[Optional[int], Optional[int]]:
    """'1987/2017' -> (1987, 2017); '1995' -> (1995, None)."""
    if is_sentinel(value):
        return None, None
    s = str(value).strip()
    match = re.match(r"(\d{4})\s*[/\\\-]\s*(\d{4})", s)
    if match:
        return int(match.group(1)), int(match.group(2))
    year = clean_int(value)
    if year is not None and 1800 <= year <= 2100:
        return year, None
    return None, None


def normalize_status(value: Any) -> Optional[ProjectStatus]:
    if is_sentinel(value):
        return None
    s = re.sub(r"[_\-]+", " ", str(value).lower()).strip()
    if any(kw in s for kw in ("lease", "leasing", "stabiliz")):
        return ProjectStatus.LEASE_UP
    if any(kw in s for kw in ("under construction", "in construction", "building")) or re.search(r"\buc\b", s):
        return ProjectStatus.UNDER_CONSTRUCTION
    if any(kw in s for kw in ("proposed", "planned", "approved", "pre dev", "planning")):
        return ProjectStatus.PROPOSED
    if any(kw in s for kw in ("delivered", "complete", "existing")):
        return ProjectStatus.DELIVERED
    return ProjectStatus.UNKNOWN
