"""
Decoding of the external NAV formats into NavPoints.

Two sources are understood:
- the AMFI bulk feed: `;`-separated lines with scheme code at field 0, NAV at
  field 4 and a `DD-Mon-YYYY` date at field 5, interleaved with AMC and
  scheme-type header lines;
- the per-scheme document: `{"meta": {...}, "data": [{"date": "DD-MM-YYYY",
  "nav": "12.34"}, ...], "status": "SUCCESS"}`, most recent entry first.

Malformed records are dropped, never raised: both sources carry header and
footer noise. Every parser here is a generator, so callers can start
persisting before a large feed has been fully decoded.
"""
from __future__ import annotations

from datetime import date
from io import StringIO
from typing import Any, Dict, Iterable, Iterator, Optional
import math

from .core import bg_logger
from .models import NavPoint, SchemeInfo

FIELD_SEPARATOR = ";"
SCHEME_CODE_FIELD = 0
SCHEME_NAME_FIELD = 3
NAV_VALUE_FIELD = 4
NAV_DATE_FIELD = 5
REQUIRED_FIELDS = 6

# Month abbreviations used by the bulk feed, matched without relying on the process locale
MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

MISSING_NAV_MARKERS = {"", "N.A.", "NA", "-", "n.a."}


def parse_nav_date(text: str) -> Optional[date]:
    """
    Parse `DD-Mon-YYYY` (e.g. "04-Jan-2024") or `DD-MM-YYYY` into a date.

    Returns None for anything else, including an unknown month abbreviation.
    """
    parts = text.strip().split("-")
    if len(parts) != 3:
        return None

    day_part, month_part, year_part = (p.strip() for p in parts)
    if not (day_part.isdigit() and year_part.isdigit() and len(year_part) == 4):
        return None

    if month_part.isdigit():
        month = int(month_part)
    else:
        month = MONTHS.get(month_part.lower())
        if month is None:
            return None

    try:
        return date(int(year_part), month, int(day_part))
    except ValueError:
        return None


def parse_nav_value(text: Any) -> Optional[float]:
    """Parse a NAV value; None unless it is a finite number greater than zero."""
    if text is None:
        return None
    raw = str(text).strip()
    if raw in MISSING_NAV_MARKERS:
        return None
    try:
        value = float(raw.replace(",", ""))
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _iter_lines(raw_feed: str | Iterable[str]) -> Iterator[str]:
    if isinstance(raw_feed, str):
        return iter(StringIO(raw_feed))
    return iter(raw_feed)


def _split_record(line: str) -> Optional[list[str]]:
    if FIELD_SEPARATOR not in line:
        return None
    fields = [f.strip() for f in line.split(FIELD_SEPARATOR)]
    if len(fields) < REQUIRED_FIELDS or not fields[SCHEME_CODE_FIELD].isdigit():
        return None
    return fields


def parse_bulk_line(line: str) -> Optional[NavPoint]:
    """Decode a single bulk feed line, or None when it is not a NAV record."""
    fields = _split_record(line)
    if fields is None:
        return None

    value = parse_nav_value(fields[NAV_VALUE_FIELD])
    nav_date = parse_nav_date(fields[NAV_DATE_FIELD])
    if value is None or nav_date is None:
        return None

    return NavPoint(scheme_code=fields[SCHEME_CODE_FIELD], date=nav_date, value=value)


def parse_bulk_feed(raw_feed: str | Iterable[str]) -> Iterator[NavPoint]:
    """Lazily decode the bulk feed into NavPoints, skipping non-record lines."""
    dropped = 0
    for line in _iter_lines(raw_feed):
        point = parse_bulk_line(line)
        if point is None:
            if line.strip():
                dropped += 1
            continue
        yield point

    if dropped:
        bg_logger.debug(f"Bulk feed: skipped {dropped} non-record lines")


def parse_bulk_schemes(raw_feed: str | Iterable[str]) -> Iterator[SchemeInfo]:
    """
    Lazily extract scheme metadata from the bulk feed.

    Lines without a separator are section headers for the records that follow:
    the category when they mention "Scheme", otherwise the AMC.
    """
    current_amc = ""
    current_category = ""

    for line in _iter_lines(raw_feed):
        stripped = line.strip()
        if not stripped:
            continue

        if FIELD_SEPARATOR not in stripped:
            if "scheme" in stripped.lower():
                current_category = stripped
            else:
                current_amc = stripped
            continue

        fields = _split_record(stripped)
        if fields is None:
            continue

        yield SchemeInfo(
            scheme_code=fields[SCHEME_CODE_FIELD],
            scheme_name=fields[SCHEME_NAME_FIELD],
            amc_name=current_amc,
            category=current_category,
        )


def parse_scheme_document(scheme_code: str, document: Dict[str, Any]) -> Iterator[NavPoint]:
    """Lazily decode a per-scheme document's `data` list into NavPoints."""
    entries = document.get("data") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        return

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        nav_date = parse_nav_date(str(entry.get("date", "")))
        value = parse_nav_value(entry.get("nav"))
        if nav_date is None or value is None:
            continue
        yield NavPoint(scheme_code=str(scheme_code), date=nav_date, value=value)
