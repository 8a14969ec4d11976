"""
Date parsing utilities for the date columns of client spreadsheets.

Source files mix DD/MM/YYYY text, ISO dates and spreadsheet datetimes. All of
them are reduced to a ``datetime.date``; values that cannot be parsed become
None and are logged with sampling so one bad column cannot flood the logs.
"""

import logging
import re
from datetime import date
from typing import Any, Optional

import pandas as pd

from baseoff_import.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100
TWO_DIGIT_YEAR_PIVOT = 30  # '30' -> 2030, '31' -> 1931

_failure_stats: dict = {}

_ISO_DATE = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}")
_NUMERIC_DATE = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})$")
_COMPACT_DATE = re.compile(r"^\d{8}$")


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    # Emit a single summary when suppression starts, then periodically.
    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def parse_flexible_date(
    value: Any,
    *,
    dayfirst: Optional[bool] = None,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[date]:
    """
    Parse a date value from the formats found in client spreadsheets.

    Supports:
    - DD/MM/YYYY, DD-MM-YYYY, DD.MM.YYYY (two-digit years too)
    - YYYY-MM-DD, optionally followed by a time ("2020-01-05 00:00:00")
    - DDMMYYYY compact digits
    - date/datetime objects

    Returns:
        ``datetime.date`` or None if the value is empty or unparseable
    """
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date()
    if hasattr(value, "date") and callable(value.date):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    if dayfirst is None:
        dayfirst = settings.date_default_dayfirst

    try:
        if _ISO_DATE.match(text):
            parsed = pd.to_datetime(text[:10], format="%Y-%m-%d", errors="raise")
        elif _COMPACT_DATE.match(text):
            parsed = pd.to_datetime(text, format="%d%m%Y" if dayfirst else "%m%d%Y", errors="raise")
        else:
            match = _NUMERIC_DATE.match(text)
            if not match:
                raise ValueError("Unrecognized date format")
            first, second = int(match.group(1)), int(match.group(2))
            # An impossible month forces the other interpretation.
            use_dayfirst = dayfirst
            if first > 12 >= second:
                use_dayfirst = True
            elif second > 12 >= first:
                use_dayfirst = False
            day, month = (first, second) if use_dayfirst else (second, first)
            year = int(match.group(3))
            if year < 100:
                year += 2000 if year <= TWO_DIGIT_YEAR_PIVOT else 1900
            return date(year, month, day)
    except (ValueError, OverflowError) as exc:
        if log_failures:
            _record_parse_failure(text, log_context, exc)
        return None

    return parsed.date()
