"""
Date normalization for transaction dates.

Transaction dates are stored exactly as entered: the ``"Hoy"``/``"Ayer"``
sentinels, ``YYYY-MM-DD``, day-first ``D/M/YYYY`` and full ISO datetimes
all coexist in the same log. Everything that compares or buckets dates goes
through ``normalize_date`` so the formats are resolved in one place.
"""

from __future__ import annotations

import calendar
import logging
import re
from datetime import date, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

TODAY_SENTINEL = "hoy"
YESTERDAY_SENTINEL = "ayer"

FALLBACK_EPOCH = "epoch"
FALLBACK_TODAY = "today"
FALLBACK_POLICIES = {FALLBACK_EPOCH, FALLBACK_TODAY}

EPOCH = date(1970, 1, 1)

YEAR_FIRST = re.compile(r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})$")
DAY_FIRST = re.compile(r"^(\d{1,2})[/-](\d{1,2})(?:[/-](\d{2}|\d{4}))?$")
ISO_DATETIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T")


def normalize_date(
    value: str | date | None,
    *,
    today: Optional[date] = None,
    fallback: str = FALLBACK_EPOCH,
) -> date:
    """Resolve a stored date string to a calendar date.

    Unrecognized values resolve according to ``fallback``: ``FALLBACK_EPOCH``
    maps them to 1970-01-01 so they sort last, ``FALLBACK_TODAY`` treats them
    as entered today.
    """
    if fallback not in FALLBACK_POLICIES:
        raise ValueError(f"Unsupported fallback policy: {fallback}")
    reference = today or date.today()
    parsed = parse_date_strict(value, today=reference)
    if parsed is not None:
        return parsed

    logger.warning("Unparseable transaction date %r, using %s fallback", value, fallback)
    if fallback == FALLBACK_TODAY:
        return reference
    return EPOCH


def parse_date_strict(value: str | date | None, *, today: Optional[date] = None) -> Optional[date]:
    if isinstance(value, date):
        return value
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    reference = today or date.today()

    lowered = cleaned.lower()
    if lowered == TODAY_SENTINEL:
        return reference
    if lowered == YESTERDAY_SENTINEL:
        return reference - timedelta(days=1)

    match = YEAR_FIRST.match(cleaned)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = DAY_FIRST.match(cleaned)
    if match:
        day, month, year_text = match.groups()
        if year_text is None:
            year = reference.year
        elif len(year_text) == 2:
            year = 2000 + int(year_text)
        else:
            year = int(year_text)
        return _safe_date(year, int(month), int(day))

    match = ISO_DATETIME.match(cleaned)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    return None


def is_today_sentinel(value: str | None) -> bool:
    return bool(value) and value.strip().lower() == TODAY_SENTINEL


def is_relative_sentinel(value: str | None) -> bool:
    return bool(value) and value.strip().lower() in {TODAY_SENTINEL, YESTERDAY_SENTINEL}


def month_index(value: date) -> int:
    return value.year * 12 + (value.month - 1)


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    index = month_index(value) + months
    return date(index // 12, index % 12 + 1, 1)


def month_end(value: date) -> date:
    return shift_month(month_start(value), 1) - timedelta(days=1)


def same_month(left: date, right: date) -> bool:
    return left.year == right.year and left.month == right.month


def days_left_in_month(value: date) -> int:
    return calendar.monthrange(value.year, value.month)[1] - value.day


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None
