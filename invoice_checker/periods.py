from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Sequence, Tuple

from .models import ScanWindow, WinningNumbers

# Taiwan has no daylight saving time.
TAIPEI_TZ = timezone(timedelta(hours=8), name="Asia/Taipei")
ROC_YEAR_OFFSET = 1911
QUERY_BUFFER_DAYS = 5
DELIVERY_GRACE_DAYS = 2
DEFAULT_INVOICE_LABEL = "電子發票"

YEAR_PATTERN = re.compile(r"(\d{2,4})\s*年")
# Also accepts the feed's "07月、08月" spelling.
MONTH_RANGE_PATTERN = re.compile(r"(\d{1,2})\s*月?\s*[-~～－至、]\s*(\d{1,2})\s*月")


def parse_period_label(label: str) -> Tuple[int, int, int] | None:
    """Return (gregorian_year, start_month, end_month) for labels like "112年 09-10月"."""
    year_match = YEAR_PATTERN.search(label or "")
    month_match = MONTH_RANGE_PATTERN.search(label or "")
    if not year_match or not month_match:
        return None

    raw_year = int(year_match.group(1))
    start_month = int(month_match.group(1))
    end_month = int(month_match.group(2))
    if not (1 <= start_month <= 12 and 1 <= end_month <= 12):
        return None

    year = raw_year if raw_year >= ROC_YEAR_OFFSET else raw_year + ROC_YEAR_OFFSET
    return year, start_month, end_month


def period_date_range(label: str, tz: tzinfo = TAIPEI_TZ) -> Tuple[datetime, datetime] | None:
    parsed = parse_period_label(label)
    if parsed is None:
        return None
    year, start_month, end_month = parsed
    start = datetime(year, start_month, 1, tzinfo=tz)
    last_day = calendar.monthrange(year, end_month)[1]
    end = datetime(year, end_month, last_day, 23, 59, 59, 999_000, tzinfo=tz)
    return start, end


def to_epoch_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


def format_query_date(value: datetime) -> str:
    return value.strftime("%Y/%m/%d")


def resolve_scan_window(periods: Sequence[WinningNumbers], tz: tzinfo = TAIPEI_TZ) -> ScanWindow | None:
    """Turn period labels into the remote query window and the strict client filter.

    The query window is padded on both sides; the strict filter only allows a
    grace period after the last day, for invoice emails delivered late.
    """
    min_date: datetime | None = None
    max_date: datetime | None = None

    for winning in periods:
        date_range = period_date_range(winning.period, tz)
        if date_range is None:
            continue
        start, end = date_range
        if min_date is None or start < min_date:
            min_date = start
        if max_date is None or end > max_date:
            max_date = end

    if min_date is None or max_date is None:
        return None

    query_after = min_date - timedelta(days=QUERY_BUFFER_DAYS)
    query_before = max_date + timedelta(days=QUERY_BUFFER_DAYS)
    grace_ms = DELIVERY_GRACE_DAYS * 24 * 60 * 60 * 1000

    return ScanWindow(
        min_timestamp=to_epoch_ms(min_date),
        max_timestamp=to_epoch_ms(max_date) + grace_ms,
        api_query_after=format_query_date(query_after),
        api_query_before=format_query_date(query_before),
        label=f"{format_query_date(min_date)} ~ {format_query_date(max_date)}",
        min_date=min_date,
        max_date=max_date,
    )


def build_search_query(window: ScanWindow | None, label: str = DEFAULT_INVOICE_LABEL) -> str:
    query = f"label:{label}"
    if window is not None:
        query += f" after:{window.api_query_after} before:{window.api_query_before}"
    return query
