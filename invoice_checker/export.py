from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Iterable, List

from .models import CheckResult, HistoryItem, ScanLogEntry
from .periods import TAIPEI_TZ

# Excel needs the BOM to open UTF-8 CSV correctly.
BOM = "\ufeff"
HISTORY_HEADERS = ["發票號碼", "日期", "獎別", "獎金", "期別"]
SCAN_LOG_HEADERS = ["發票號碼", "郵件日期", "主旨", "獎別", "獎金", "期別"]


def _format_date(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=TAIPEI_TZ).strftime("%Y/%m/%d")


def _prize_cells(result: CheckResult) -> List[str]:
    return [result.prize_label, str(result.amount), result.period]


def _render(headers: List[str], rows: Iterable[List[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return BOM + buffer.getvalue()


def history_to_csv(items: Iterable[HistoryItem]) -> str:
    return _render(
        HISTORY_HEADERS,
        ([item.number, _format_date(item.timestamp), *_prize_cells(item.result)] for item in items),
    )


def scan_log_to_csv(entries: Iterable[ScanLogEntry]) -> str:
    rows = []
    for entry in entries:
        message = entry.message
        try:
            mail_date = _format_date(int(message.internal_date))
        except ValueError:
            mail_date = ""
        rows.append(
            [message.full_number or message.parsed_number or "", mail_date, message.subject, *_prize_cells(entry.result)]
        )
    return _render(SCAN_LOG_HEADERS, rows)
