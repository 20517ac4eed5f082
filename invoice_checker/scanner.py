"""Sequential e-invoice mailbox scan.

A scan resolves the date window from the selected periods, pages through the
matching message ids, then walks them one at a time: fetch detail, drop
anything outside the strict window, extract the invoice number, and check it
against every period. Progress is emitted as immutable snapshots so callers
can render partial results while the scan is still running.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from threading import Event
from typing import Callable, Iterator, List, Protocol, Sequence, Set

from .checker import check_across_periods
from .extraction import extract_from_message
from .gmail import DEFAULT_MAX_MESSAGES, GmailApiError
from .history import HistoryUpdate, RecordsUpdate, merge_history
from .models import (
    NO_MATCH,
    CheckResult,
    EmailCandidate,
    HistoryItem,
    MessageDetail,
    ScanLogEntry,
    ScanProgress,
    ScanState,
    WinningNumbers,
)
from .periods import DEFAULT_INVOICE_LABEL, build_search_query, resolve_scan_window

LOGGER = logging.getLogger(__name__)

UNPARSED_NUMBER = "未解析"
AUTO_RANGE_LABEL = "自動偵測日期"
DEFAULT_DELAY_SECONDS = 0.005


class NoWinningDataError(ValueError):
    pass


class MessageSource(Protocol):
    def list_message_ids(self, query: str, max_count: int = DEFAULT_MAX_MESSAGES) -> List[str]: ...

    def get_message_detail(self, message_id: str) -> MessageDetail | None: ...


class HistorySink(Protocol):
    def get_history(self) -> List[HistoryItem]: ...

    def update_history(self, update: HistoryUpdate) -> List[HistoryItem]: ...

    def update_records(self, update: RecordsUpdate) -> List[ScanLogEntry]: ...


class CancellationToken:
    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class EmailScanPipeline:
    def __init__(
        self,
        client: MessageSource,
        history_store: HistorySink,
        *,
        label: str = DEFAULT_INVOICE_LABEL,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        extractor: Callable[[MessageDetail], EmailCandidate] = extract_from_message,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.history_store = history_store
        self.label = label
        self.max_messages = max(1, int(max_messages))
        self.delay_seconds = max(0.0, float(delay_seconds))
        self.extractor = extractor
        self._sleep = sleep_fn

    def scan(
        self,
        periods: Sequence[WinningNumbers],
        cancel_token: CancellationToken | None = None,
    ) -> Iterator[ScanProgress]:
        if not periods:
            raise NoWinningDataError("請先等待中獎號碼載入")
        return self._iter_scan(list(periods), cancel_token or CancellationToken())

    def run(
        self,
        periods: Sequence[WinningNumbers],
        on_progress: Callable[[ScanProgress], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ScanProgress:
        last: ScanProgress | None = None
        for snapshot in self.scan(periods, cancel_token):
            last = snapshot
            if on_progress is not None:
                on_progress(snapshot)
        if last is None:
            raise RuntimeError("scan finished without reporting progress")
        return last

    def _iter_scan(self, periods: List[WinningNumbers], cancel_token: CancellationToken) -> Iterator[ScanProgress]:
        window = resolve_scan_window(periods)
        query = build_search_query(window, self.label)
        range_label = window.label if window else AUTO_RANGE_LABEL

        progress = ScanProgress(
            state=ScanState.FETCHING,
            message=f"正在搜尋「{range_label}」的發票...",
            query=query,
            range_label=range_label,
        )
        yield progress

        try:
            message_ids = self.client.list_message_ids(query, max_count=self.max_messages)
        except GmailApiError as exc:
            LOGGER.warning("Invoice mail search failed: %s", exc)
            yield self._failed(progress, exc)
            return

        if not message_ids:
            yield replace(
                progress,
                state=ScanState.DONE,
                message=f"在區間 {range_label} 找不到標籤為「{self.label}」的郵件",
            )
            return

        total = len(message_ids)
        progress = replace(
            progress,
            state=ScanState.PROCESSING,
            total_messages=total,
            message=f"找到 {total} 封相關郵件，開始過濾與解析...",
        )
        yield progress

        known_numbers: Set[str] = {item.number for item in self.history_store.get_history()}
        new_history: List[HistoryItem] = []
        winners: List[ScanLogEntry] = []
        log: List[ScanLogEntry] = []
        valid_date_count = 0

        for processed, message_id in enumerate(message_ids, start=1):
            if cancel_token.cancelled:
                yield replace(progress, state=ScanState.CANCELLED, message="掃描已取消", latest_entry=None)
                return

            try:
                detail = self.client.get_message_detail(message_id)
                timestamp = int(detail.internal_date) if detail is not None else 0
            except (GmailApiError, ValueError) as exc:
                LOGGER.warning("Invoice mail scan stopped at %s: %s", message_id, exc)
                yield self._failed(progress, exc)
                return

            entry: ScanLogEntry | None = None
            if detail is not None and (window is None or window.accepts(timestamp)):
                valid_date_count += 1
                entry = self._check_message(detail, periods)
                number = entry.message.parsed_number
                if entry.result.is_match and number:
                    winners.append(entry)
                    if number not in known_numbers:
                        known_numbers.add(number)
                        new_history.append(
                            HistoryItem(id=message_id, number=number, timestamp=timestamp, result=entry.result)
                        )
                log.append(entry)

            progress = replace(
                progress,
                processed=processed,
                valid_date_count=valid_date_count,
                winners=tuple(winners),
                log=tuple(log),
                new_history_count=len(new_history),
                latest_entry=entry,
                message=f"正在處理 ({processed}/{total})，符合日期: {valid_date_count} 封...",
            )
            yield progress

            if self.delay_seconds:
                self._sleep(self.delay_seconds)

        if new_history:
            self.history_store.update_history(lambda current: _merge_new_winners(new_history, current))
        if log:
            self.history_store.update_records(lambda existing: [*log, *existing])

        yield replace(
            progress,
            state=ScanState.DONE,
            latest_entry=None,
            message=(
                f"掃描完成！篩選後共 {valid_date_count} 封符合 {range_label} 區間，"
                f"發現 {len(winners)} 張中獎發票。"
            ),
        )

    def _check_message(self, detail: MessageDetail, periods: Sequence[WinningNumbers]) -> ScanLogEntry:
        candidate = self.extractor(detail)
        if not candidate.parsed_number:
            return ScanLogEntry(message=replace(candidate, full_number=UNPARSED_NUMBER), result=NO_MATCH)
        result: CheckResult = check_across_periods(candidate.parsed_number, periods)
        return ScanLogEntry(message=candidate, result=result)

    @staticmethod
    def _failed(progress: ScanProgress, exc: Exception) -> ScanProgress:
        return replace(
            progress,
            state=ScanState.ERROR,
            latest_entry=None,
            message=f"發生錯誤: {exc}",
            error=str(exc),
        )


def _merge_new_winners(new_items: Sequence[HistoryItem], current: List[HistoryItem]) -> List[HistoryItem]:
    # History may have changed since the scan started.
    known = {item.number for item in current}
    fresh: List[HistoryItem] = []
    for item in new_items:
        if item.number not in known:
            known.add(item.number)
            fresh.append(item)
    return merge_history(fresh, current) if fresh else current
