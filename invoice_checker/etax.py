from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, List, Tuple

import requests

from .models import WinningNumbers
from .periods import TAIPEI_TZ

LOGGER = logging.getLogger(__name__)

TITLE_SUFFIX = "統一發票中獎號碼單"
NUMBER_SEPARATOR = "、"
SPECIAL_LABEL = "特別獎"
GRAND_LABEL = "特獎"
FIRST_LABEL = "頭獎"
ADDITIONAL_SIXTH_LABEL = "增開六獎"

CACHE_TTL = timedelta(hours=24)
DRAW_DAY = 25
DRAW_HOUR = 13
DRAW_MINUTE = 30


class InvoiceDataError(RuntimeError):
    pass


def _taipei_now() -> datetime:
    return datetime.now(TAIPEI_TZ)


def draw_published_since(fetched_at: datetime, now: datetime) -> bool:
    """True when a draw was announced between `fetched_at` and `now`.

    Draws are held on the 25th of odd months and published at 13:30 Taiwan time.
    """
    now = now.astimezone(TAIPEI_TZ)
    if now.month % 2 == 0 or now.day != DRAW_DAY:
        return False
    draw_time = now.replace(hour=DRAW_HOUR, minute=DRAW_MINUTE, second=0, microsecond=0)
    return fetched_at < draw_time <= now


class EtaxInvoiceClient:
    """Reads the Ministry of Finance winning-numbers RSS feed."""

    FEED_URL = "https://invoice.etax.nat.gov.tw/invoice.xml"

    def __init__(
        self,
        timeout_seconds: int = 10,
        cache_ttl: timedelta = CACHE_TTL,
        clock: Callable[[], datetime] = _taipei_now,
    ):
        self._timeout = timeout_seconds
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[int, Tuple[datetime, List[WinningNumbers]]] = {}
        self._cache_lock = Lock()
        self._session = requests.Session()
        self._session.headers.update(
            {
                "User-Agent": (
                    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                    "AppleWebKit/537.36 (KHTML, like Gecko) "
                    "Chrome/122.0.0.0 Safari/537.36"
                )
            }
        )

    def get_winning_numbers(self, limit: int = 3, force_refresh: bool = False) -> List[WinningNumbers]:
        now = self._clock()
        if not force_refresh:
            cached = self._cached(limit, now)
            if cached is not None:
                return cached

        text = self._download_text(self.FEED_URL)
        results = self._parse_feed(text, limit=limit)
        if not results:
            raise InvoiceDataError("財政部資料來源沒有可用的中獎號碼")
        with self._cache_lock:
            self._cache[limit] = (now, results)
        return list(results)

    def get_latest(self, force_refresh: bool = False) -> WinningNumbers:
        return self.get_winning_numbers(limit=1, force_refresh=force_refresh)[0]

    def _cached(self, limit: int, now: datetime) -> List[WinningNumbers] | None:
        with self._cache_lock:
            entry = self._cache.get(limit)
        if entry is None:
            return None
        fetched_at, results = entry
        if now - fetched_at >= self._cache_ttl:
            return None
        if draw_published_since(fetched_at, now):
            LOGGER.info("New draw published since %s, refreshing winning numbers", fetched_at.isoformat())
            return None
        return list(results)

    def _download_text(self, url: str) -> str:
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise InvoiceDataError(f"無法連線至財政部資料來源: {url}") from exc

        content = response.content
        for encoding in ("utf-8", "big5", "cp950"):
            try:
                return content.decode(encoding)
            except UnicodeDecodeError:
                continue
        raise InvoiceDataError(f"無法解碼資料來源內容: {url}")

    def _parse_feed(self, content: str, limit: int = 3) -> List[WinningNumbers]:
        try:
            root = ET.fromstring(content.lstrip("\ufeff").strip())
        except ET.ParseError as exc:
            raise InvoiceDataError("中獎號碼 XML 格式錯誤") from exc

        results: List[WinningNumbers] = []
        for item in root.iter("item"):
            if len(results) >= limit:
                break
            title = (item.findtext("title") or "").strip()
            description = item.findtext("description") or ""
            if "年" not in title or "月" not in title:
                continue

            special = self._parse_numbers(description, SPECIAL_LABEL)
            grand = self._parse_numbers(description, GRAND_LABEL)
            if not special or not grand:
                continue

            results.append(
                WinningNumbers(
                    period=title.replace(TITLE_SUFFIX, "").strip(),
                    special_prize=special[0],
                    grand_prize=grand[0],
                    first_prize=self._parse_numbers(description, FIRST_LABEL),
                    additional_sixth_prize=self._parse_numbers(description, ADDITIONAL_SIXTH_LABEL),
                )
            )
        return results

    @staticmethod
    def _parse_numbers(description: str, label: str) -> List[str]:
        match = re.search(rf"{re.escape(label)}[：:]\s*([0-9{NUMBER_SEPARATOR}]+)", description)
        if not match:
            return []
        return [token.strip() for token in match.group(1).split(NUMBER_SEPARATOR) if token.strip()]
