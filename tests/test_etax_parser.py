from datetime import datetime, timedelta

import pytest

from invoice_checker.etax import EtaxInvoiceClient, InvoiceDataError, draw_published_since
from invoice_checker.periods import TAIPEI_TZ

FEED = "\ufeff" + """<rss version="2.0">
  <channel>
    <title>統一發票中獎號碼</title>
    <item>
      <title>112年09月、10月</title>
      <description><![CDATA[<p>特別獎：12345678</p><p>特獎：87654321</p><p>頭獎：11112222、33334444、55556666</p><p>增開六獎：777、888</p>]]></description>
    </item>
    <item>
      <title>最新公告</title>
      <description><![CDATA[<p>特別獎：99999999</p><p>特獎：88888888</p>]]></description>
    </item>
    <item>
      <title>112年07月、08月</title>
      <description><![CDATA[<p>特獎：00000002</p>]]></description>
    </item>
    <item>
      <title>112年05月、06月統一發票中獎號碼單</title>
      <description><![CDATA[<p>特別獎:00000001</p><p>特獎:00000002</p><p>頭獎:00000003</p>]]></description>
    </item>
  </channel>
</rss>
"""


def test_parse_feed_skips_items_without_prizes():
    periods = EtaxInvoiceClient()._parse_feed(FEED)

    assert [period.period for period in periods] == ["112年09月、10月", "112年05月、06月"]
    current = periods[0]
    assert current.special_prize == "12345678"
    assert current.grand_prize == "87654321"
    assert current.first_prize == ["11112222", "33334444", "55556666"]
    assert current.additional_sixth_prize == ["777", "888"]
    assert periods[1].first_prize == ["00000003"]
    assert periods[1].additional_sixth_prize == []


def test_parse_feed_respects_limit():
    periods = EtaxInvoiceClient()._parse_feed(FEED, limit=1)
    assert [period.period for period in periods] == ["112年09月、10月"]


def test_parse_feed_rejects_malformed_xml():
    with pytest.raises(InvoiceDataError):
        EtaxInvoiceClient()._parse_feed("<rss><item>")


def test_get_winning_numbers_uses_downloaded_feed(monkeypatch):
    client = EtaxInvoiceClient()
    monkeypatch.setattr(client, "_download_text", lambda url: FEED)

    assert client.get_latest().special_prize == "12345678"
    assert len(client.get_winning_numbers()) == 2


def test_empty_feed_is_an_error(monkeypatch):
    client = EtaxInvoiceClient()
    monkeypatch.setattr(client, "_download_text", lambda url: "<rss><channel></channel></rss>")

    with pytest.raises(InvoiceDataError):
        client.get_winning_numbers()


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _cached_client(monkeypatch, now: datetime):  # type: ignore[no-untyped-def]
    clock = FakeClock(now)
    client = EtaxInvoiceClient(clock=clock)
    downloads: list[str] = []

    def download(url: str) -> str:
        downloads.append(url)
        return FEED

    monkeypatch.setattr(client, "_download_text", download)
    return client, clock, downloads


def test_winning_numbers_are_cached_for_a_day(monkeypatch):
    client, clock, downloads = _cached_client(monkeypatch, datetime(2023, 11, 10, 9, tzinfo=TAIPEI_TZ))

    client.get_winning_numbers()
    clock.now += timedelta(hours=23)
    client.get_winning_numbers()
    assert len(downloads) == 1

    clock.now += timedelta(hours=1)
    client.get_winning_numbers()
    assert len(downloads) == 2


def test_force_refresh_skips_cache(monkeypatch):
    client, _clock, downloads = _cached_client(monkeypatch, datetime(2023, 11, 10, 9, tzinfo=TAIPEI_TZ))

    client.get_winning_numbers()
    client.get_winning_numbers(force_refresh=True)

    assert len(downloads) == 2


def test_cache_expires_once_the_draw_is_published(monkeypatch):
    client, clock, downloads = _cached_client(monkeypatch, datetime(2023, 11, 25, 10, tzinfo=TAIPEI_TZ))

    client.get_winning_numbers()
    clock.now = datetime(2023, 11, 25, 13, 29, tzinfo=TAIPEI_TZ)
    client.get_winning_numbers()
    assert len(downloads) == 1

    clock.now = datetime(2023, 11, 25, 13, 30, tzinfo=TAIPEI_TZ)
    client.get_winning_numbers()
    assert len(downloads) == 2

    clock.now = datetime(2023, 11, 25, 18, tzinfo=TAIPEI_TZ)
    client.get_winning_numbers()
    assert len(downloads) == 2


def test_draw_day_rule():
    fetched = datetime(2023, 12, 25, 9, tzinfo=TAIPEI_TZ)
    assert draw_published_since(fetched, datetime(2023, 12, 25, 14, tzinfo=TAIPEI_TZ)) is False

    fetched = datetime(2024, 1, 24, 20, tzinfo=TAIPEI_TZ)
    assert draw_published_since(fetched, datetime(2024, 1, 25, 13, 45, tzinfo=TAIPEI_TZ)) is True
    assert draw_published_since(fetched, datetime(2024, 1, 25, 12, tzinfo=TAIPEI_TZ)) is False
