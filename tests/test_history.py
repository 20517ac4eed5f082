import threading

from botocore.exceptions import ClientError

from invoice_checker.history import (
    MAX_HISTORY_ITEMS,
    DynamoHistoryStore,
    JsonFileHistoryStore,
    add_history_item,
    create_history_store_from_env,
    merge_history,
    record_check,
)
from invoice_checker.models import CheckResult, EmailCandidate, HistoryItem, PrizeType, ScanLogEntry

SIXTH = CheckResult(is_match=True, prize_type=PrizeType.SIXTH, amount=200, period="112年 09-10月")
MISS = CheckResult(is_match=False, prize_type=PrizeType.NONE)


def _item(number: str, timestamp: int = 1) -> HistoryItem:
    return HistoryItem(id=f"id-{number}", number=number, timestamp=timestamp, result=SIXTH)


def _entry(message_id: str) -> ScanLogEntry:
    return ScanLogEntry(
        message=EmailCandidate(id=message_id, internal_date="1694736000000", subject="s", parsed_number="12345678"),
        result=MISS,
    )


def test_history_keeps_fifty_newest_first(tmp_path):
    store = JsonFileHistoryStore(tmp_path / "history.json")
    for index in range(51):
        store.save_history_list(add_history_item(store.get_history(), _item(f"{index:08d}", index)))

    history = store.get_history()
    assert len(history) == MAX_HISTORY_ITEMS
    assert history[0].number == "00000050"
    assert history[-1].number == "00000001"


def test_history_round_trips_check_result(tmp_path):
    store = JsonFileHistoryStore(tmp_path / "history.json")
    store.save_history_list([_item("12345678", 1694736000000)])

    loaded = store.get_history()[0]
    assert loaded == _item("12345678", 1694736000000)
    assert loaded.result.prize_type is PrizeType.SIXTH


def test_clear_history_keeps_records(tmp_path):
    store = JsonFileHistoryStore(tmp_path / "history.json")
    store.save_history_list([_item("12345678")])
    store.save_records([_entry("m1")])

    store.clear_history()

    assert store.get_history() == []
    assert [entry.message.id for entry in store.get_records()] == ["m1"]


def test_records_truncate_to_one_hundred(tmp_path):
    store = JsonFileHistoryStore(tmp_path / "history.json")
    kept = store.save_records([_entry(f"m{index}") for index in range(120)])

    assert len(kept) == 100
    assert len(store.get_records()) == 100
    assert store.get_records()[0].message.id == "m0"


def test_unreadable_file_reads_as_empty(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")
    assert JsonFileHistoryStore(path).get_history() == []


def test_merge_history_puts_new_items_first():
    merged = merge_history([_item("22222222")], [_item(f"{index:08d}") for index in range(60)])
    assert len(merged) == 50
    assert merged[0].number == "22222222"


def test_record_check_replaces_when_typing_continues():
    history = record_check([], "123", MISS, now_ms=1)
    history = record_check(history, "1234", SIXTH, now_ms=2)

    assert len(history) == 1
    assert history[0].number == "1234"
    assert history[0].timestamp == 2
    assert history[0].result == SIXTH

    assert record_check(history, "1234", SIXTH, now_ms=3) == history

    history = record_check(history, "999", MISS, now_ms=4)
    assert [item.number for item in history] == ["999", "1234"]


class FakeTable:
    def __init__(self) -> None:
        self.items: dict = {}

    def get_item(self, Key):  # type: ignore[no-untyped-def]
        item = self.items.get((Key["pk"], Key["sk"]))
        return {"Item": item} if item else {}

    def put_item(self, Item):  # type: ignore[no-untyped-def]
        self.items[(Item["pk"], Item["sk"])] = Item

    def delete_item(self, Key):  # type: ignore[no-untyped-def]
        self.items.pop((Key["pk"], Key["sk"]), None)


class FailingTable:
    def get_item(self, Key):  # type: ignore[no-untyped-def]
        raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "GetItem")

    def put_item(self, Item):  # type: ignore[no-untyped-def]
        raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutItem")


def test_dynamo_store_round_trip():
    store = DynamoHistoryStore(table_name="invoices", region_name="ap-northeast-1", table=FakeTable())

    store.save_history_list([_item("12345678"), _item("87654321")])
    store.save_records([_entry("m1")])

    assert [item.number for item in store.get_history()] == ["12345678", "87654321"]
    assert [entry.message.id for entry in store.get_records()] == ["m1"]

    store.clear_history()
    assert store.get_history() == []


def test_dynamo_store_disables_on_client_error():
    store = DynamoHistoryStore(table_name="invoices", region_name="ap-northeast-1", table=FailingTable())

    store.save_history_list([_item("12345678")])

    assert store.enabled is False
    assert "ClientError" in store.last_error
    assert store.get_history() == []


def test_create_store_from_env_uses_history_file(monkeypatch, tmp_path):
    monkeypatch.delenv("DYNAMODB_HISTORY_TABLE", raising=False)
    monkeypatch.setenv("HISTORY_FILE", str(tmp_path / "custom.json"))

    store = create_history_store_from_env()

    assert isinstance(store, JsonFileHistoryStore)
    assert store.path == tmp_path / "custom.json"


def test_update_history_serialises_concurrent_writers(tmp_path):
    store = JsonFileHistoryStore(tmp_path / "history.json")

    def add(index: int) -> None:
        store.update_history(lambda current: add_history_item(current, _item(f"{index:08d}", index)))

    threads = [threading.Thread(target=add, args=(index,)) for index in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(item.number for item in store.get_history()) == [f"{index:08d}" for index in range(20)]


def test_update_history_skips_unchanged_write(tmp_path):
    path = tmp_path / "history.json"
    store = JsonFileHistoryStore(path)

    assert store.update_history(lambda current: current) == []
    assert not path.exists()


def test_update_records_prepends_and_caps(tmp_path):
    store = JsonFileHistoryStore(tmp_path / "history.json")
    store.save_records([_entry(f"old{index}") for index in range(99)])

    kept = store.update_records(lambda existing: [_entry("new1"), _entry("new2"), *existing])

    assert len(kept) == 100
    assert [entry.message.id for entry in store.get_records()[:3]] == ["new1", "new2", "old0"]


def test_dynamo_update_history():
    store = DynamoHistoryStore(table_name="invoices", region_name="ap-northeast-1", table=FakeTable())
    store.save_history_list([_item("12345678")])

    store.update_history(lambda current: add_history_item(current, _item("87654321")))

    assert [item.number for item in store.get_history()] == ["87654321", "12345678"]
