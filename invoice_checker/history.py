from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import CheckResult, HistoryItem, ScanLogEntry

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_ITEMS = 50
MAX_RECORD_ITEMS = 100
DEFAULT_HISTORY_FILE = Path(__file__).resolve().parent.parent / "storage" / "history.json"

HistoryUpdate = Callable[[List[HistoryItem]], List[HistoryItem]]
RecordsUpdate = Callable[[List[ScanLogEntry]], List[ScanLogEntry]]


def new_history_id() -> str:
    return uuid.uuid4().hex


def merge_history(new_items: Sequence[HistoryItem], existing: Sequence[HistoryItem]) -> List[HistoryItem]:
    return [*new_items, *existing][:MAX_HISTORY_ITEMS]


def add_history_item(history: Sequence[HistoryItem], item: HistoryItem) -> List[HistoryItem]:
    return merge_history([item], history)


def record_check(
    history: Sequence[HistoryItem],
    number: str,
    result: CheckResult,
    now_ms: int,
) -> List[HistoryItem]:
    """Fold a manual check into history the way progressive typing expects.

    When the number extends the newest entry ("123" -> "1234") that entry is
    replaced instead of adding a new one.
    """
    latest = history[0] if history else None
    if latest and latest.number == number:
        return list(history)
    if latest and number.startswith(latest.number) and len(number) > len(latest.number):
        updated = HistoryItem(id=latest.id, number=number, timestamp=now_ms, result=result)
        return [updated, *history[1:]][:MAX_HISTORY_ITEMS]
    item = HistoryItem(id=new_history_id(), number=number, timestamp=now_ms, result=result)
    return add_history_item(history, item)


def _load_history(raw: Any) -> List[HistoryItem]:
    if not isinstance(raw, list):
        return []
    items: List[HistoryItem] = []
    for row in raw:
        if not isinstance(row, dict):
            continue
        try:
            items.append(HistoryItem.from_dict(row))
        except (TypeError, ValueError):
            LOGGER.warning("Skipping malformed history row: %r", row)
    return items


def _load_records(raw: Any) -> List[ScanLogEntry]:
    if not isinstance(raw, list):
        return []
    entries: List[ScanLogEntry] = []
    for row in raw:
        if not isinstance(row, dict):
            continue
        try:
            entries.append(ScanLogEntry.from_dict(row))
        except (TypeError, ValueError):
            LOGGER.warning("Skipping malformed scan record: %r", row)
    return entries


class JsonFileHistoryStore:
    HISTORY_KEY = "invoice_history"
    RECORDS_KEY = "invoice_records"

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = Lock()

    def _read(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unreadable history file %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get_history(self) -> List[HistoryItem]:
        with self._lock:
            return _load_history(self._read().get(self.HISTORY_KEY))

    def save_history_list(self, items: Sequence[HistoryItem]) -> List[HistoryItem]:
        kept = list(items)[:MAX_HISTORY_ITEMS]
        with self._lock:
            data = self._read()
            data[self.HISTORY_KEY] = [item.to_dict() for item in kept]
            self._write(data)
        return kept

    def update_history(self, update: HistoryUpdate) -> List[HistoryItem]:
        """Apply `update` to the stored history while holding the store lock."""
        with self._lock:
            data = self._read()
            current = _load_history(data.get(self.HISTORY_KEY))
            kept = list(update(list(current)))[:MAX_HISTORY_ITEMS]
            if kept != current:
                data[self.HISTORY_KEY] = [item.to_dict() for item in kept]
                self._write(data)
        return kept

    def clear_history(self) -> None:
        with self._lock:
            data = self._read()
            data.pop(self.HISTORY_KEY, None)
            self._write(data)

    def get_records(self) -> List[ScanLogEntry]:
        with self._lock:
            return _load_records(self._read().get(self.RECORDS_KEY))

    def save_records(self, entries: Sequence[ScanLogEntry]) -> List[ScanLogEntry]:
        kept = list(entries)[:MAX_RECORD_ITEMS]
        with self._lock:
            data = self._read()
            data[self.RECORDS_KEY] = [entry.to_dict() for entry in kept]
            self._write(data)
        return kept

    def update_records(self, update: RecordsUpdate) -> List[ScanLogEntry]:
        with self._lock:
            data = self._read()
            kept = list(update(_load_records(data.get(self.RECORDS_KEY))))[:MAX_RECORD_ITEMS]
            data[self.RECORDS_KEY] = [entry.to_dict() for entry in kept]
            self._write(data)
        return kept


class DynamoHistoryStore:
    PARTITION = "INVOICE"
    HISTORY_SORT_KEY = "HISTORY"
    RECORDS_SORT_KEY = "RECORDS"

    def __init__(self, table_name: str, region_name: str, table: Any = None) -> None:
        self.table_name = table_name
        if table is None:
            table = boto3.resource("dynamodb", region_name=region_name).Table(table_name)
        self._table = table
        self._lock = Lock()
        self._enabled = True
        self._last_error = ""

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_error(self) -> str:
        return self._last_error

    def _disable(self, exc: Exception, context: str) -> None:
        self._enabled = False
        self._last_error = f"{type(exc).__name__}: {exc}"
        LOGGER.warning("DynamoDB %s disabled: %s", context, self._last_error)

    def _get_list(self, sort_key: str) -> List[Any]:
        if not self._enabled:
            return []
        try:
            response = self._table.get_item(Key={"pk": self.PARTITION, "sk": sort_key})
        except (ClientError, BotoCoreError) as exc:
            self._disable(exc, "history read")
            return []
        item = response.get("Item") or {}
        try:
            data = json.loads(item.get("payload") or "[]")
        except ValueError:
            return []
        return data if isinstance(data, list) else []

    def _put_list(self, sort_key: str, rows: List[Dict[str, Any]]) -> None:
        if not self._enabled:
            return
        try:
            self._table.put_item(
                Item={
                    "pk": self.PARTITION,
                    "sk": sort_key,
                    "payload": json.dumps(rows, ensure_ascii=False),
                }
            )
        except (ClientError, BotoCoreError) as exc:
            self._disable(exc, "history write")

    def get_history(self) -> List[HistoryItem]:
        with self._lock:
            return _load_history(self._get_list(self.HISTORY_SORT_KEY))

    def save_history_list(self, items: Sequence[HistoryItem]) -> List[HistoryItem]:
        kept = list(items)[:MAX_HISTORY_ITEMS]
        with self._lock:
            self._put_list(self.HISTORY_SORT_KEY, [item.to_dict() for item in kept])
        return kept

    def update_history(self, update: HistoryUpdate) -> List[HistoryItem]:
        with self._lock:
            current = _load_history(self._get_list(self.HISTORY_SORT_KEY))
            kept = list(update(list(current)))[:MAX_HISTORY_ITEMS]
            if kept != current:
                self._put_list(self.HISTORY_SORT_KEY, [item.to_dict() for item in kept])
        return kept

    def clear_history(self) -> None:
        if not self._enabled:
            return
        with self._lock:
            try:
                self._table.delete_item(Key={"pk": self.PARTITION, "sk": self.HISTORY_SORT_KEY})
            except (ClientError, BotoCoreError) as exc:
                self._disable(exc, "history delete")

    def get_records(self) -> List[ScanLogEntry]:
        with self._lock:
            return _load_records(self._get_list(self.RECORDS_SORT_KEY))

    def save_records(self, entries: Sequence[ScanLogEntry]) -> List[ScanLogEntry]:
        kept = list(entries)[:MAX_RECORD_ITEMS]
        with self._lock:
            self._put_list(self.RECORDS_SORT_KEY, [entry.to_dict() for entry in kept])
        return kept

    def update_records(self, update: RecordsUpdate) -> List[ScanLogEntry]:
        with self._lock:
            kept = list(update(_load_records(self._get_list(self.RECORDS_SORT_KEY))))[:MAX_RECORD_ITEMS]
            self._put_list(self.RECORDS_SORT_KEY, [entry.to_dict() for entry in kept])
        return kept


def create_history_store_from_env() -> JsonFileHistoryStore | DynamoHistoryStore:
    table_name = os.environ.get("DYNAMODB_HISTORY_TABLE", "").strip()
    if table_name:
        region_name = os.environ.get("AWS_REGION", "").strip() or os.environ.get("AWS_DEFAULT_REGION", "").strip()
        if not region_name:
            region_name = "ap-northeast-1"
        try:
            return DynamoHistoryStore(table_name=table_name, region_name=region_name)
        except (BotoCoreError, ClientError) as exc:
            LOGGER.warning("DynamoDB history store unavailable, using local file: %s", exc)

    history_file = os.environ.get("HISTORY_FILE", "").strip()
    return JsonFileHistoryStore(history_file or DEFAULT_HISTORY_FILE)
