from __future__ import annotations

import json
import logging
import os
from datetime import timedelta
from time import time
from typing import Any, Dict, Iterator, List, Tuple

from dotenv import load_dotenv
from flask import Flask, Response, request, stream_with_context

from invoice_checker import (
    EmailScanPipeline,
    EtaxInvoiceClient,
    GmailAuthError,
    GmailClient,
    GmailSession,
    InvoiceDataError,
    NoWinningDataError,
    WinningNumbers,
    check_across_periods,
    create_history_store_from_env,
    history_to_csv,
    normalize_candidate,
    record_check,
    scan_log_to_csv,
    select_scan_periods,
)
from invoice_checker.checker import MIN_CANDIDATE_LENGTH

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, ".env"), override=False)

LOGGER = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


app = Flask(__name__)
client = EtaxInvoiceClient(
    timeout_seconds=_env_int("ETAX_TIMEOUT_SECONDS", 10),
    cache_ttl=timedelta(hours=_env_int("ETAX_CACHE_HOURS", 24)),
)
history_store = create_history_store_from_env()


def _truthy(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _error(message: str, status: int) -> Tuple[Dict[str, str], int]:
    return {"error": message}, status


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _selected_index(body: Dict[str, Any]) -> int:
    try:
        return int(body.get("index", 0))
    except (TypeError, ValueError):
        return 0


def _load_periods(body: Dict[str, Any]) -> List[WinningNumbers]:
    raw_periods = body.get("periods")
    if isinstance(raw_periods, list):
        return [WinningNumbers.from_dict(row) for row in raw_periods if isinstance(row, dict)]
    return client.get_winning_numbers()


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


def _build_scan_pipeline(session: GmailSession) -> EmailScanPipeline:
    return EmailScanPipeline(
        GmailClient(session),
        history_store,
        label=os.environ.get("GMAIL_INVOICE_LABEL", "").strip() or "電子發票",
        max_messages=_env_int("SCAN_MAX_MESSAGES", 2000),
        delay_seconds=_env_int("SCAN_DELAY_MS", 5) / 1000,
    )


@app.get("/api/winning-numbers")
def winning_numbers() -> Tuple[Dict[str, Any], int]:
    try:
        periods = client.get_winning_numbers(force_refresh=_truthy(request.args.get("refresh", "")))
    except InvoiceDataError as exc:
        LOGGER.warning("Winning numbers unavailable: %s", exc)
        return _error(str(exc), 502)
    return {"periods": [period.to_dict() for period in periods]}, 200


@app.post("/api/check")
def check_number() -> Tuple[Dict[str, Any], int]:
    body = _json_body()
    number = normalize_candidate(str(body.get("number", "")))

    try:
        periods = select_scan_periods(_load_periods(body), _selected_index(body))
    except InvoiceDataError as exc:
        return _error(str(exc), 502)

    result = check_across_periods(number, periods)
    if periods and len(number) >= MIN_CANDIDATE_LENGTH:
        now_ms = int(time() * 1000)
        history = history_store.update_history(lambda current: record_check(current, number, result, now_ms))
    else:
        history = history_store.get_history()

    return {
        "number": number,
        "result": result.to_dict(),
        "history": [item.to_dict() for item in history],
    }, 200


@app.get("/api/history")
def get_history() -> Tuple[Dict[str, Any], int]:
    return {"history": [item.to_dict() for item in history_store.get_history()]}, 200


@app.delete("/api/history")
def clear_history() -> Tuple[Dict[str, Any], int]:
    history_store.clear_history()
    return {"history": []}, 200


@app.get("/api/history.csv")
def export_history() -> Response:
    return Response(
        history_to_csv(history_store.get_history()),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=invoice_history.csv"},
    )


@app.get("/api/records")
def get_records() -> Tuple[Dict[str, Any], int]:
    return {"records": [entry.to_dict() for entry in history_store.get_records()]}, 200


@app.get("/api/records.csv")
def export_records() -> Response:
    return Response(
        scan_log_to_csv(history_store.get_records()),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=invoice_scan_records.csv"},
    )


@app.post("/api/scan")
def scan_mailbox() -> Response | Tuple[Dict[str, str], int]:
    token = _bearer_token()
    if not token:
        return _error("尚未登入 Gmail", 401)

    body = _json_body()
    try:
        periods = select_scan_periods(_load_periods(body), _selected_index(body))
        session = GmailSession(token)
        snapshots = _build_scan_pipeline(session).scan(periods)
    except InvoiceDataError as exc:
        return _error(str(exc), 502)
    except NoWinningDataError as exc:
        return _error(str(exc), 400)
    except GmailAuthError as exc:
        return _error(str(exc), 401)

    def generate() -> Iterator[str]:
        for snapshot in snapshots:
            yield json.dumps(snapshot.to_dict(), ensure_ascii=False) + "\n"
        session.invalidate()

    return Response(stream_with_context(generate()), mimetype="application/x-ndjson")


@app.get("/health")
def health() -> tuple[Dict[str, str], int]:
    return {"status": "ok"}, 200


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    host = os.environ.get("HOST", "127.0.0.1")
    port = _env_int("PORT", 5000)
    debug = _truthy(os.environ.get("FLASK_DEBUG", ""))
    app.run(host=host, port=port, debug=debug)
