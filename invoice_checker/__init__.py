from .checker import check_across_periods, check_invoice, normalize_candidate, select_scan_periods
from .etax import EtaxInvoiceClient, InvoiceDataError
from .export import history_to_csv, scan_log_to_csv
from .gmail import GmailApiError, GmailAuthError, GmailClient, GmailSession
from .history import (
    DynamoHistoryStore,
    JsonFileHistoryStore,
    create_history_store_from_env,
    record_check,
)
from .models import CheckResult, HistoryItem, PrizeType, ScanProgress, ScanState, WinningNumbers
from .periods import resolve_scan_window
from .scanner import CancellationToken, EmailScanPipeline, NoWinningDataError

__all__ = [
    "CancellationToken",
    "CheckResult",
    "DynamoHistoryStore",
    "EmailScanPipeline",
    "EtaxInvoiceClient",
    "GmailApiError",
    "GmailAuthError",
    "GmailClient",
    "GmailSession",
    "HistoryItem",
    "InvoiceDataError",
    "JsonFileHistoryStore",
    "NoWinningDataError",
    "PrizeType",
    "ScanProgress",
    "ScanState",
    "WinningNumbers",
    "check_across_periods",
    "check_invoice",
    "create_history_store_from_env",
    "history_to_csv",
    "normalize_candidate",
    "record_check",
    "resolve_scan_window",
    "scan_log_to_csv",
    "select_scan_periods",
]
