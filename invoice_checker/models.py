from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Tuple


class PrizeType(Enum):
    SPECIAL = "special"
    GRAND = "grand"
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FOURTH = "fourth"
    FIFTH = "fifth"
    SIXTH = "sixth"
    NONE = "none"


@dataclass(frozen=True)
class PrizeInfo:
    rank: int
    amount: int
    label: str


PRIZE_TABLE: Dict[PrizeType, PrizeInfo] = {
    PrizeType.SPECIAL: PrizeInfo(rank=0, amount=10_000_000, label="特別獎 (1000萬)"),
    PrizeType.GRAND: PrizeInfo(rank=1, amount=2_000_000, label="特獎 (200萬)"),
    PrizeType.FIRST: PrizeInfo(rank=2, amount=200_000, label="頭獎 (20萬)"),
    PrizeType.SECOND: PrizeInfo(rank=3, amount=40_000, label="二獎 (4萬)"),
    PrizeType.THIRD: PrizeInfo(rank=4, amount=10_000, label="三獎 (1萬)"),
    PrizeType.FOURTH: PrizeInfo(rank=5, amount=4_000, label="四獎 (4000)"),
    PrizeType.FIFTH: PrizeInfo(rank=6, amount=1_000, label="五獎 (1000)"),
    PrizeType.SIXTH: PrizeInfo(rank=7, amount=200, label="六獎 (200)"),
    PrizeType.NONE: PrizeInfo(rank=99, amount=0, label="未中獎"),
}

# Matching trailing-digit run length against a first-prize number.
TRAILING_RUN_PRIZES: Dict[int, PrizeType] = {
    8: PrizeType.FIRST,
    7: PrizeType.SECOND,
    6: PrizeType.THIRD,
    5: PrizeType.FOURTH,
    4: PrizeType.FIFTH,
    3: PrizeType.SIXTH,
}


def prize_amount(prize_type: PrizeType) -> int:
    return PRIZE_TABLE[prize_type].amount


def prize_label(prize_type: PrizeType) -> str:
    return PRIZE_TABLE[prize_type].label


def prize_rank(prize_type: PrizeType) -> int:
    return PRIZE_TABLE[prize_type].rank


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class WinningNumbers:
    period: str
    special_prize: str
    grand_prize: str
    first_prize: List[str]
    additional_sixth_prize: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "specialPrize": self.special_prize,
            "grandPrize": self.grand_prize,
            "firstPrize": list(self.first_prize),
            "additionalSixthPrize": list(self.additional_sixth_prize),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WinningNumbers:
        return cls(
            period=str(_pick(data, "period", default="")),
            special_prize=str(_pick(data, "special_prize", "specialPrize", default="")),
            grand_prize=str(_pick(data, "grand_prize", "grandPrize", default="")),
            first_prize=[str(n) for n in _pick(data, "first_prize", "firstPrize", default=[])],
            additional_sixth_prize=[
                str(n) for n in _pick(data, "additional_sixth_prize", "additionalSixthPrize", default=[])
            ],
        )


@dataclass(frozen=True)
class CheckResult:
    is_match: bool
    prize_type: PrizeType
    amount: int = 0
    matched_number: str = ""
    description: str = ""
    period: str = ""
    is_current_period: bool = False
    is_partial: bool = False

    @property
    def prize_label(self) -> str:
        return prize_label(self.prize_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isMatch": self.is_match,
            "prizeType": self.prize_type.value,
            "prizeLabel": self.prize_label,
            "amount": self.amount,
            "matchedNumber": self.matched_number,
            "description": self.description,
            "period": self.period,
            "isCurrentPeriod": self.is_current_period,
            "isPartial": self.is_partial,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CheckResult:
        try:
            prize_type = PrizeType(_pick(data, "prize_type", "prizeType", default="none"))
        except ValueError:
            prize_type = PrizeType.NONE
        return cls(
            is_match=bool(_pick(data, "is_match", "isMatch", default=False)),
            prize_type=prize_type,
            amount=int(_pick(data, "amount", default=0)),
            matched_number=str(_pick(data, "matched_number", "matchedNumber", default="")),
            description=str(_pick(data, "description", default="")),
            period=str(_pick(data, "period", default="")),
            is_current_period=bool(_pick(data, "is_current_period", "isCurrentPeriod", default=False)),
            is_partial=bool(_pick(data, "is_partial", "isPartial", default=False)),
        )


NO_MATCH = CheckResult(is_match=False, prize_type=PrizeType.NONE)


@dataclass(frozen=True)
class HistoryItem:
    id: str
    number: str
    timestamp: int
    result: CheckResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "timestamp": self.timestamp,
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HistoryItem:
        return cls(
            id=str(data.get("id", "")),
            number=str(data.get("number", "")),
            timestamp=int(data.get("timestamp", 0)),
            result=CheckResult.from_dict(data.get("result") or {}),
        )


@dataclass(frozen=True)
class ScanWindow:
    min_timestamp: int
    max_timestamp: int
    api_query_after: str
    api_query_before: str
    label: str
    min_date: datetime
    max_date: datetime

    def accepts(self, timestamp_ms: int) -> bool:
        return self.min_timestamp <= timestamp_ms <= self.max_timestamp


@dataclass(frozen=True)
class InvoiceNumberMatch:
    parsed_number: str
    full_number: str


@dataclass(frozen=True)
class MessageDetail:
    id: str
    internal_date: str
    subject: str
    snippet: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmailCandidate:
    id: str
    internal_date: str
    subject: str
    snippet: str = ""
    parsed_number: str | None = None
    full_number: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "internalDate": self.internal_date,
            "subject": self.subject,
            "snippet": self.snippet,
            "parsedNumber": self.parsed_number,
            "fullNumber": self.full_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EmailCandidate:
        return cls(
            id=str(data.get("id", "")),
            internal_date=str(_pick(data, "internal_date", "internalDate", default="0")),
            subject=str(data.get("subject", "")),
            snippet=str(data.get("snippet", "")),
            parsed_number=_pick(data, "parsed_number", "parsedNumber"),
            full_number=_pick(data, "full_number", "fullNumber"),
        )


@dataclass(frozen=True)
class ScanLogEntry:
    message: EmailCandidate
    result: CheckResult

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message.to_dict(), "result": self.result.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ScanLogEntry:
        return cls(
            message=EmailCandidate.from_dict(data.get("message") or {}),
            result=CheckResult.from_dict(data.get("result") or {}),
        )


class ScanState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ScanProgress:
    state: ScanState
    message: str
    query: str = ""
    range_label: str = ""
    total_messages: int = 0
    processed: int = 0
    valid_date_count: int = 0
    winners: Tuple[ScanLogEntry, ...] = ()
    log: Tuple[ScanLogEntry, ...] = ()
    new_history_count: int = 0
    error: str = ""
    latest_entry: ScanLogEntry | None = None

    @property
    def finished(self) -> bool:
        return self.state in {ScanState.DONE, ScanState.ERROR, ScanState.CANCELLED}

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for streaming.

        Running snapshots carry only the entry added by the message just
        processed; the accumulated winners and log are sent once, in the
        finished snapshot.
        """
        if self.finished:
            winners = list(self.winners)
            log = list(self.log)
        else:
            log = [self.latest_entry] if self.latest_entry is not None else []
            winners = log if log and self.winners and self.winners[-1] is log[0] else []
        return {
            "state": self.state.value,
            "message": self.message,
            "query": self.query,
            "rangeLabel": self.range_label,
            "totalMessages": self.total_messages,
            "processed": self.processed,
            "validDateCount": self.valid_date_count,
            "winnerCount": len(self.winners),
            "logCount": len(self.log),
            "winners": [entry.to_dict() for entry in winners],
            "log": [entry.to_dict() for entry in log],
            "newHistoryCount": self.new_history_count,
            "error": self.error,
        }
