from __future__ import annotations

from typing import List, Sequence

from .models import (
    TRAILING_RUN_PRIZES,
    CheckResult,
    PrizeType,
    WinningNumbers,
    prize_amount,
    prize_rank,
)

FULLWIDTH_DIGITS = str.maketrans("０１２３４５６７８９", "0123456789")
MIN_CANDIDATE_LENGTH = 3
MAX_CANDIDATE_LENGTH = 8
MAX_CHECK_PERIODS = 2

TOO_SHORT_DESCRIPTION = "請輸入至少後 3 碼"
NO_DATA_DESCRIPTION = "尚未載入中獎號碼"
SPECIAL_PARTIAL_DESCRIPTION = "與特別獎末碼相同，請核對 8 碼"
GRAND_PARTIAL_DESCRIPTION = "與特獎末碼相同，請核對 8 碼"
FIRST_TAIL_SIXTH_DESCRIPTION = "符合頭獎後三碼 (六獎)"
ADDITIONAL_SIXTH_DESCRIPTION = "增開六獎"


def normalize_candidate(raw: str | None) -> str:
    if not raw:
        return ""
    normalized = raw.strip().translate(FULLWIDTH_DIGITS)
    # Invoice numbers are 8 digits; longer input keeps its first 8.
    return "".join(ch for ch in normalized if ch.isdigit())[:MAX_CANDIDATE_LENGTH]


def trailing_match_length(candidate: str, winning_number: str) -> int:
    count = 0
    for left, right in zip(reversed(candidate), reversed(winning_number)):
        if left != right:
            break
        count += 1
    return count


def _result(
    winning: WinningNumbers,
    is_current_period: bool,
    prize_type: PrizeType,
    matched_number: str,
    description: str = "",
) -> CheckResult:
    return CheckResult(
        is_match=True,
        prize_type=prize_type,
        amount=prize_amount(prize_type),
        matched_number=matched_number,
        description=description,
        period=winning.period,
        is_current_period=is_current_period,
    )


def _exact_or_partial(
    candidate: str,
    prize_number: str,
    prize_type: PrizeType,
    partial_description: str,
    winning: WinningNumbers,
    is_current_period: bool,
) -> CheckResult | None:
    if not prize_number:
        return None
    if candidate == prize_number:
        return _result(winning, is_current_period, prize_type, prize_number)
    if prize_number.endswith(candidate):
        return CheckResult(
            is_match=True,
            prize_type=prize_type,
            amount=0,
            matched_number=prize_number,
            description=partial_description,
            period=winning.period,
            is_current_period=is_current_period,
            is_partial=True,
        )
    return None


def _best_first_prize_match(
    candidate: str,
    winning: WinningNumbers,
    is_current_period: bool,
) -> CheckResult | None:
    best: CheckResult | None = None
    for first in winning.first_prize:
        prize_type = TRAILING_RUN_PRIZES.get(trailing_match_length(candidate, first))
        if prize_type is None:
            continue
        description = FIRST_TAIL_SIXTH_DESCRIPTION if prize_type is PrizeType.SIXTH else ""
        current = _result(winning, is_current_period, prize_type, first, description)
        if best is None or prize_rank(current.prize_type) < prize_rank(best.prize_type):
            best = current
    return best


def check_invoice(candidate: str, winning: WinningNumbers, is_current_period: bool = False) -> CheckResult:
    """Match one invoice number (3-8 digits) against a single period.

    Special and grand prizes need all 8 digits; a shorter input that equals
    their trailing digits comes back as a partial match with no amount.
    """
    number = normalize_candidate(candidate)
    if len(number) < MIN_CANDIDATE_LENGTH:
        return CheckResult(
            is_match=False,
            prize_type=PrizeType.NONE,
            amount=0,
            description=TOO_SHORT_DESCRIPTION,
            period=winning.period,
            is_current_period=is_current_period,
        )

    special = _exact_or_partial(
        number,
        winning.special_prize,
        PrizeType.SPECIAL,
        SPECIAL_PARTIAL_DESCRIPTION,
        winning,
        is_current_period,
    )
    if special:
        return special

    grand = _exact_or_partial(
        number,
        winning.grand_prize,
        PrizeType.GRAND,
        GRAND_PARTIAL_DESCRIPTION,
        winning,
        is_current_period,
    )
    if grand:
        return grand

    first = _best_first_prize_match(number, winning, is_current_period)
    if first:
        return first

    for extra in winning.additional_sixth_prize:
        if extra and number.endswith(extra):
            return _result(winning, is_current_period, PrizeType.SIXTH, extra, ADDITIONAL_SIXTH_DESCRIPTION)

    return CheckResult(
        is_match=False,
        prize_type=PrizeType.NONE,
        amount=0,
        period=winning.period,
        is_current_period=is_current_period,
    )


def _prefer(best: CheckResult | None, current: CheckResult) -> CheckResult:
    if best is None:
        return current
    if best.is_partial and not current.is_partial:
        return current
    if not best.is_partial and not current.is_partial and current.amount > best.amount:
        return current
    return best


def check_across_periods(candidate: str, periods: Sequence[WinningNumbers]) -> CheckResult:
    """Check a number against the current period (index 0) and the ones after it.

    A confirmed win beats a partial one, a bigger amount beats a smaller one,
    and otherwise the earlier period is kept.
    """
    if not periods:
        return CheckResult(is_match=False, prize_type=PrizeType.NONE, description=NO_DATA_DESCRIPTION)

    best: CheckResult | None = None
    for index, winning in enumerate(periods):
        result = check_invoice(candidate, winning, is_current_period=index == 0)
        if result.is_match:
            best = _prefer(best, result)

    if best is not None:
        return best
    return check_invoice(candidate, periods[0], is_current_period=True)


def select_scan_periods(periods: Sequence[WinningNumbers], index: int = 0) -> List[WinningNumbers]:
    if not periods:
        return []
    start = min(max(index, 0), len(periods) - 1)
    return list(periods[start : start + MAX_CHECK_PERIODS])
