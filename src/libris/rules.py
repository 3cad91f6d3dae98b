"""Loan lifecycle rules: renewal eligibility, due-date arithmetic and fines.

Everything in this module is pure. Callers pass the reference instant
(``now``/``as_of``) explicitly and get back new immutable snapshots; nothing
here reads the clock, touches the session or mutates its arguments. Expected
business outcomes (out of stock, renewal refused, already returned) come
back as a ``Rejection`` value. Contract violations raise ``ValueError``.

Functions accept either the snapshots defined here or any object exposing
the same attributes, so the ORM ``Loan``/``Book`` rows can be passed as-is.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Tuple, Union

from libris.models import LoanStatus

OUT_OF_STOCK = "OUT_OF_STOCK"
NOT_ELIGIBLE = "NOT_ELIGIBLE"
ALREADY_RETURNED = "ALREADY_RETURNED"

REASON_LIMIT = "renewal limit reached"
REASON_OVERDUE = "loan is overdue"
REASON_RETURNED = "loan already returned"
REASON_NO_COPIES = "no copies available"

DEFAULT_LOAN_DAYS = 14
DEFAULT_RENEWAL_DAYS = 14
DEFAULT_MAX_RENEWALS = 2

_CENT = Decimal("0.01")
_DAY_SECONDS = 86400


class RenewalBasis(str, enum.Enum):
    NOW = "now"
    DUE_DATE = "due_date"


@dataclass(frozen=True)
class Rejection:
    code: str
    reason: str


@dataclass(frozen=True)
class LoanTerms:
    issue_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ISSUED
    renewal_count: int = 0
    max_renewals: int = DEFAULT_MAX_RENEWALS
    return_date: Optional[datetime] = None
    fine_amount: Decimal = Decimal("0.00")

    @classmethod
    def of(cls, loan: Any) -> "LoanTerms":
        if isinstance(loan, cls):
            return loan
        return cls(
            issue_date=loan.issue_date,
            due_date=loan.due_date,
            status=LoanStatus(loan.status),
            renewal_count=loan.renewal_count,
            max_renewals=loan.max_renewals,
            return_date=loan.return_date,
            fine_amount=Decimal(loan.fine_amount or 0),
        )


@dataclass(frozen=True)
class Stock:
    total_copies: int
    available_copies: int
    borrow_count: int = 0

    @classmethod
    def of(cls, book: Any) -> "Stock":
        if isinstance(book, cls):
            return book
        return cls(book.total_copies, book.available_copies, book.borrow_count or 0)


def _as_datetime(value: Union[date, datetime]) -> datetime:
    """Naive UTC, the representation the store keeps."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, time.min)


def is_overdue(loan: Any, now: datetime) -> bool:
    if loan.status == LoanStatus.RETURNED:
        return False
    return loan.status == LoanStatus.OVERDUE or _as_datetime(now) > _as_datetime(loan.due_date)


def effective_status(loan: Any, now: datetime) -> LoanStatus:
    """Status as of ``now``; overdue is derived even when the row still says issued."""
    if loan.status == LoanStatus.RETURNED:
        return LoanStatus.RETURNED
    return LoanStatus.OVERDUE if is_overdue(loan, now) else LoanStatus.ISSUED


def renewal_block(loan: Any, now: datetime) -> Optional[str]:
    """Why ``loan`` cannot be renewed at ``now``, or None when it can."""
    if loan.status == LoanStatus.RETURNED:
        raise ValueError("renewal eligibility is undefined for a returned loan")
    if loan.renewal_count >= loan.max_renewals:
        return REASON_LIMIT
    if is_overdue(loan, now):
        return REASON_OVERDUE
    return None


def can_renew(loan: Any, now: datetime) -> bool:
    return renewal_block(loan, now) is None


def renew(
    loan: Any,
    now: datetime,
    renewal_days: int = DEFAULT_RENEWAL_DAYS,
    basis: RenewalBasis = RenewalBasis.NOW,
) -> Union[LoanTerms, Rejection]:
    if renewal_days <= 0:
        raise ValueError("renewal_days must be positive")
    reason = renewal_block(loan, now)
    if reason is not None:
        return Rejection(NOT_ELIGIBLE, reason)
    terms = LoanTerms.of(loan)
    now = _as_datetime(now)
    start = now if RenewalBasis(basis) == RenewalBasis.NOW else max(_as_datetime(terms.due_date), now)
    return replace(
        terms,
        due_date=start + timedelta(days=renewal_days),
        renewal_count=terms.renewal_count + 1,
    )


def compute_overdue_days(due_date: Union[date, datetime], as_of: Union[date, datetime]) -> int:
    """Whole days past due, counting any started day; 0 when not late."""
    seconds = (_as_datetime(as_of) - _as_datetime(due_date)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / _DAY_SECONDS)


def compute_fine(overdue_days: int, daily_rate: Union[Decimal, int, str]) -> Decimal:
    rate = Decimal(str(daily_rate))
    if overdue_days < 0 or rate < 0:
        raise ValueError("overdue_days and daily_rate must be non-negative")
    return (rate * overdue_days).quantize(_CENT, rounding=ROUND_HALF_UP)


def accrued_fine(loan: Any, as_of: datetime, daily_rate: Union[Decimal, int, str]) -> Decimal:
    """Fine owed on ``loan`` as of ``as_of``: live accrual while out, the settled amount once returned."""
    if loan.status == LoanStatus.RETURNED:
        return Decimal(loan.fine_amount or 0).quantize(_CENT)
    return compute_fine(compute_overdue_days(loan.due_date, as_of), daily_rate)


def return_loan(
    loan: Any,
    return_date: datetime,
    daily_rate: Union[Decimal, int, str],
) -> Union[LoanTerms, Rejection]:
    if loan.status == LoanStatus.RETURNED or loan.return_date is not None:
        return Rejection(ALREADY_RETURNED, REASON_RETURNED)
    if _as_datetime(return_date) < _as_datetime(loan.issue_date):
        raise ValueError("return_date precedes issue_date")
    terms = LoanTerms.of(loan)
    days = compute_overdue_days(terms.due_date, return_date)
    return replace(
        terms,
        return_date=_as_datetime(return_date),
        status=LoanStatus.RETURNED,
        fine_amount=compute_fine(days, daily_rate),
    )


def issue_loan(
    book: Any,
    now: datetime,
    loan_period_days: int = DEFAULT_LOAN_DAYS,
    max_renewals: int = DEFAULT_MAX_RENEWALS,
) -> Union[Tuple[Stock, LoanTerms], Rejection]:
    if loan_period_days <= 0:
        raise ValueError("loan_period_days must be positive")
    stock = Stock.of(book)
    if stock.available_copies <= 0:
        return Rejection(OUT_OF_STOCK, REASON_NO_COPIES)
    now = _as_datetime(now)
    taken = replace(
        stock,
        available_copies=stock.available_copies - 1,
        borrow_count=stock.borrow_count + 1,
    )
    terms = LoanTerms(
        issue_date=now,
        due_date=now + timedelta(days=loan_period_days),
        max_renewals=max_renewals,
    )
    return taken, terms

