from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from libris import rules
from libris.models import LoanStatus
from libris.rules import LoanTerms, Rejection, RenewalBasis, Stock

def _loan(due="2024-01-20", issued="2024-01-06", **kw):
    return LoanTerms(
        issue_date=datetime.fromisoformat(issued),
        due_date=datetime.fromisoformat(due),
        **kw,
    )

def test_renew_extends_from_now_and_counts():
    loan = _loan()
    out = rules.renew(loan, datetime(2024, 1, 18), 14)
    assert isinstance(out, LoanTerms)
    assert out.due_date == datetime(2024, 2, 1)
    assert out.renewal_count == 1
    assert out.status == LoanStatus.ISSUED
    # el snapshot de entrada no cambia
    assert loan.renewal_count == 0

def test_renew_from_due_date_basis():
    out = rules.renew(_loan(), datetime(2024, 1, 18), 14, basis=RenewalBasis.DUE_DATE)
    assert out.due_date == datetime(2024, 2, 3)

def test_renew_at_limit_is_rejected():
    out = rules.renew(_loan(renewal_count=2, max_renewals=2), datetime(2024, 1, 18))
    assert out == Rejection(rules.NOT_ELIGIBLE, "renewal limit reached")

def test_renew_overdue_is_rejected():
    out = rules.renew(_loan(), datetime(2024, 1, 21))
    assert out == Rejection(rules.NOT_ELIGIBLE, "loan is overdue")

def test_limit_reason_wins_over_overdue():
    loan = _loan(renewal_count=2, status=LoanStatus.OVERDUE)
    assert rules.renewal_block(loan, datetime(2024, 1, 25)) == rules.REASON_LIMIT

def test_can_renew_boundary_at_due_instant():
    loan = _loan()
    due = loan.due_date
    assert rules.can_renew(loan, due) is True
    assert rules.can_renew(loan, due + timedelta(microseconds=1)) is False

def test_persisted_overdue_status_blocks_even_before_due():
    loan = _loan(status=LoanStatus.OVERDUE)
    assert rules.can_renew(loan, datetime(2024, 1, 10)) is False

def test_renew_returned_loan_is_a_contract_violation():
    loan = _loan(status=LoanStatus.RETURNED, return_date=datetime(2024, 1, 15))
    with pytest.raises(ValueError):
        rules.renew(loan, datetime(2024, 1, 16))
    with pytest.raises(ValueError):
        rules.can_renew(loan, datetime(2024, 1, 16))

@pytest.mark.parametrize("days", [0, -3])
def test_renew_non_positive_days(days):
    with pytest.raises(ValueError):
        rules.renew(_loan(), datetime(2024, 1, 18), days)

def test_renew_twice_then_limit():
    now = datetime(2024, 1, 18)
    first = rules.renew(_loan(), now)
    second = rules.renew(first, now)
    assert second.renewal_count == 2
    assert isinstance(rules.renew(second, now), Rejection)

@pytest.mark.parametrize("due, as_of, expected", [
    (date(2024, 1, 10), date(2024, 1, 15), 5),
    (date(2024, 1, 10), date(2024, 1, 10), 0),
    (date(2024, 1, 10), date(2024, 1, 3), 0),
    (datetime(2024, 1, 10, 12), datetime(2024, 1, 10, 13), 1),
    (datetime(2024, 1, 10), datetime(2024, 1, 12, 0, 0, 1), 3),
])
def test_compute_overdue_days(due, as_of, expected):
    assert rules.compute_overdue_days(due, as_of) == expected

def test_compute_fine_rounds_half_up():
    assert rules.compute_fine(5, Decimal("1.00")) == Decimal("5.00")
    assert rules.compute_fine(3, "0.125") == Decimal("0.38")
    assert rules.compute_fine(0, 1) == Decimal("0.00")

def test_compute_fine_rejects_negative():
    with pytest.raises(ValueError):
        rules.compute_fine(-1, 1)
    with pytest.raises(ValueError):
        rules.compute_fine(1, "-0.50")

def test_return_late_sets_fine():
    loan = _loan(due="2024-01-10", issued="2023-12-27")
    out = rules.return_loan(loan, datetime(2024, 1, 15), Decimal("1.00"))
    assert out.status == LoanStatus.RETURNED
    assert out.return_date == datetime(2024, 1, 15)
    assert out.fine_amount == Decimal("5.00")

def test_return_on_time_no_fine():
    out = rules.return_loan(_loan(), datetime(2024, 1, 19), Decimal("1.00"))
    assert out.fine_amount == Decimal("0.00")

def test_return_twice_is_rejected():
    loan = _loan(status=LoanStatus.RETURNED, return_date=datetime(2024, 1, 19))
    out = rules.return_loan(loan, datetime(2024, 1, 20), 1)
    assert out == Rejection(rules.ALREADY_RETURNED, "loan already returned")

def test_return_before_issue_raises():
    with pytest.raises(ValueError):
        rules.return_loan(_loan(), datetime(2024, 1, 1), 1)

def test_issue_decrements_stock():
    out = rules.issue_loan(Stock(total_copies=3, available_copies=1, borrow_count=7), datetime(2024, 3, 1))
    stock, terms = out
    assert stock == Stock(3, 0, 8)
    assert terms.due_date == datetime(2024, 3, 15)
    assert terms.renewal_count == 0
    assert terms.status == LoanStatus.ISSUED

def test_issue_out_of_stock():
    out = rules.issue_loan(Stock(total_copies=2, available_copies=0), datetime(2024, 3, 1))
    assert out == Rejection(rules.OUT_OF_STOCK, "no copies available")

def test_effective_status_and_accrual():
    loan = _loan(due="2024-01-10", issued="2023-12-27")
    as_of = datetime(2024, 1, 13)
    assert rules.effective_status(loan, as_of) == LoanStatus.OVERDUE
    assert rules.effective_status(loan, datetime(2024, 1, 9)) == LoanStatus.ISSUED
    assert rules.accrued_fine(loan, as_of, "0.50") == Decimal("1.50")
    settled = _loan(status=LoanStatus.RETURNED, return_date=datetime(2024, 1, 20), fine_amount=Decimal("2"))
    assert rules.accrued_fine(settled, datetime(2024, 6, 1), 1) == Decimal("2.00")

def test_aware_instants_are_read_as_utc():
    loan = _loan()
    plus_two = timezone(timedelta(hours=2))
    # 01:00 +02:00 es 23:00 UTC del día anterior al vencimiento
    assert rules.can_renew(loan, datetime(2024, 1, 20, 1, 0, tzinfo=plus_two)) is True
    assert rules.compute_overdue_days(loan.due_date, datetime(2024, 1, 22, tzinfo=timezone.utc)) == 2
    out = rules.return_loan(loan, datetime(2024, 1, 22, 2, 0, tzinfo=plus_two), Decimal("1.00"))
    assert out.return_date == datetime(2024, 1, 22)
    assert out.return_date.tzinfo is None
    assert out.fine_amount == Decimal("2.00")
