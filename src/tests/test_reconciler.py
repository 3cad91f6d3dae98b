from datetime import timedelta

import pytest

from libris import models
from libris.actions import loans
from libris.actions.common import utcnow
from libris.worker import reconciler
from conftest import caller_for

pytestmark = pytest.mark.asyncio

async def test_reconcile_once_marks_past_due_loans(session, session_factory, librarian, student, book, monkeypatch):
    monkeypatch.setattr(reconciler, "SessionLocal", session_factory)
    issued = await loans.issue_book(session, caller=caller_for(librarian), book_id=book.id,
                                    borrower_id=student.id, now=utcnow() - timedelta(days=20))
    assert await reconciler.reconcile_once() == 1
    assert await reconciler.reconcile_once() == 0

    loan = await session.get(models.Loan, issued["data"]["loan_id"], populate_existing=True)
    assert loan.status == models.LoanStatus.OVERDUE
