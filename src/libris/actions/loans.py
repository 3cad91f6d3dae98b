from __future__ import annotations
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, or_

from libris import rules
from libris.config import settings
from libris.models import (
    Book, Loan, Profile, Fine,
    LoanStatus, FineStatus, ReadingStatus,
)
from libris.schemas import Caller
from libris.actions.common import (
    _ok, _err, utcnow, is_staff, require_staff, require_self_or_staff, store_guard,
)
from libris.actions.reservations import fulfil_reservation, signal_copy_available
from libris.actions.readers import record_reading

logger = logging.getLogger(__name__)

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def loan_view(loan: Loan, now: datetime) -> Dict[str, Any]:
    returned = loan.status == LoanStatus.RETURNED
    as_of = loan.return_date if returned else now
    return {
        "loan_id": loan.id,
        "book_id": loan.book_id,
        "user_id": loan.user_id,
        "issue_date": _iso(loan.issue_date),
        "due_date": _iso(loan.due_date),
        "return_date": _iso(loan.return_date),
        "status": rules.effective_status(loan, now).value,
        "renewal_count": loan.renewal_count,
        "max_renewals": loan.max_renewals,
        "can_renew": (not returned) and rules.can_renew(loan, now),
        "days_overdue": rules.compute_overdue_days(loan.due_date, as_of),
        "fine_amount": str(rules.accrued_fine(loan, now, settings.FINE_DAILY_RATE)),
    }

def _overdue_clause(now: datetime):
    # vencido en fecha o ya marcado por el reconciliador
    return or_(Loan.due_date < now, Loan.status == LoanStatus.OVERDUE)

@store_guard
async def issue_book(
    session: AsyncSession, *, caller: Caller, book_id: str,
    borrower_id: Optional[str] = None, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    borrower_id = borrower_id or caller.user_id
    denied = require_self_or_staff(caller, borrower_id)
    if denied:
        return denied
    book = await session.get(Book, book_id)
    if not book:
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    borrower = await session.get(Profile, borrower_id)
    if not borrower:
        return _err("Borrower not found.", code="USER_NOT_FOUND")
    if not borrower.is_active:
        return _err("Borrower account is inactive.", code="USER_INACTIVE")
    r_dup = await session.execute(
        select(Loan.id).where(
            Loan.user_id == borrower_id, Loan.book_id == book_id, Loan.return_date.is_(None)
        )
    )
    if r_dup.first():
        return _err("Borrower already has this book on loan.", code="ALREADY_BORROWED")

    outcome = rules.issue_loan(book, now, settings.LOAN_PERIOD_DAYS, settings.MAX_RENEWALS)
    if isinstance(outcome, rules.Rejection):
        logger.debug("[issue] book=%s rejected: %s", book_id, outcome.reason)
        return _err(outcome.reason, code=outcome.code)
    _stock, terms = outcome

    # decremento condicionado: dos préstamos simultáneos no pueden dejar el stock negativo
    r_take = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.available_copies > 0)
        .values(available_copies=Book.available_copies - 1, borrow_count=Book.borrow_count + 1)
        .execution_options(synchronize_session=False)
    )
    if r_take.rowcount != 1:
        await session.rollback()
        logger.debug("[issue] book=%s lost the stock race", book_id)
        return _err(rules.REASON_NO_COPIES, code=rules.OUT_OF_STOCK)

    loan = Loan(
        book_id=book_id,
        user_id=borrower_id,
        issue_date=terms.issue_date,
        due_date=terms.due_date,
        status=terms.status,
        renewal_count=terms.renewal_count,
        max_renewals=terms.max_renewals,
        fine_amount=terms.fine_amount,
    )
    session.add(loan)
    reservation_id = await fulfil_reservation(session, user_id=borrower_id, book_id=book_id)
    await record_reading(session, user_id=borrower_id, book_id=book_id, status=ReadingStatus.READING)
    await session.commit()
    await session.refresh(book)
    await session.refresh(loan)
    logger.info("[issue] loan=%s book=%s user=%s due=%s", loan.id, book_id, borrower_id, loan.due_date)
    return _ok(
        "Book issued successfully.",
        loan_id=loan.id, book_id=book_id, user_id=borrower_id,
        issue_date=_iso(loan.issue_date), due_date=_iso(loan.due_date),
        available_copies=book.available_copies, borrow_count=book.borrow_count,
        fulfilled_reservation_id=reservation_id,
    )

@store_guard
async def return_book(
    session: AsyncSession, *, caller: Caller, loan_id: str,
    return_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    return_date = return_date or utcnow()
    loan = await session.get(Loan, loan_id)
    if not loan:
        return _err("Loan not found.", code="LOAN_NOT_FOUND")
    denied = require_self_or_staff(caller, loan.user_id)
    if denied:
        return denied
    try:
        outcome = rules.return_loan(loan, return_date, settings.FINE_DAILY_RATE)
    except ValueError as ex:
        return _err(str(ex), code="INVALID_RETURN_DATE")
    if isinstance(outcome, rules.Rejection):
        return _err(outcome.reason, code=outcome.code)

    r_close = await session.execute(
        update(Loan)
        .where(Loan.id == loan_id, Loan.return_date.is_(None))
        .values(return_date=outcome.return_date, status=outcome.status, fine_amount=outcome.fine_amount)
        .execution_options(synchronize_session=False)
    )
    if r_close.rowcount != 1:
        await session.rollback()
        return _err(rules.REASON_RETURNED, code=rules.ALREADY_RETURNED)

    r_put = await session.execute(
        update(Book)
        .where(Book.id == loan.book_id, Book.available_copies < Book.total_copies)
        .values(available_copies=Book.available_copies + 1)
        .execution_options(synchronize_session=False)
    )
    if r_put.rowcount != 1:
        logger.warning("[return] book=%s already at total_copies, copy count not incremented", loan.book_id)

    days = rules.compute_overdue_days(loan.due_date, outcome.return_date)
    fine_id = None
    if outcome.fine_amount > 0:
        fine = Fine(
            user_id=loan.user_id,
            issued_book_id=loan.id,
            amount=outcome.fine_amount,
            reason=f"Returned {days} day(s) late",
            status=FineStatus.PENDING,
        )
        session.add(fine)
        await session.flush()
        fine_id = fine.id
    await record_reading(session, user_id=loan.user_id, book_id=loan.book_id, status=ReadingStatus.COMPLETED)
    notified = await signal_copy_available(session, book_id=loan.book_id, now=outcome.return_date)
    await session.commit()
    await session.refresh(loan)
    logger.info("[return] loan=%s late_days=%s fine=%s", loan_id, days, outcome.fine_amount)
    return _ok(
        "Book returned with a fine." if fine_id else "Book returned without any fine.",
        loan_id=loan.id, return_date=_iso(loan.return_date), days_overdue=days,
        fine_amount=str(outcome.fine_amount), fine_id=fine_id,
        notified_reservation_id=notified,
    )

async def can_renew_book(session: AsyncSession, *, loan_id: str, now: Optional[datetime] = None) -> bool:
    loan = await session.get(Loan, loan_id)
    if not loan or loan.status == LoanStatus.RETURNED:
        return False
    return rules.can_renew(loan, now or utcnow())

@store_guard
async def renew_book(
    session: AsyncSession, *, loan_id: str, renewal_days: Optional[int] = None,
    caller: Optional[Caller] = None, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    renewal_days = settings.RENEWAL_DAYS if renewal_days is None else renewal_days
    if renewal_days <= 0:
        return _err("renewal_days must be positive.", code="INVALID_RENEWAL_DAYS")
    loan = await session.get(Loan, loan_id)
    if not loan:
        return _err("Loan not found.", code="LOAN_NOT_FOUND")
    if caller is not None:
        denied = require_self_or_staff(caller, loan.user_id)
        if denied:
            return denied
    if loan.status == LoanStatus.RETURNED:
        return _err(rules.REASON_RETURNED, code=rules.ALREADY_RETURNED)

    outcome = rules.renew(loan, now, renewal_days, basis=rules.RenewalBasis(settings.RENEWAL_BASIS))
    if isinstance(outcome, rules.Rejection):
        logger.debug("[renew] loan=%s rejected: %s", loan_id, outcome.reason)
        return _err(outcome.reason, code=outcome.code)

    seen_count = loan.renewal_count
    r_upd = await session.execute(
        update(Loan)
        .where(Loan.id == loan_id, Loan.renewal_count == seen_count, Loan.return_date.is_(None))
        .values(due_date=outcome.due_date, renewal_count=outcome.renewal_count)
        .execution_options(synchronize_session=False)
    )
    if r_upd.rowcount != 1:
        # otra renovación ganó: se re-evalúa contra el registro actualizado
        await session.rollback()
        fresh = await session.get(Loan, loan_id, populate_existing=True)
        if fresh is None or fresh.status == LoanStatus.RETURNED:
            return _err(rules.REASON_RETURNED, code=rules.ALREADY_RETURNED)
        reason = rules.renewal_block(fresh, now) or "loan was renewed concurrently, try again"
        return _err(reason, code=rules.NOT_ELIGIBLE)

    await session.commit()
    await session.refresh(loan)
    logger.info("[renew] loan=%s count=%s due=%s", loan_id, loan.renewal_count, loan.due_date)
    return _ok(
        "Book renewed successfully.",
        loan_id=loan.id, new_due_date=_iso(loan.due_date),
        renewal_count=loan.renewal_count, max_renewals=loan.max_renewals,
    )

@store_guard
async def list_loans_for_borrower(
    session: AsyncSession, *, caller: Caller, user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    user_id = user_id or caller.user_id
    denied = require_self_or_staff(caller, user_id)
    if denied:
        return denied
    rows = (await session.execute(
        select(Loan, Book.title)
        .join(Book, Book.id == Loan.book_id)
        .where(Loan.user_id == user_id)
        .order_by(Loan.issue_date.desc())
    )).all()
    items = [{**loan_view(loan, now), "book_title": title} for loan, title in rows]
    return _ok("Loans for borrower.", user_id=user_id, items=items)

@store_guard
async def list_overdue_loans(
    session: AsyncSession, *, caller: Caller, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    now = now or utcnow()
    rows = (await session.execute(
        select(Loan, Book.title, Profile)
        .join(Book, Book.id == Loan.book_id)
        .join(Profile, Profile.id == Loan.user_id)
        .where(Loan.return_date.is_(None), _overdue_clause(now))
        .order_by(Loan.due_date)
    )).all()
    items: List[Dict[str, Any]] = []
    total = Decimal("0.00")
    for loan, title, borrower in rows:
        view = loan_view(loan, now)
        total += Decimal(view["fine_amount"])
        items.append({**view, "book_title": title, "user_name": borrower.full_name})
    return _ok("Overdue loans.", items=items, total_fines=str(total))

async def _accruing_total(session: AsyncSession, now: datetime, user_id: Optional[str]) -> Decimal:
    q = select(Loan).where(Loan.return_date.is_(None), _overdue_clause(now))
    if user_id:
        q = q.where(Loan.user_id == user_id)
    loans = (await session.execute(q)).scalars().all()
    return sum((rules.accrued_fine(l, now, settings.FINE_DAILY_RATE) for l in loans), Decimal("0.00"))

@store_guard
async def outstanding_fines(
    session: AsyncSession, *, caller: Caller, user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    if user_id is None and not is_staff(caller):
        user_id = caller.user_id
    if user_id is not None:
        denied = require_self_or_staff(caller, user_id)
        if denied:
            return denied
    q = select(Fine).where(Fine.status == FineStatus.PENDING).order_by(Fine.created_at.desc())
    if user_id:
        q = q.where(Fine.user_id == user_id)
    fines = (await session.execute(q)).scalars().all()
    pending = sum((Decimal(f.amount) for f in fines), Decimal("0.00"))
    accruing = await _accruing_total(session, now, user_id)
    items = [{
        "fine_id": f.id, "user_id": f.user_id, "loan_id": f.issued_book_id,
        "amount": str(Decimal(f.amount).quantize(Decimal("0.01"))), "reason": f.reason, "status": f.status.value,
    } for f in fines]
    return _ok(
        "Outstanding fines.",
        user_id=user_id, items=items,
        pending=str(pending), accruing=str(accruing), total=str(pending + accruing),
    )

@store_guard
async def pay_fine(
    session: AsyncSession, *, caller: Caller, fine_id: str, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    fine = await session.get(Fine, fine_id)
    if not fine:
        return _err("Fine not found.", code="FINE_NOT_FOUND")
    if fine.status == FineStatus.PAID:
        return _err("Fine is already paid.", code="FINE_ALREADY_PAID")
    fine.status = FineStatus.PAID
    fine.paid_date = now or utcnow()
    await session.commit()
    logger.info("[fines] fine=%s paid amount=%s", fine_id, fine.amount)
    return _ok("Fine marked as paid.", fine_id=fine.id, paid_date=_iso(fine.paid_date))

@store_guard
async def dashboard_stats(
    session: AsyncSession, *, caller: Caller, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    now = now or utcnow()
    total_books = (await session.execute(select(func.count()).select_from(Book))).scalar_one()
    total_users = (await session.execute(select(func.count()).select_from(Profile))).scalar_one()
    issued = (await session.execute(
        select(func.count()).select_from(Loan).where(Loan.return_date.is_(None))
    )).scalar_one()
    overdue = (await session.execute(
        select(func.count()).select_from(Loan).where(Loan.return_date.is_(None), _overdue_clause(now))
    )).scalar_one()
    available = (await session.execute(select(func.coalesce(func.sum(Book.available_copies), 0)))).scalar_one()
    pending = (await session.execute(
        select(Fine.amount).where(Fine.status == FineStatus.PENDING)
    )).scalars().all()
    total_fines = sum((Decimal(a) for a in pending), Decimal("0.00")) + await _accruing_total(session, now, None)
    return _ok(
        "Dashboard statistics.",
        total_books=total_books, total_users=total_users, books_issued=issued,
        overdue_books=overdue, available_books=int(available), total_fines=str(total_fines),
    )

async def reconcile_overdue(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Persist status=overdue for issued loans that are past due. Safe to run repeatedly."""
    now = now or utcnow()
    candidates = (await session.execute(
        select(Loan).where(Loan.status == LoanStatus.ISSUED, Loan.return_date.is_(None), Loan.due_date < now)
    )).scalars().all()
    ids = [l.id for l in candidates if rules.is_overdue(l, now)]
    if not ids:
        return 0
    r = await session.execute(
        update(Loan)
        .where(Loan.id.in_(ids), Loan.status == LoanStatus.ISSUED, Loan.return_date.is_(None))
        .values(status=LoanStatus.OVERDUE)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    for l in candidates:
        await session.refresh(l)
    return r.rowcount
