from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from libris.models import Book, Loan, Reservation, Notification, ReservationStatus
from libris.schemas import Caller
from libris.actions.common import _ok, _err, utcnow, require_self_or_staff, store_guard

logger = logging.getLogger(__name__)

def _reservation_view(r: Reservation) -> Dict[str, Any]:
    return {
        "reservation_id": r.id,
        "book_id": r.book_id,
        "user_id": r.user_id,
        "request_date": r.request_date.isoformat(),
        "status": r.status.value,
    }

async def _pending_for(session: AsyncSession, *, user_id: str, book_id: str) -> Optional[Reservation]:
    r = await session.execute(
        select(Reservation).where(
            Reservation.user_id == user_id,
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.PENDING,
        )
    )
    return r.scalars().first()

@store_guard
async def reserve_book(
    session: AsyncSession, *, caller: Caller, book_id: str, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    book = await session.get(Book, book_id)
    if not book:
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    r_loan = await session.execute(
        select(Loan.id).where(
            Loan.user_id == caller.user_id, Loan.book_id == book_id, Loan.return_date.is_(None)
        )
    )
    if r_loan.first():
        return _err("You already have this book on loan.", code="ALREADY_BORROWED")
    if book.available_copies > 0:
        return _err("Copies are on the shelf; borrow the book instead.", code="BOOK_AVAILABLE")
    if await _pending_for(session, user_id=caller.user_id, book_id=book_id):
        return _err("You already have a pending reservation for this book.", code="ALREADY_RESERVED")
    res = Reservation(
        book_id=book_id,
        user_id=caller.user_id,
        request_date=now or utcnow(),
        status=ReservationStatus.PENDING,
    )
    session.add(res)
    await session.commit()
    await session.refresh(res)
    logger.info("[reserve] reservation=%s book=%s user=%s", res.id, book_id, caller.user_id)
    return _ok("Reservation placed.", **_reservation_view(res))

@store_guard
async def cancel_reservation(
    session: AsyncSession, *, caller: Caller, reservation_id: str,
) -> Dict[str, Any]:
    res = await session.get(Reservation, reservation_id)
    if not res:
        return _err("Reservation not found.", code="RESERVATION_NOT_FOUND")
    denied = require_self_or_staff(caller, res.user_id)
    if denied:
        return denied
    if res.status != ReservationStatus.PENDING:
        return _err("Only pending reservations can be cancelled.", code="RESERVATION_NOT_PENDING")
    res.status = ReservationStatus.CANCELLED
    await session.commit()
    return _ok("Reservation cancelled.", **_reservation_view(res))

@store_guard
async def list_reservations(
    session: AsyncSession, *, caller: Caller, user_id: Optional[str] = None,
) -> Dict[str, Any]:
    user_id = user_id or caller.user_id
    denied = require_self_or_staff(caller, user_id)
    if denied:
        return denied
    rows = (await session.execute(
        select(Reservation).where(Reservation.user_id == user_id).order_by(Reservation.request_date.desc())
    )).scalars().all()
    return _ok("Reservations.", items=[_reservation_view(r) for r in rows])

async def fulfil_reservation(session: AsyncSession, *, user_id: str, book_id: str) -> Optional[str]:
    """Mark the borrower's pending reservation for ``book_id`` fulfilled. Caller commits."""
    res = await _pending_for(session, user_id=user_id, book_id=book_id)
    if not res:
        return None
    res.status = ReservationStatus.FULFILLED
    return res.id

async def signal_copy_available(session: AsyncSession, *, book_id: str, now: datetime) -> Optional[str]:
    """Notify the earliest pending requester that a copy is back. Caller commits."""
    r = await session.execute(
        select(Reservation, Book.title)
        .join(Book, Book.id == Reservation.book_id)
        .where(Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING)
        .order_by(Reservation.request_date)
        .limit(1)
    )
    row = r.first()
    if not row:
        return None
    res, title = row
    session.add(Notification(
        user_id=res.user_id,
        title="Reserved book available",
        message=f"A copy of \"{title}\" has been returned and is ready to borrow.",
        type="reservation",
        created_at=now,
    ))
    logger.info("[reserve] copy of book=%s available, notified user=%s", book_id, res.user_id)
    return res.id

@store_guard
async def list_notifications(session: AsyncSession, *, caller: Caller, unread_only: bool = False) -> Dict[str, Any]:
    q = select(Notification).where(Notification.user_id == caller.user_id)
    if unread_only:
        q = q.where(Notification.is_read.is_(False))
    rows = (await session.execute(q.order_by(Notification.created_at.desc()))).scalars().all()
    return _ok("Notifications.", items=[{
        "notification_id": n.id, "title": n.title, "message": n.message,
        "type": n.type, "is_read": n.is_read, "created_at": n.created_at.isoformat(),
    } for n in rows])

@store_guard
async def mark_notification_read(session: AsyncSession, *, caller: Caller, notification_id: str) -> Dict[str, Any]:
    n = await session.get(Notification, notification_id)
    if not n or n.user_id != caller.user_id:
        return _err("Notification not found.", code="NOTIFICATION_NOT_FOUND")
    n.is_read = True
    await session.commit()
    return _ok("Notification marked as read.", notification_id=n.id)
