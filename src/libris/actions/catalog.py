from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, delete, or_

from libris.models import Book, Loan, Fine, Reservation, Favorite, ReadingHistory
from libris.schemas import Caller
from libris.actions.common import _ok, _err, require_staff, store_guard

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "author", "publisher", "genre", "isbn", "publication_year", "description")

def book_view(b: Book) -> Dict[str, Any]:
    return {
        "book_id": b.id,
        "call_number": b.call_number,
        "title": b.title,
        "author": b.author,
        "publisher": b.publisher,
        "genre": b.genre,
        "isbn": b.isbn,
        "publication_year": b.publication_year,
        "description": b.description,
        "total_copies": b.total_copies,
        "available_copies": b.available_copies,
        "borrow_count": b.borrow_count,
    }

async def _copies_on_loan(session: AsyncSession, book_id: str) -> int:
    r = await session.execute(
        select(func.count()).select_from(Loan).where(Loan.book_id == book_id, Loan.return_date.is_(None))
    )
    return int(r.scalar_one())

@store_guard
async def list_books(
    session: AsyncSession, *, search: Optional[str] = None, genre: Optional[str] = None,
) -> Dict[str, Any]:
    q = select(Book)
    if search and search.strip():
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(
            func.lower(Book.title).like(like),
            func.lower(Book.author).like(like),
            func.lower(Book.genre).like(like),
        ))
    if genre and genre != "All":
        q = q.where(Book.genre == genre)
    books: List[Book] = (await session.execute(q.order_by(Book.title))).scalars().all()
    if not books:
        return _ok("No books found.", items=[])
    return _ok("Book listing.", items=[book_view(b) for b in books])

@store_guard
async def get_book(session: AsyncSession, *, book_id: str) -> Dict[str, Any]:
    b = await session.get(Book, book_id)
    if not b:
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    return _ok("Book.", **book_view(b))

@store_guard
async def register_book(
    session: AsyncSession, *, caller: Caller, call_number: str, title: str, author: str,
    publisher: str, genre: str, total_copies: int = 1, isbn: Optional[str] = None,
    publication_year: Optional[int] = None, description: Optional[str] = None,
) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    if not (call_number and title and author):
        return _err("Missing book fields (call_number, title, author).", code="MISSING_FIELDS")
    if total_copies is None or total_copies < 0:
        return _err("total_copies must be zero or more.", code="INVALID_COPIES")
    call_number = call_number.strip()
    r = await session.execute(select(Book.id).where(Book.call_number == call_number))
    if r.first():
        return _err("Call number already exists.", code="CALL_NUMBER_EXISTS")
    b = Book(
        call_number=call_number, title=title.strip(), author=author.strip(),
        publisher=(publisher or "").strip(), genre=(genre or "").strip(),
        isbn=isbn or None, publication_year=publication_year, description=description or None,
        total_copies=total_copies, available_copies=total_copies, borrow_count=0,
    )
    session.add(b)
    await session.commit()
    await session.refresh(b)
    logger.info("[catalog] registered book=%s call_number=%s copies=%s", b.id, b.call_number, total_copies)
    return _ok("Book registered successfully.", **book_view(b))

@store_guard
async def update_book(session: AsyncSession, *, caller: Caller, book_id: str, **fields: Any) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        return _err(f"Fields not editable: {', '.join(sorted(unknown))}.", code="INVALID_FIELDS")
    b = await session.get(Book, book_id)
    if not b:
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    for name, value in fields.items():
        if value is not None:
            setattr(b, name, value)
    await session.commit()
    await session.refresh(b)
    return _ok("Book updated.", **book_view(b))

@store_guard
async def set_total_copies(session: AsyncSession, *, caller: Caller, book_id: str, total_copies: int) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    if total_copies is None or total_copies < 0:
        return _err("total_copies must be zero or more.", code="INVALID_COPIES")
    b = await session.get(Book, book_id)
    if not b:
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    # ajuste relativo a la fila vigente: un préstamo concurrente no se pierde
    r_set = await session.execute(
        update(Book)
        .where(Book.id == book_id, Book.total_copies - Book.available_copies <= total_copies)
        .values(
            available_copies=Book.available_copies + (total_copies - Book.total_copies),
            total_copies=total_copies,
        )
        .execution_options(synchronize_session=False)
    )
    if r_set.rowcount != 1:
        await session.rollback()
        on_loan = await _copies_on_loan(session, book_id)
        return _err(f"{on_loan} copies are on loan; total cannot drop below that.", code="COPIES_ON_LOAN")
    await session.commit()
    await session.refresh(b)
    logger.info("[catalog] book=%s copies set to %s (on loan %s)",
                book_id, b.total_copies, b.total_copies - b.available_copies)
    return _ok("Copy count updated.", **book_view(b))

@store_guard
async def delete_book(session: AsyncSession, *, caller: Caller, book_id: str) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    b = await session.get(Book, book_id)
    if not b:
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    if await _copies_on_loan(session, book_id):
        return _err("Book has copies on loan and cannot be deleted.", code="BOOK_ON_LOAN")
    removed_res = (await session.execute(delete(Reservation).where(Reservation.book_id == book_id))).rowcount
    await session.execute(delete(Favorite).where(Favorite.book_id == book_id))
    await session.execute(delete(ReadingHistory).where(ReadingHistory.book_id == book_id))
    # préstamos devueltos se borran con el libro; las multas se conservan sin préstamo
    loan_ids = select(Loan.id).where(Loan.book_id == book_id)
    await session.execute(
        update(Fine).where(Fine.issued_book_id.in_(loan_ids)).values(issued_book_id=None)
        .execution_options(synchronize_session=False)
    )
    removed_loans = (await session.execute(delete(Loan).where(Loan.book_id == book_id))).rowcount
    await session.execute(delete(Book).where(Book.id == book_id))
    await session.commit()
    return _ok(
        "Book deleted.", book_id=book_id,
        removed_reservations=removed_res, removed_loans=removed_loans,
    )
