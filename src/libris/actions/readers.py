from __future__ import annotations
import calendar
import logging
from collections import Counter
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from libris import rules
from libris.models import (
    Book, Loan, Profile, Favorite, ReadingGoal, ReadingHistory,
    Role, LoanStatus, GoalStatus, ReadingStatus,
)
from libris.schemas import Caller
from libris.actions.common import (
    _ok, _err, utcnow, require_staff, require_admin, require_self_or_staff, store_guard,
)

logger = logging.getLogger(__name__)

# ---- profiles

def _profile_view(p: Profile) -> Dict[str, Any]:
    return {
        "user_id": p.id, "username": p.username, "email": p.email,
        "first_name": p.first_name, "last_name": p.last_name,
        "contact_number": p.contact_number, "role": p.role.value, "is_active": p.is_active,
    }

@store_guard
async def register_profile(
    session: AsyncSession, *, username: str, email: str, first_name: str, last_name: str,
    contact_number: Optional[str] = None, role: Role = Role.STUDENT, caller: Optional[Caller] = None,
) -> Dict[str, Any]:
    email_norm = (email or "").strip().lower()
    username = (username or "").strip()
    if not (username and email_norm and first_name and last_name):
        return _err("Missing profile fields (username, email, first_name, last_name).", code="MISSING_FIELDS")
    if Role(role) != Role.STUDENT:
        # el primer perfil del sistema puede ser staff; después solo un admin asigna roles
        existing = (await session.execute(select(func.count()).select_from(Profile))).scalar_one()
        if existing:
            denied = require_admin(caller)
            if denied:
                return denied
    r = await session.execute(select(Profile.id).where(Profile.username == username))
    if r.first():
        return _err("Username already taken.", code="USERNAME_EXISTS")
    r = await session.execute(select(Profile.id).where(Profile.email == email_norm))
    if r.first():
        return _err("Email already registered.", code="EMAIL_EXISTS")
    p = Profile(
        username=username, email=email_norm, first_name=first_name.strip(), last_name=last_name.strip(),
        contact_number=contact_number, role=Role(role), is_active=True,
    )
    session.add(p)
    await session.commit()
    await session.refresh(p)
    logger.info("[profiles] registered user=%s role=%s", p.id, p.role.value)
    return _ok("Profile registered.", **_profile_view(p))

@store_guard
async def get_profile(session: AsyncSession, *, caller: Caller, user_id: str) -> Dict[str, Any]:
    denied = require_self_or_staff(caller, user_id)
    if denied:
        return denied
    p = await session.get(Profile, user_id)
    if not p:
        return _err("User not found.", code="USER_NOT_FOUND")
    return _ok("Profile.", **_profile_view(p))

@store_guard
async def list_profiles(session: AsyncSession, *, caller: Caller) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    rows = (await session.execute(select(Profile).order_by(Profile.last_name, Profile.first_name))).scalars().all()
    return _ok("Profiles.", items=[_profile_view(p) for p in rows])

@store_guard
async def set_role(session: AsyncSession, *, caller: Caller, user_id: str, role: Role) -> Dict[str, Any]:
    denied = require_admin(caller)
    if denied:
        return denied
    p = await session.get(Profile, user_id)
    if not p:
        return _err("User not found.", code="USER_NOT_FOUND")
    p.role = Role(role)
    await session.commit()
    logger.info("[profiles] user=%s role -> %s by %s", user_id, p.role.value, caller.user_id)
    return _ok("Role updated.", **_profile_view(p))

@store_guard
async def set_active(session: AsyncSession, *, caller: Caller, user_id: str, is_active: bool) -> Dict[str, Any]:
    denied = require_staff(caller)
    if denied:
        return denied
    p = await session.get(Profile, user_id)
    if not p:
        return _err("User not found.", code="USER_NOT_FOUND")
    p.is_active = bool(is_active)
    await session.commit()
    return _ok("Profile activation updated.", **_profile_view(p))

# ---- favorites

@store_guard
async def add_favorite(
    session: AsyncSession, *, caller: Caller, book_id: str, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not await session.get(Book, book_id):
        return _err("Book not found.", code="BOOK_NOT_FOUND")
    r = await session.execute(
        select(Favorite.id).where(Favorite.user_id == caller.user_id, Favorite.book_id == book_id)
    )
    if r.first():
        return _err("Book is already in your favorites.", code="ALREADY_FAVORITE")
    fav = Favorite(user_id=caller.user_id, book_id=book_id, created_at=now or utcnow())
    session.add(fav)
    await session.commit()
    return _ok("Added to favorites.", favorite_id=fav.id, book_id=book_id)

@store_guard
async def remove_favorite(session: AsyncSession, *, caller: Caller, favorite_id: str) -> Dict[str, Any]:
    fav = await session.get(Favorite, favorite_id)
    if not fav or fav.user_id != caller.user_id:
        return _err("Favorite not found.", code="FAVORITE_NOT_FOUND")
    await session.delete(fav)
    await session.commit()
    return _ok("Removed from favorites.", favorite_id=favorite_id)

@store_guard
async def list_favorites(session: AsyncSession, *, caller: Caller) -> Dict[str, Any]:
    rows = (await session.execute(
        select(Favorite, Book)
        .join(Book, Book.id == Favorite.book_id)
        .where(Favorite.user_id == caller.user_id)
        .order_by(Favorite.created_at.desc())
    )).all()
    items = [{
        "favorite_id": fav.id, "book_id": book.id, "title": book.title, "author": book.author,
        "publisher": book.publisher, "genre": book.genre, "description": book.description,
        "available_copies": book.available_copies, "total_copies": book.total_copies,
        "borrow_count": book.borrow_count,
    } for fav, book in rows]
    return _ok("Favorites.", items=items)

# ---- reading goals

def _one_month_after(d: date) -> date:
    year, month = (d.year + 1, 1) if d.month == 12 else (d.year, d.month + 1)
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))

def _goal_view(g: ReadingGoal, today: date) -> Dict[str, Any]:
    return {
        "goal_id": g.id, "goal_type": g.goal_type, "target_value": g.target_value,
        "current_value": g.current_value, "start_date": g.start_date.isoformat(),
        "end_date": g.end_date.isoformat(), "status": g.status.value,
        "days_left": max(0, (g.end_date - today).days),
        "progress": round(100 * g.current_value / g.target_value, 1),
    }

@store_guard
async def create_goal(
    session: AsyncSession, *, caller: Caller, target_value: int, start_date: Optional[date] = None,
) -> Dict[str, Any]:
    if target_value is None or target_value <= 0:
        return _err("target_value must be positive.", code="INVALID_TARGET")
    start = start_date or utcnow().date()
    goal = ReadingGoal(
        user_id=caller.user_id, goal_type="books_per_month", target_value=target_value,
        current_value=0, start_date=start, end_date=_one_month_after(start), status=GoalStatus.ACTIVE,
    )
    session.add(goal)
    await session.commit()
    await session.refresh(goal)
    return _ok(f"Goal to read {target_value} books this month has been set.", **_goal_view(goal, start))

@store_guard
async def list_goals(session: AsyncSession, *, caller: Caller, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    today = now.date()
    goals = (await session.execute(
        select(ReadingGoal).where(ReadingGoal.user_id == caller.user_id).order_by(ReadingGoal.start_date.desc())
    )).scalars().all()
    for g in goals:
        window_end = datetime.combine(g.end_date + timedelta(days=1), time.min)
        g.current_value = (await session.execute(
            select(func.count()).select_from(Loan).where(
                Loan.user_id == caller.user_id,
                Loan.return_date >= datetime.combine(g.start_date, time.min),
                Loan.return_date < window_end,
            )
        )).scalar_one()
        if g.current_value >= g.target_value:
            g.status = GoalStatus.COMPLETED
        elif today > g.end_date:
            g.status = GoalStatus.EXPIRED
        else:
            g.status = GoalStatus.ACTIVE
    await session.commit()
    return _ok("Reading goals.", items=[_goal_view(g, today) for g in goals])

# ---- reading history

async def record_reading(session: AsyncSession, *, user_id: str, book_id: str, status: ReadingStatus) -> None:
    """Upsert the reader's history entry for ``book_id``. Caller commits."""
    r = await session.execute(
        select(ReadingHistory).where(ReadingHistory.user_id == user_id, ReadingHistory.book_id == book_id)
    )
    entry = r.scalars().first()
    if entry:
        entry.reading_status = status
    else:
        session.add(ReadingHistory(user_id=user_id, book_id=book_id, reading_status=status))

@store_guard
async def list_history(session: AsyncSession, *, caller: Caller, search: Optional[str] = None) -> Dict[str, Any]:
    q = (
        select(ReadingHistory, Book)
        .join(Book, Book.id == ReadingHistory.book_id)
        .where(ReadingHistory.user_id == caller.user_id)
    )
    if search:
        like = f"%{search.strip().lower()}%"
        q = q.where(func.lower(Book.title).like(like) | func.lower(Book.author).like(like))
    rows = (await session.execute(q.order_by(ReadingHistory.updated_at.desc()))).all()
    return _ok("Reading history.", items=[{
        "history_id": h.id, "book_id": b.id, "title": b.title, "author": b.author,
        "genre": b.genre, "reading_status": h.reading_status.value, "notes": h.notes,
    } for h, b in rows])

@store_guard
async def update_history_notes(
    session: AsyncSession, *, caller: Caller, history_id: str, notes: Optional[str],
) -> Dict[str, Any]:
    h = await session.get(ReadingHistory, history_id)
    if not h or h.user_id != caller.user_id:
        return _err("History entry not found.", code="HISTORY_NOT_FOUND")
    h.notes = notes
    await session.commit()
    return _ok("Notes saved.", history_id=h.id, notes=h.notes)

# ---- stats

@store_guard
async def reading_stats(
    session: AsyncSession, *, caller: Caller, user_id: Optional[str] = None, now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    user_id = user_id or caller.user_id
    denied = require_self_or_staff(caller, user_id)
    if denied:
        return denied
    rows = (await session.execute(
        select(Loan, Book.genre).join(Book, Book.id == Loan.book_id).where(Loan.user_id == user_id)
    )).all()
    statuses = Counter(rules.effective_status(loan, now) for loan, _ in rows)
    genres = Counter(genre for _, genre in rows if genre)
    favorite = genres.most_common(1)[0][0] if genres else None
    return _ok(
        "Reading statistics.",
        user_id=user_id,
        total_books_read=statuses[LoanStatus.RETURNED],
        currently_reading=statuses[LoanStatus.ISSUED],
        overdue_books=statuses[LoanStatus.OVERDUE],
        favorite_genre=favorite,
    )
