from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from libris.deps import get_session, get_caller, get_optional_caller

from libris.schemas import (
    Caller,
    ProfileIn, RoleIn, ActiveIn,
    BookIn, BookPatch, CopiesIn,
    IssueIn, ReturnIn, LoanIdIn, RenewIn, RenewOut,
    ReservationIn, FavoriteIn, GoalIn, NotesIn,
)

from libris.actions import catalog, loans, reservations, readers

router = APIRouter()

NOT_FOUND = {
    "BOOK_NOT_FOUND", "USER_NOT_FOUND", "LOAN_NOT_FOUND", "FINE_NOT_FOUND",
    "RESERVATION_NOT_FOUND", "FAVORITE_NOT_FOUND", "HISTORY_NOT_FOUND", "NOTIFICATION_NOT_FOUND",
}
CONFLICT = {
    "OUT_OF_STOCK", "NOT_ELIGIBLE", "ALREADY_RETURNED", "ALREADY_BORROWED", "ALREADY_RESERVED",
    "BOOK_AVAILABLE", "RESERVATION_NOT_PENDING", "CALL_NUMBER_EXISTS", "USERNAME_EXISTS",
    "EMAIL_EXISTS", "ALREADY_FAVORITE", "BOOK_ON_LOAN", "COPIES_ON_LOAN", "FINE_ALREADY_PAID",
    "USER_INACTIVE", "CONFLICT",
}

def _status_for(code: str) -> int:
    if code in NOT_FOUND:
        return 404
    if code in CONFLICT:
        return 409
    if code == "FORBIDDEN":
        return 403
    if code == "STORE_UNAVAILABLE":
        return 503
    return 400

def _unwrap(r: Dict[str, Any]) -> Dict[str, Any]:
    if not r["ok"]:
        raise HTTPException(status_code=_status_for(r.get("code", "")), detail={"code": r.get("code"), "message": r["message"]})
    return {"detail": r["message"], **(r.get("data") or {})}

# ---- catalog

@router.get("/books")
async def http_list_books(search: Optional[str] = None, genre: Optional[str] = None,
                          session: AsyncSession = Depends(get_session)):
    return _unwrap(await catalog.list_books(session, search=search, genre=genre))

@router.get("/books/{book_id}")
async def http_get_book(book_id: str, session: AsyncSession = Depends(get_session)):
    return _unwrap(await catalog.get_book(session, book_id=book_id))

@router.post("/books", status_code=201)
async def http_create_book(payload: BookIn, session: AsyncSession = Depends(get_session),
                           caller: Caller = Depends(get_caller)):
    return _unwrap(await catalog.register_book(session, caller=caller, **payload.model_dump()))

@router.patch("/books/{book_id}")
async def http_update_book(book_id: str, payload: BookPatch, session: AsyncSession = Depends(get_session),
                           caller: Caller = Depends(get_caller)):
    fields = payload.model_dump(exclude_unset=True)
    return _unwrap(await catalog.update_book(session, caller=caller, book_id=book_id, **fields))

@router.put("/books/{book_id}/copies")
async def http_set_copies(book_id: str, payload: CopiesIn, session: AsyncSession = Depends(get_session),
                          caller: Caller = Depends(get_caller)):
    return _unwrap(await catalog.set_total_copies(session, caller=caller, book_id=book_id, total_copies=payload.total_copies))

@router.delete("/books/{book_id}")
async def http_delete_book(book_id: str, session: AsyncSession = Depends(get_session),
                           caller: Caller = Depends(get_caller)):
    return _unwrap(await catalog.delete_book(session, caller=caller, book_id=book_id))

# ---- loans

@router.post("/loans", status_code=201)
async def http_issue(payload: IssueIn, session: AsyncSession = Depends(get_session),
                     caller: Caller = Depends(get_caller)):
    return _unwrap(await loans.issue_book(session, caller=caller, book_id=payload.book_id, borrower_id=payload.borrower_id))

@router.post("/loans/{loan_id}/return")
async def http_return(loan_id: str, payload: Optional[ReturnIn] = None, session: AsyncSession = Depends(get_session),
                      caller: Caller = Depends(get_caller)):
    return_date = payload.return_date if payload else None
    return _unwrap(await loans.return_book(session, caller=caller, loan_id=loan_id, return_date=return_date))

@router.get("/loans")
async def http_list_loans(user_id: Optional[str] = None, session: AsyncSession = Depends(get_session),
                          caller: Caller = Depends(get_caller)):
    return _unwrap(await loans.list_loans_for_borrower(session, caller=caller, user_id=user_id))

@router.get("/reports/overdue")
async def http_overdue_report(session: AsyncSession = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(await loans.list_overdue_loans(session, caller=caller))

@router.post("/rpc/can_renew_book", response_model=bool)
async def rpc_can_renew_book(payload: LoanIdIn, session: AsyncSession = Depends(get_session),
                             caller: Caller = Depends(get_caller)):
    try:
        return await loans.can_renew_book(session, loan_id=payload.issued_book_id)
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="The library database is unavailable, please retry.")

@router.post("/rpc/renew_book", response_model=RenewOut)
async def rpc_renew_book(payload: RenewIn, session: AsyncSession = Depends(get_session),
                         caller: Caller = Depends(get_caller)):
    r = await loans.renew_book(session, loan_id=payload.issued_book_id, renewal_days=payload.renewal_days, caller=caller)
    if not r["ok"] and r.get("code") == "STORE_UNAVAILABLE":
        raise HTTPException(status_code=503, detail=r["message"])
    if not r["ok"]:
        return RenewOut(success=False, message=r["message"])
    return RenewOut(success=True, message=r["message"], new_due_date=r["data"]["new_due_date"])

# ---- fines & stats

@router.get("/fines")
async def http_fines(user_id: Optional[str] = None, session: AsyncSession = Depends(get_session),
                     caller: Caller = Depends(get_caller)):
    return _unwrap(await loans.outstanding_fines(session, caller=caller, user_id=user_id))

@router.post("/fines/{fine_id}/pay")
async def http_pay_fine(fine_id: str, session: AsyncSession = Depends(get_session),
                        caller: Caller = Depends(get_caller)):
    return _unwrap(await loans.pay_fine(session, caller=caller, fine_id=fine_id))

@router.get("/stats/dashboard")
async def http_dashboard(session: AsyncSession = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(await loans.dashboard_stats(session, caller=caller))

@router.get("/stats/reading")
async def http_reading_stats(user_id: Optional[str] = None, session: AsyncSession = Depends(get_session),
                             caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.reading_stats(session, caller=caller, user_id=user_id))

# ---- reservations & notifications

@router.post("/reservations", status_code=201)
async def http_reserve(payload: ReservationIn, session: AsyncSession = Depends(get_session),
                       caller: Caller = Depends(get_caller)):
    return _unwrap(await reservations.reserve_book(session, caller=caller, book_id=payload.book_id))

@router.post("/reservations/{reservation_id}/cancel")
async def http_cancel_reservation(reservation_id: str, session: AsyncSession = Depends(get_session),
                                  caller: Caller = Depends(get_caller)):
    return _unwrap(await reservations.cancel_reservation(session, caller=caller, reservation_id=reservation_id))

@router.get("/reservations")
async def http_list_reservations(user_id: Optional[str] = None, session: AsyncSession = Depends(get_session),
                                 caller: Caller = Depends(get_caller)):
    return _unwrap(await reservations.list_reservations(session, caller=caller, user_id=user_id))

@router.get("/notifications")
async def http_notifications(unread_only: bool = False, session: AsyncSession = Depends(get_session),
                             caller: Caller = Depends(get_caller)):
    return _unwrap(await reservations.list_notifications(session, caller=caller, unread_only=unread_only))

@router.post("/notifications/{notification_id}/read")
async def http_read_notification(notification_id: str, session: AsyncSession = Depends(get_session),
                                 caller: Caller = Depends(get_caller)):
    return _unwrap(await reservations.mark_notification_read(session, caller=caller, notification_id=notification_id))

# ---- profiles

@router.post("/profiles", status_code=201)
async def http_register_profile(payload: ProfileIn, session: AsyncSession = Depends(get_session),
                                caller: Optional[Caller] = Depends(get_optional_caller)):
    return _unwrap(await readers.register_profile(session, caller=caller, **payload.model_dump()))

@router.get("/profiles")
async def http_list_profiles(session: AsyncSession = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.list_profiles(session, caller=caller))

@router.get("/profiles/{user_id}")
async def http_get_profile(user_id: str, session: AsyncSession = Depends(get_session),
                           caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.get_profile(session, caller=caller, user_id=user_id))

@router.put("/profiles/{user_id}/role")
async def http_set_role(user_id: str, payload: RoleIn, session: AsyncSession = Depends(get_session),
                        caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.set_role(session, caller=caller, user_id=user_id, role=payload.role))

@router.put("/profiles/{user_id}/active")
async def http_set_active(user_id: str, payload: ActiveIn, session: AsyncSession = Depends(get_session),
                          caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.set_active(session, caller=caller, user_id=user_id, is_active=payload.is_active))

# ---- favorites, goals, history

@router.post("/favorites", status_code=201)
async def http_add_favorite(payload: FavoriteIn, session: AsyncSession = Depends(get_session),
                            caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.add_favorite(session, caller=caller, book_id=payload.book_id))

@router.delete("/favorites/{favorite_id}")
async def http_remove_favorite(favorite_id: str, session: AsyncSession = Depends(get_session),
                               caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.remove_favorite(session, caller=caller, favorite_id=favorite_id))

@router.get("/favorites")
async def http_list_favorites(session: AsyncSession = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.list_favorites(session, caller=caller))

@router.post("/goals", status_code=201)
async def http_create_goal(payload: GoalIn, session: AsyncSession = Depends(get_session),
                           caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.create_goal(session, caller=caller, target_value=payload.target_value, start_date=payload.start_date))

@router.get("/goals")
async def http_list_goals(session: AsyncSession = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.list_goals(session, caller=caller))

@router.get("/history")
async def http_history(search: Optional[str] = None, session: AsyncSession = Depends(get_session),
                       caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.list_history(session, caller=caller, search=search))

@router.patch("/history/{history_id}")
async def http_history_notes(history_id: str, payload: NotesIn, session: AsyncSession = Depends(get_session),
                             caller: Caller = Depends(get_caller)):
    return _unwrap(await readers.update_history_notes(session, caller=caller, history_id=history_id, notes=payload.notes))
