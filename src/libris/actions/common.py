from __future__ import annotations
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from libris.models import Role
from libris.schemas import Caller

logger = logging.getLogger(__name__)

STAFF_ROLES = {Role.ADMIN, Role.LIBRARIAN}

def _ok(msg: str, **data):    return {"ok": True,  "message": msg, **({"data": data} if data else {})}
def _err(msg: str, code="", **data): return {"ok": False, "message": msg, "code": code, **({"data": data} if data else {})}

def utcnow() -> datetime:
    # naive UTC, igual que lo que guarda la DB
    return datetime.now(timezone.utc).replace(tzinfo=None)

def is_staff(caller: Optional[Caller]) -> bool:
    return caller is not None and caller.role in STAFF_ROLES

def require_staff(caller: Optional[Caller]) -> Optional[Dict[str, Any]]:
    if not is_staff(caller):
        return _err("Only library staff can perform this operation.", code="FORBIDDEN")
    return None

def require_admin(caller: Optional[Caller]) -> Optional[Dict[str, Any]]:
    if caller is None or caller.role != Role.ADMIN:
        return _err("Only administrators can perform this operation.", code="FORBIDDEN")
    return None

def require_self_or_staff(caller: Optional[Caller], user_id: str) -> Optional[Dict[str, Any]]:
    if caller is None:
        return _err("Caller identity is required.", code="FORBIDDEN")
    if caller.user_id != user_id and not is_staff(caller):
        return _err("This record belongs to another user.", code="FORBIDDEN")
    return None

def store_guard(fn: Callable[..., Awaitable[Dict[str, Any]]]):
    """Roll back and report STORE_UNAVAILABLE when the database fails mid-operation."""
    @functools.wraps(fn)
    async def wrapper(session: AsyncSession, *args, **kwargs):
        try:
            return await fn(session, *args, **kwargs)
        except IntegrityError as ex:
            await session.rollback()
            logger.warning("[%s] integrity error: %s", fn.__name__, ex.orig)
            return _err("The change conflicts with existing records.", code="CONFLICT")
        except SQLAlchemyError as ex:
            await session.rollback()
            logger.exception("[%s] store error: %s", fn.__name__, ex)
            return _err("The library database is unavailable, please retry.", code="STORE_UNAVAILABLE")
    return wrapper
