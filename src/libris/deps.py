from typing import AsyncGenerator
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from libris.db import SessionLocal
from libris.models import Profile
from libris.schemas import Caller

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

async def get_caller(
    x_user_id: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> Caller:
    # la autenticación la resuelve el proveedor externo; aquí solo se resuelve el perfil
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    profile = await session.get(Profile, x_user_id)
    if not profile:
        raise HTTPException(status_code=401, detail="Unknown user")
    if not profile.is_active:
        raise HTTPException(status_code=403, detail="Account is inactive")
    return Caller(user_id=profile.id, role=profile.role)

async def get_optional_caller(
    x_user_id: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> Caller | None:
    if not x_user_id:
        return None
    return await get_caller(x_user_id=x_user_id, session=session)
