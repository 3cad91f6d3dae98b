import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from libris.db import Base
from libris import models
from libris.schemas import Caller

@pytest_asyncio.fixture
async def async_engine():
    # una sola conexión en memoria compartida por todas las sesiones del test
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()

@pytest_asyncio.fixture
async def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)

@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        try:
            yield s
        finally:
            await s.rollback()

async def make_profile(session, *, username, role=models.Role.STUDENT, is_active=True):
    p = models.Profile(
        username=username, email=f"{username}@example.edu",
        first_name=username.title(), last_name="Reader", role=role, is_active=is_active,
    )
    session.add(p)
    await session.commit()
    return p

async def make_book(session, *, call_number="QA76.73.P98", title="Fluent Python",
                    author="Luciano Ramalho", genre="Programming", copies=2):
    b = models.Book(
        call_number=call_number, title=title, author=author, publisher="O'Reilly",
        genre=genre, total_copies=copies, available_copies=copies, borrow_count=0,
    )
    session.add(b)
    await session.commit()
    return b

def caller_for(profile) -> Caller:
    return Caller(user_id=profile.id, role=profile.role)

@pytest_asyncio.fixture
async def librarian(session):
    return await make_profile(session, username="libby", role=models.Role.LIBRARIAN)

@pytest_asyncio.fixture
async def student(session):
    return await make_profile(session, username="sam")

@pytest_asyncio.fixture
async def book(session):
    return await make_book(session)
