"""Shared test fixtures.

Each test gets a throw-away SQLite database built from the ORM metadata.
Setup data is committed through ``db_session`` before the code under test
opens its own sessions.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from decimal import Decimal

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.config import get_settings
from bonus_ledger.database import close_db, get_engine, get_sessionmaker, init_db
from bonus_ledger.db.base import Base
from bonus_ledger.db.models import BonusTransaction, User


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[None, None]:
    """Initialize the engine against a fresh SQLite file."""
    get_settings.cache_clear()
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_session(db) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for setup and assertions."""
    async with get_sessionmaker()() as session:
        yield session


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory that commits a user with the given starting balance.

    The balance is seeded through an ADJUSTMENT row so that the stored
    balance always equals the ledger sum.
    """
    counter = 0

    async def _make(balance: Decimal | int | str = 0, **fields) -> User:
        nonlocal counter
        counter += 1
        opening = Decimal(str(balance))
        user = User(email=f"user{counter}@example.com", bonus_balance=opening, **fields)
        db_session.add(user)
        await db_session.flush()
        if opening > 0:
            db_session.add(
                BonusTransaction(
                    user_id=user.id,
                    type="ADJUSTMENT",
                    amount=opening,
                    source="ADMIN_ADJUSTMENT",
                    description="Opening balance",
                )
            )
        await db_session.commit()
        return user

    return _make
