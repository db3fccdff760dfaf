"""Assertion helpers shared by the test modules."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.db.models import BonusTransaction, User


async def balance_of(session: AsyncSession, user_id: int) -> Decimal:
    return await session.scalar(select(User.bonus_balance).where(User.id == user_id))


async def transaction_count(session: AsyncSession, user_id: int, type_: str | None = None) -> int:
    stmt = select(func.count(BonusTransaction.id)).where(BonusTransaction.user_id == user_id)
    if type_ is not None:
        stmt = stmt.where(BonusTransaction.type == type_)
    return await session.scalar(stmt)


async def ledger_sum(session: AsyncSession, user_id: int) -> Decimal:
    total = await session.scalar(
        select(func.coalesce(func.sum(BonusTransaction.amount), 0)).where(BonusTransaction.user_id == user_id)
    )
    return Decimal(str(total)).quantize(Decimal("0.01"))


async def set_expires_at(session: AsyncSession, transaction_id: int, expires_at: datetime) -> None:
    await session.execute(
        update(BonusTransaction).where(BonusTransaction.id == transaction_id).values(expires_at=expires_at)
    )
    await session.commit()
