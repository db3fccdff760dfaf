"""Bonus → currency rate resolution."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import or_, select

from bonus_ledger.bonuses.money import money, to_decimal
from bonus_ledger.bonuses.schemas import BonusRateResponse
from bonus_ledger.config import get_settings
from bonus_ledger.db.models import BonusRate
from bonus_ledger.time_utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

# Effective date reported for the configured fallback rate.
DEFAULT_RATE_EFFECTIVE_FROM = datetime(2024, 1, 1, tzinfo=timezone.utc)


def default_rate() -> BonusRateResponse:
    settings = get_settings()
    return BonusRateResponse(
        from_currency=settings.default_from_currency,
        to_currency=settings.default_to_currency,
        rate=settings.default_rate,
        effective_from=DEFAULT_RATE_EFFECTIVE_FROM,
    )


async def get_current_rate(db: AsyncSession, at: datetime | None = None) -> BonusRateResponse:
    """Return the most recently effective active rate at ``at`` (default now).

    Falls back to the configured default rate when no row qualifies.
    """
    now = at or utcnow()
    result = await db.execute(
        select(BonusRate)
        .where(
            BonusRate.is_active.is_(True),
            BonusRate.effective_from <= now,
            or_(BonusRate.effective_to.is_(None), BonusRate.effective_to >= now),
        )
        .order_by(BonusRate.effective_from.desc(), BonusRate.id.desc())
        .limit(1)
    )
    rate = result.scalar_one_or_none()
    if rate is None:
        return default_rate()
    return BonusRateResponse.model_validate(rate)


async def convert_to_currency(db: AsyncSession, bonus_amount: Decimal | int | str) -> Decimal:
    """Convert a bonus amount to currency at the current rate."""
    rate = await get_current_rate(db)
    return money(to_decimal(bonus_amount) * rate.rate)
