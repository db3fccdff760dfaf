"""Bridges that turn partner commissions, referrals and activities into grants."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from bonus_ledger.bonuses.enums import (
    REF_ACTIVITY_BONUS,
    REF_PARTNER_COMMISSION,
    REF_REFERRAL_FIRST_PURCHASE,
    BonusSource,
    CommissionStatus,
    PaymentStatus,
    TransactionType,
)
from bonus_ledger.bonuses.ledger_service import earn_bonuses, lock_user
from bonus_ledger.bonuses.money import money, to_decimal
from bonus_ledger.bonuses.schemas import BonusTransactionResponse
from bonus_ledger.config import get_settings
from bonus_ledger.database import unit_of_work
from bonus_ledger.db.models import BonusTransaction, PartnerCommission, PaymentTransaction, User, UserActivityBonus
from bonus_ledger.errors import NotFoundError, StateConflictError
from bonus_ledger.time_utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

ACTIVITY_DESCRIPTIONS = {
    "FIRST_PURCHASE": "Bonus for your first purchase",
    "STREAK_7_DAYS": "Bonus for 7-day activity streak",
    "STREAK_30_DAYS": "Bonus for 30-day activity streak",
    "PROFILE_COMPLETE": "Bonus for completing your profile",
    "FIRST_REVIEW": "Bonus for your first review",
    "REFERRAL_MILESTONE_5": "Bonus for referring 5 users",
    "REFERRAL_MILESTONE_10": "Bonus for referring 10 users",
}


def activity_description(activity_type: str) -> str:
    return ACTIVITY_DESCRIPTIONS.get(activity_type, f"Activity bonus: {activity_type}")


# ---------------------------------------------------------------------------
# Partner commissions
# ---------------------------------------------------------------------------


async def convert_commission_to_bonus(
    user_id: int,
    commission_id: int,
    *,
    db: AsyncSession | None = None,
) -> BonusTransactionResponse:
    """Mark an APPROVED commission PAID and credit its amount to the partner.

    Raises:
        NotFoundError: If the commission does not exist.
        StateConflictError: If it belongs to someone else or is not APPROVED.
    """
    async with unit_of_work(db) as session:
        result = await session.execute(
            select(PartnerCommission)
            .where(PartnerCommission.id == commission_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        commission = result.scalar_one_or_none()
        if commission is None:
            msg = "Commission not found"
            raise NotFoundError(msg, {"commission_id": commission_id})
        if commission.partner_id != user_id:
            msg = "Commission does not belong to this user"
            raise StateConflictError(
                msg, expected=str(user_id), actual=str(commission.partner_id), details={"field": "partner_id"}
            )
        if commission.status != CommissionStatus.APPROVED.value:
            msg = "Commission must be APPROVED to convert"
            raise StateConflictError(msg, expected=CommissionStatus.APPROVED.value, actual=commission.status)

        commission.status = CommissionStatus.PAID.value
        commission.paid_at = utcnow()
        await session.flush()

        tx = await earn_bonuses(
            user_id,
            commission.amount,
            BonusSource.PARTNER,
            reference_id=str(commission_id),
            reference_type=REF_PARTNER_COMMISSION,
            description=f"Commission from partner program (Level {commission.level})",
            metadata={
                "commission_level": commission.level,
                "source_user_id": commission.source_user_id,
                "source_transaction_id": commission.source_transaction_id,
            },
            db=session,
        )

    logger.info("commission_converted", user_id=user_id, commission_id=commission_id, amount=str(tx.amount))
    return tx


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


async def grant_referral_bonus(
    referred_user_id: int,
    purchase_amount: Decimal | int | str,
    *,
    db: AsyncSession | None = None,
) -> BonusTransactionResponse | None:
    """Credit the referrer a share of the referred user's first purchase.

    Returns None, without error, when the user has no referrer, the purchase
    is not their first, or the bonus was already granted.
    """
    settings = get_settings()

    async with unit_of_work(db) as session:
        referrer_id = await session.scalar(select(User.referred_by_id).where(User.id == referred_user_id))
        if referrer_id is None:
            return None

        # Serializes concurrent grants to the same referrer.
        await lock_user(session, referrer_id)

        prior_spends = await session.scalar(
            select(func.count(BonusTransaction.id)).where(
                BonusTransaction.user_id == referred_user_id,
                BonusTransaction.type == TransactionType.SPENT.value,
            )
        )
        completed_payments = await session.scalar(
            select(func.count(PaymentTransaction.id)).where(
                PaymentTransaction.user_id == referred_user_id,
                PaymentTransaction.status == PaymentStatus.COMPLETED.value,
            )
        )
        if (prior_spends or 0) > 0 or (completed_payments or 0) > 1:
            return None

        existing = await session.scalar(
            select(BonusTransaction.id)
            .where(
                BonusTransaction.user_id == referrer_id,
                BonusTransaction.source == BonusSource.REFERRAL_BONUS.value,
                BonusTransaction.reference_id == str(referred_user_id),
                BonusTransaction.reference_type == REF_REFERRAL_FIRST_PURCHASE,
            )
            .limit(1)
        )
        if existing is not None:
            return None

        purchase = to_decimal(purchase_amount)
        bonus = money(purchase * settings.referral_bonus_percent / 100)
        if bonus <= 0:
            return None

        tx = await earn_bonuses(
            referrer_id,
            bonus,
            BonusSource.REFERRAL_BONUS,
            reference_id=str(referred_user_id),
            reference_type=REF_REFERRAL_FIRST_PURCHASE,
            description="Referral bonus for user's first purchase",
            metadata={
                "referral_user_id": referred_user_id,
                "purchase_amount": str(purchase),
                "bonus_percent": str(settings.referral_bonus_percent),
            },
            db=session,
        )

    logger.info("referral_bonus_granted", referrer_id=referrer_id, referred_user_id=referred_user_id, amount=str(bonus))
    return tx


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


async def _claim_one_time_activity(session: AsyncSession, user_id: int, activity_type: str) -> bool:
    """Insert the marker row; False if it already existed."""
    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = (
        insert(UserActivityBonus)
        .values(user_id=user_id, activity_type=activity_type, granted_at=utcnow())
        .on_conflict_do_nothing(index_elements=["user_id", "activity_type"])
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def grant_activity_bonus(
    user_id: int,
    activity_type: str,
    metadata: dict[str, Any] | None = None,
    *,
    db: AsyncSession | None = None,
) -> BonusTransactionResponse | None:
    """Grant the configured bonus for an activity.

    One-time activities are recorded in ``user_activity_bonuses`` in the same
    transaction as the grant; a repeat call returns None. Unknown activity
    types are logged and ignored.
    """
    settings = get_settings()
    amount = settings.activity_bonuses.get(activity_type)
    if amount is None:
        logger.warning("unknown_activity_type", user_id=user_id, activity_type=activity_type)
        return None

    async with unit_of_work(db) as session:
        await lock_user(session, user_id)
        if activity_type in settings.one_time_activities:
            claimed = await _claim_one_time_activity(session, user_id, activity_type)
            if not claimed:
                logger.info("activity_bonus_already_granted", user_id=user_id, activity_type=activity_type)
                return None

        tx = await earn_bonuses(
            user_id,
            amount,
            BonusSource.ACTIVITY,
            reference_id=activity_type,
            reference_type=REF_ACTIVITY_BONUS,
            description=activity_description(activity_type),
            metadata={"activity_type": activity_type, **(metadata or {})},
            db=session,
        )

    logger.info("activity_bonus_granted", user_id=user_id, activity_type=activity_type, amount=str(amount))
    return tx
