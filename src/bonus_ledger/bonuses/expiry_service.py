"""Bonus expiry: claw back lapsed grants and warn users ahead of time.

A grant is unprocessed while ``type = EARNED``, ``expires_at <= now`` and
``amount > 0``. Processing zeroes its amount, so a second run finds nothing.
Each user's group is its own transaction; one failing user never rolls back
another's.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from sqlalchemy import func, select, update

from bonus_ledger.bonuses.enums import BonusSource, TransactionType
from bonus_ledger.bonuses.ledger_service import add_transaction, lock_user
from bonus_ledger.bonuses.money import ZERO, money
from bonus_ledger.bonuses.schemas import ExpiryRunResult, WarningRunResult
from bonus_ledger.config import get_settings
from bonus_ledger.database import get_sessionmaker, unit_of_work
from bonus_ledger.db.models import BonusTransaction
from bonus_ledger.errors import NotFoundError
from bonus_ledger.notifications import create_notification, has_recent_notification
from bonus_ledger.time_utils import add_days, day_bounds, utcnow

logger = structlog.get_logger()


async def _find_expired_grants(now: datetime) -> dict[int, list[int]]:
    """Transaction ids of unprocessed expired grants, grouped by user."""
    async with get_sessionmaker()() as session:
        result = await session.execute(
            select(BonusTransaction.user_id, BonusTransaction.id).where(
                BonusTransaction.type == TransactionType.EARNED.value,
                BonusTransaction.expires_at <= now,
                BonusTransaction.amount > 0,
            )
        )
        grouped: dict[int, list[int]] = defaultdict(list)
        for user_id, tx_id in result.all():
            grouped[user_id].append(tx_id)
    return grouped


async def expire_user_grants(user_id: int, transaction_ids: list[int], now: datetime | None = None) -> int:
    """Expire one user's grants atomically. Returns how many grants were consumed.

    Grants are re-read under the user lock, so ids already consumed by a
    concurrent run are skipped. The deduction is clamped to the current
    balance.
    """
    now = now or utcnow()
    async with unit_of_work() as session:
        try:
            user = await lock_user(session, user_id)
        except NotFoundError:
            logger.warning("expiry_user_missing", user_id=user_id)
            return 0

        result = await session.execute(
            select(BonusTransaction.id, BonusTransaction.amount).where(
                BonusTransaction.id.in_(transaction_ids),
                BonusTransaction.user_id == user_id,
                BonusTransaction.type == TransactionType.EARNED.value,
                BonusTransaction.expires_at <= now,
                BonusTransaction.amount > 0,
            )
        )
        grants = result.all()
        if not grants:
            return 0

        ids = [row.id for row in grants]
        total = money(sum((row.amount for row in grants), ZERO))
        deducted = min(user.bonus_balance, total)

        await add_transaction(
            session,
            user,
            TransactionType.EXPIRED,
            -deducted,
            BonusSource.PROMO.value,
            f"{len(ids)} bonus(es) expired",
            metadata={
                "expired_transaction_ids": ids,
                "original_total": str(total),
                "actual_deducted": str(deducted),
            },
        )
        await session.execute(
            update(BonusTransaction)
            .where(BonusTransaction.id.in_(ids))
            .values(amount=ZERO)
            .execution_options(synchronize_session=False)
        )

    logger.info("bonuses_expired", user_id=user_id, grants=len(ids), original_total=str(total), deducted=str(deducted))
    return len(ids)


async def process_expiring_bonuses(now: datetime | None = None) -> ExpiryRunResult:
    """Expire every lapsed grant, one transaction per user."""
    now = now or utcnow()
    grouped = await _find_expired_grants(now)
    run = ExpiryRunResult()
    if not grouped:
        return run

    for user_id, tx_ids in grouped.items():
        try:
            expired = await expire_user_grants(user_id, tx_ids, now)
        except Exception:
            logger.exception("expiry_user_failed", user_id=user_id)
            run.failed += 1
            continue
        if expired:
            run.expired += expired
            run.users += 1

    logger.info("expiry_run_completed", expired=run.expired, users=run.users, failed=run.failed)
    return run


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


def warning_title(days: int) -> str:
    if days == 1:
        return "Your bonuses expire tomorrow!"
    if days == 7:
        return "Your bonuses expire in a week"
    return "Your bonuses will expire soon"


def warning_body(days: int, amount: Decimal) -> str:
    whole = amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if days == 1:
        return f"{whole} bonuses expire tomorrow. Use them on your next purchase!"
    if days == 7:
        return f"{whole} bonuses expire in 7 days. Don't miss the chance to use them!"
    return f"{whole} bonuses expire in {days} days. We recommend using them on your next purchase."


async def _expiring_on(day_start: datetime, day_end: datetime) -> list[tuple[int, Decimal]]:
    async with get_sessionmaker()() as session:
        result = await session.execute(
            select(BonusTransaction.user_id, func.sum(BonusTransaction.amount))
            .where(
                BonusTransaction.type == TransactionType.EARNED.value,
                BonusTransaction.expires_at >= day_start,
                BonusTransaction.expires_at <= day_end,
                BonusTransaction.amount > 0,
            )
            .group_by(BonusTransaction.user_id)
        )
        return [(user_id, money(total or 0)) for user_id, total in result.all()]


async def send_warning_for_days(days: int, now: datetime | None = None, redis: Any | None = None) -> WarningRunResult:
    """Notify users whose grants expire on the calendar day ``days`` from now."""
    now = now or utcnow()
    day_start, day_end = day_bounds(add_days(now, days).date())
    since = now - timedelta(hours=24)
    title = warning_title(days)
    run = WarningRunResult()

    for user_id, amount in await _expiring_on(day_start, day_end):
        if amount <= 0:
            continue
        try:
            async with unit_of_work() as session:
                if await has_recent_notification(session, user_id, title, since):
                    run.skipped += 1
                    continue
                await create_notification(
                    session,
                    user_id,
                    "bonus",
                    "expiration_warning",
                    title,
                    warning_body(days, amount),
                    metadata={"type": "BONUS_EXPIRING", "days": days, "amount": str(amount)},
                    redis=redis,
                )
        except Exception:
            logger.exception("expiry_warning_failed", user_id=user_id, days=days)
            run.failed += 1
            continue
        run.notified += 1

    logger.info("expiry_warnings_sent", days=days, notified=run.notified, skipped=run.skipped, failed=run.failed)
    return run


async def send_expiration_warnings(now: datetime | None = None, redis: Any | None = None) -> WarningRunResult:
    """Run the warning pass for every configured lead time."""
    now = now or utcnow()
    total = WarningRunResult()
    for days in get_settings().expiration_warning_days:
        try:
            run = await send_warning_for_days(days, now, redis)
        except Exception:
            logger.exception("expiry_warning_pass_failed", days=days)
            total.failed += 1
            continue
        total.notified += run.notified
        total.skipped += run.skipped
        total.failed += run.failed
    return total
