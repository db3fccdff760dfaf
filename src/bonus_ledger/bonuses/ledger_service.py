"""Ledger core: atomic balance mutations paired with immutable transaction rows.

Every mutation locks the user row, checks its precondition, updates
``users.bonus_balance`` and inserts exactly one ``bonus_transactions`` row
inside a single unit of work. Pass ``db`` to compose an operation into a
caller's transaction; omit it to run the operation on its own.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select

from bonus_ledger.audit import record_audit_event
from bonus_ledger.bonuses.enums import (
    REF_ADMIN_ADJUSTMENT,
    BonusSource,
    CommissionStatus,
    PaymentStatus,
    TransactionType,
)
from bonus_ledger.bonuses.money import ZERO, money, to_decimal
from bonus_ledger.bonuses.schemas import (
    BalanceResponse,
    BonusTransactionResponse,
    ExpiringBonus,
    ExpiringBonusSummary,
    ReconciliationResult,
    StatisticsResponse,
    TransactionHistoryResponse,
    TransactionQuery,
)
from bonus_ledger.config import get_settings
from bonus_ledger.database import unit_of_work
from bonus_ledger.db.models import BonusTransaction, PartnerCommission, PaymentTransaction, User
from bonus_ledger.errors import BonusValidationError, InsufficientBalanceError, NotFoundError
from bonus_ledger.time_utils import add_days, ensure_utc, start_of_month, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_amount(amount: Decimal | int | str) -> Decimal:
    """Round a caller-supplied amount to cents; malformed and non-finite input is a validation error."""
    try:
        value = to_decimal(amount)
    except (InvalidOperation, ValueError, TypeError):
        msg = "Amount is not a valid number"
        raise BonusValidationError(msg, {"amount": str(amount)}) from None
    if not value.is_finite():
        msg = "Amount must be a finite number"
        raise BonusValidationError(msg, {"amount": str(amount)})
    return money(value)


def positive_amount(amount: Decimal | int | str, what: str = "Amount") -> Decimal:
    """Round to cents and reject anything not strictly positive."""
    value = parse_amount(amount)
    if value <= 0:
        msg = f"{what} must be positive"
        raise BonusValidationError(msg, {"amount": str(amount)})
    return value


def coerce_source(source: BonusSource | str) -> str:
    try:
        return BonusSource(source).value
    except ValueError:
        msg = f"Unknown bonus source: {source}"
        raise BonusValidationError(msg) from None


async def lock_user(db: AsyncSession, user_id: int) -> User:
    """Load the user row with ``SELECT ... FOR UPDATE``."""
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        msg = "User not found"
        raise NotFoundError(msg, {"user_id": user_id})
    return user


async def add_transaction(
    db: AsyncSession,
    user: User,
    type_: TransactionType,
    amount: Decimal,
    source: str,
    description: str,
    reference_id: str | None = None,
    reference_type: str | None = None,
    expires_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> BonusTransaction:
    """Apply a signed amount to the locked user's balance and record it."""
    new_balance = user.bonus_balance + amount
    if new_balance < 0:
        raise InsufficientBalanceError(
            details={"balance": str(user.bonus_balance), "requested": str(-amount)},
        )
    user.bonus_balance = new_balance

    tx = BonusTransaction(
        user_id=user.id,
        type=type_.value,
        amount=amount,
        source=source,
        reference_id=reference_id,
        reference_type=reference_type,
        description=description,
        expires_at=expires_at,
        transaction_metadata=metadata or {},
        created_at=utcnow(),
    )
    db.add(tx)
    await db.flush()
    return tx


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def earn_bonuses(
    user_id: int,
    amount: Decimal | int | str,
    source: BonusSource | str,
    *,
    reference_id: str | None = None,
    reference_type: str | None = None,
    description: str | None = None,
    expiry_days: int | None = None,
    metadata: dict[str, Any] | None = None,
    db: AsyncSession | None = None,
) -> BonusTransactionResponse:
    """Credit ``amount`` to the user as an EARNED grant that expires.

    Raises:
        BonusValidationError: If the amount is not positive.
        NotFoundError: If the user does not exist.
    """
    value = positive_amount(amount)
    source_value = coerce_source(source)
    days = expiry_days if expiry_days is not None else get_settings().default_expiry_days

    async with unit_of_work(db) as session:
        user = await lock_user(session, user_id)
        tx = await add_transaction(
            session,
            user,
            TransactionType.EARNED,
            value,
            source_value,
            description or f"Earned bonus from {source_value}",
            reference_id=reference_id,
            reference_type=reference_type,
            expires_at=add_days(utcnow(), days),
            metadata=metadata,
        )
        response = BonusTransactionResponse.from_model(tx)

    logger.info("bonus_earned", user_id=user_id, amount=str(value), source=source_value, transaction_id=tx.id)
    return response


async def spend_bonuses(
    user_id: int,
    amount: Decimal | int | str,
    reference_id: str,
    reference_type: str,
    *,
    description: str | None = None,
    source: BonusSource | str = BonusSource.PARTNER,
    db: AsyncSession | None = None,
) -> BonusTransactionResponse:
    """Debit ``amount`` from the user's balance.

    Raises:
        BonusValidationError: If the amount is not positive.
        NotFoundError: If the user does not exist.
        InsufficientBalanceError: If the balance does not cover the amount.
    """
    value = positive_amount(amount)
    source_value = coerce_source(source)

    async with unit_of_work(db) as session:
        user = await lock_user(session, user_id)
        tx = await add_transaction(
            session,
            user,
            TransactionType.SPENT,
            -value,
            source_value,
            description or "Bonus spent on purchase",
            reference_id=reference_id,
            reference_type=reference_type,
        )
        response = BonusTransactionResponse.from_model(tx)

    logger.info("bonus_spent", user_id=user_id, amount=str(value), reference_id=reference_id)
    return response


async def validate_spend(db: AsyncSession, user_id: int, amount: Decimal | int | str) -> bool:
    """Read-only check that the user could spend ``amount`` right now."""
    balance = await db.scalar(select(User.bonus_balance).where(User.id == user_id))
    if balance is None:
        return False
    return balance >= parse_amount(amount)


async def adjust_balance(
    user_id: int,
    amount: Decimal | int | str,
    reason: str,
    admin_id: int,
    *,
    db: AsyncSession | None = None,
) -> BonusTransactionResponse:
    """Administrative correction; positive credits expire like earned grants.

    Raises:
        BonusValidationError: If the amount is zero.
        NotFoundError: If the user does not exist.
        InsufficientBalanceError: If a negative adjustment would drive the balance below zero.
    """
    value = parse_amount(amount)
    if value == 0:
        msg = "Adjustment amount must not be zero"
        raise BonusValidationError(msg)

    async with unit_of_work(db) as session:
        user = await lock_user(session, user_id)
        if value < 0 and user.bonus_balance < -value:
            msg = "Cannot reduce balance below zero"
            raise InsufficientBalanceError(
                msg, {"balance": str(user.bonus_balance), "requested": str(-value)}
            )
        tx = await add_transaction(
            session,
            user,
            TransactionType.ADJUSTMENT,
            value,
            BonusSource.ADMIN_ADJUSTMENT.value,
            f"Admin adjustment: {reason}",
            reference_id=str(admin_id),
            reference_type=REF_ADMIN_ADJUSTMENT,
            expires_at=add_days(utcnow(), get_settings().default_expiry_days) if value > 0 else None,
            metadata={"admin_id": admin_id, "reason": reason},
        )
        new_balance = user.bonus_balance
        response = BonusTransactionResponse.from_model(tx)

    logger.info("balance_adjusted", user_id=user_id, amount=str(value), admin_id=admin_id)

    # Joins the caller's transaction when db is given.
    await record_audit_event(
        admin_id,
        "BONUS_ADJUSTED",
        "User",
        str(user_id),
        new_value={"amount": str(value), "reason": reason, "new_balance": str(new_balance)},
        db=db,
    )
    return response


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_balance(db: AsyncSession, user_id: int) -> BalanceResponse:
    """Current balance with pending commissions and lifetime totals."""
    balance = await db.scalar(select(User.bonus_balance).where(User.id == user_id))
    if balance is None:
        msg = "User not found"
        raise NotFoundError(msg, {"user_id": user_id})

    earned = await db.scalar(
        select(func.coalesce(func.sum(BonusTransaction.amount), 0)).where(
            BonusTransaction.user_id == user_id,
            BonusTransaction.type.in_([TransactionType.EARNED.value, TransactionType.ADJUSTMENT.value]),
            BonusTransaction.amount > 0,
        )
    )
    spent = await db.scalar(
        select(func.coalesce(func.sum(BonusTransaction.amount), 0)).where(
            BonusTransaction.user_id == user_id,
            BonusTransaction.type == TransactionType.SPENT.value,
        )
    )
    pending = await db.scalar(
        select(func.coalesce(func.sum(PartnerCommission.amount), 0)).where(
            PartnerCommission.partner_id == user_id,
            PartnerCommission.status == CommissionStatus.PENDING.value,
        )
    )

    return BalanceResponse(
        balance=money(balance),
        pending_earnings=money(pending or 0),
        lifetime_earned=money(earned or 0),
        lifetime_spent=abs(money(spent or 0)),
    )


async def get_statistics(db: AsyncSession, user_id: int) -> StatisticsResponse:
    """Balance figures plus 30-day expiry and this month's activity."""
    balance = await get_balance(db, user_id)
    expiring = await get_expiring_bonuses(db, user_id, 30)

    month_start = start_of_month(utcnow())
    rows = await db.execute(
        select(
            BonusTransaction.type,
            func.count(BonusTransaction.id),
            func.coalesce(func.sum(BonusTransaction.amount), 0),
        )
        .where(BonusTransaction.user_id == user_id, BonusTransaction.created_at >= month_start)
        .group_by(BonusTransaction.type)
    )

    count = 0
    earned = ZERO
    spent = ZERO
    for type_, type_count, total in rows.all():
        count += type_count
        if type_ == TransactionType.EARNED.value:
            earned += money(total)
        elif type_ == TransactionType.SPENT.value:
            spent += abs(money(total))

    return StatisticsResponse(
        **balance.model_dump(),
        expiring_in_30_days=expiring.total_expiring,
        transactions_this_month=count,
        earned_this_month=earned,
        spent_this_month=spent,
    )


async def get_transaction_history(
    db: AsyncSession,
    user_id: int,
    query: TransactionQuery | None = None,
) -> TransactionHistoryResponse:
    """Newest-first page of a user's transactions."""
    query = query or TransactionQuery()

    conditions = [BonusTransaction.user_id == user_id]
    if query.type:
        conditions.append(BonusTransaction.type == query.type)
    if query.source:
        conditions.append(BonusTransaction.source == query.source)
    if query.from_date:
        conditions.append(BonusTransaction.created_at >= query.from_date)
    if query.to_date:
        conditions.append(BonusTransaction.created_at <= query.to_date)

    total = await db.scalar(select(func.count(BonusTransaction.id)).where(*conditions))
    result = await db.execute(
        select(BonusTransaction)
        .where(*conditions)
        .order_by(BonusTransaction.created_at.desc(), BonusTransaction.id.desc())
        .offset((query.page - 1) * query.limit)
        .limit(query.limit)
    )

    return TransactionHistoryResponse(
        items=[BonusTransactionResponse.from_model(tx) for tx in result.scalars().all()],
        total=total or 0,
        page=query.page,
        limit=query.limit,
    )


async def get_expiring_bonuses(db: AsyncSession, user_id: int, within_days: int = 30) -> ExpiringBonusSummary:
    """Unprocessed grants expiring in ``(now, now + within_days]``."""
    now = utcnow()
    result = await db.execute(
        select(BonusTransaction)
        .where(
            BonusTransaction.user_id == user_id,
            BonusTransaction.type == TransactionType.EARNED.value,
            BonusTransaction.amount > 0,
            BonusTransaction.expires_at > now,
            BonusTransaction.expires_at <= add_days(now, within_days),
        )
        .order_by(BonusTransaction.expires_at.asc())
    )

    bonuses = []
    for tx in result.scalars().all():
        expires_at = ensure_utc(tx.expires_at)
        days_remaining = math.ceil((expires_at - now) / timedelta(days=1))
        bonuses.append(
            ExpiringBonus(
                transaction_id=tx.id,
                amount=money(tx.amount),
                expires_at=expires_at,
                days_remaining=days_remaining,
            )
        )

    return ExpiringBonusSummary(
        expiring_bonuses=bonuses,
        total_expiring=sum((b.amount for b in bonuses), ZERO),
        within_days=within_days,
    )


async def is_first_purchase(db: AsyncSession, user_id: int) -> bool:
    """True while the user has at most one completed payment."""
    completed = await db.scalar(
        select(func.count(PaymentTransaction.id)).where(
            PaymentTransaction.user_id == user_id,
            PaymentTransaction.status == PaymentStatus.COMPLETED.value,
        )
    )
    return (completed or 0) <= 1


async def reconcile_balance(db: AsyncSession, user_id: int) -> ReconciliationResult:
    """Compare the stored balance with the one derived from the ledger.

    Expiry zeroes the grants it consumes, so the nominal total recorded on
    each EXPIRED row is added back to the plain sum of amounts.
    """
    stored = await db.scalar(select(User.bonus_balance).where(User.id == user_id))
    if stored is None:
        msg = "User not found"
        raise NotFoundError(msg, {"user_id": user_id})

    amount_sum = await db.scalar(
        select(func.coalesce(func.sum(BonusTransaction.amount), 0)).where(BonusTransaction.user_id == user_id)
    )
    expired_meta = await db.scalars(
        select(BonusTransaction.transaction_metadata).where(
            BonusTransaction.user_id == user_id,
            BonusTransaction.type == TransactionType.EXPIRED.value,
        )
    )
    consumed = sum((money(meta.get("original_total", "0")) for meta in expired_meta.all()), ZERO)

    ledger = money(amount_sum or 0) + consumed
    return ReconciliationResult(
        user_id=user_id,
        stored_balance=money(stored),
        ledger_balance=ledger,
        consistent=money(stored) == ledger,
    )
