"""Bonus → currency withdrawals and the checkout cap."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select

from bonus_ledger.bonuses.enums import (
    REF_BONUS_WITHDRAWAL,
    BonusSource,
    TaxStatus,
    TransactionType,
    WithdrawalStatus,
)
from bonus_ledger.bonuses.ledger_service import add_transaction, lock_user, positive_amount
from bonus_ledger.bonuses.money import floor_money, money, to_decimal
from bonus_ledger.bonuses.rate_service import get_current_rate
from bonus_ledger.bonuses.schemas import (
    MaxApplicableBonus,
    WithdrawalPreview,
    WithdrawalResult,
    WithdrawBonusRequest,
)
from bonus_ledger.config import get_settings
from bonus_ledger.database import unit_of_work
from bonus_ledger.db.models import BonusWithdrawal, User
from bonus_ledger.errors import BonusValidationError, InsufficientBalanceError, NotFoundError, StateConflictError
from bonus_ledger.time_utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


def parse_tax_status(value: TaxStatus | str) -> TaxStatus:
    try:
        return TaxStatus(value)
    except ValueError:
        msg = f"Unknown tax status: {value}"
        raise BonusValidationError(msg, {"allowed": [s.value for s in TaxStatus]}) from None


def tax_rate_for(status: TaxStatus) -> Decimal:
    return to_decimal(get_settings().tax_rates[status.value])


async def preview_withdrawal(
    db: AsyncSession,
    user_id: int,
    amount: Decimal | int | str,
    tax_status: TaxStatus | str,
) -> WithdrawalPreview:
    """Compute currency, tax and net figures for a withdrawal without mutating anything.

    Raises:
        BonusValidationError: If the amount is not positive or the tax status is unknown.
        StateConflictError: If the amount is below the configured minimum.
        NotFoundError: If the user does not exist.
        InsufficientBalanceError: If the balance does not cover the amount.
    """
    settings = get_settings()
    value = positive_amount(amount)
    status = parse_tax_status(tax_status)

    if value < settings.min_withdrawal_amount:
        msg = f"Minimum withdrawal amount is {settings.min_withdrawal_amount} bonuses"
        raise StateConflictError(msg, expected=f">= {settings.min_withdrawal_amount}", actual=str(value))

    balance = await db.scalar(select(User.bonus_balance).where(User.id == user_id))
    if balance is None:
        msg = "User not found"
        raise NotFoundError(msg, {"user_id": user_id})
    if balance < value:
        raise InsufficientBalanceError(details={"balance": str(balance), "requested": str(value)})

    rate = (await get_current_rate(db)).rate
    currency_amount = money(value * rate)
    tax_rate = tax_rate_for(status)
    estimated_tax = money(currency_amount * tax_rate)

    return WithdrawalPreview(
        bonus_amount=value,
        currency_amount=currency_amount,
        rate=rate,
        tax_rate=tax_rate,
        estimated_tax=estimated_tax,
        estimated_net=money(currency_amount - estimated_tax),
    )


async def withdraw_bonuses_to_currency(
    user_id: int,
    request: WithdrawBonusRequest,
    *,
    db: AsyncSession | None = None,
) -> WithdrawalResult:
    """Debit bonuses and open a PENDING withdrawal request.

    The preview runs under the user lock, so the figures stored on the
    transaction and the withdrawal are the ones the balance check saw.
    """
    status = parse_tax_status(request.tax_status)

    async with unit_of_work(db) as session:
        user = await lock_user(session, user_id)
        preview = await preview_withdrawal(session, user_id, request.amount, status)

        withdrawal = BonusWithdrawal(
            user_id=user_id,
            bonus_amount=preview.bonus_amount,
            currency_amount=preview.currency_amount,
            rate=preview.rate,
            tax_status=status.value,
            tax_amount=preview.estimated_tax,
            net_amount=preview.estimated_net,
            payment_details=request.payment_details,
            status=WithdrawalStatus.PENDING.value,
            created_at=utcnow(),
        )
        session.add(withdrawal)
        await session.flush()

        await add_transaction(
            session,
            user,
            TransactionType.WITHDRAWN,
            -preview.bonus_amount,
            BonusSource.PARTNER.value,
            "Bonus withdrawal to currency",
            reference_id=str(withdrawal.id),
            reference_type=REF_BONUS_WITHDRAWAL,
            metadata={
                "currency_amount": str(preview.currency_amount),
                "rate": str(preview.rate),
                "tax_status": status.value,
                "tax_amount": str(preview.estimated_tax),
                "net_amount": str(preview.estimated_net),
            },
        )
        withdrawal_id = withdrawal.id

    logger.info(
        "bonus_withdrawal_requested",
        user_id=user_id,
        withdrawal_id=withdrawal_id,
        amount=str(preview.bonus_amount),
        net=str(preview.estimated_net),
    )
    return WithdrawalResult(
        withdrawal_id=withdrawal_id,
        bonus_amount=preview.bonus_amount,
        currency_amount=preview.currency_amount,
        rate=preview.rate,
        tax_amount=preview.estimated_tax,
        net_amount=preview.estimated_net,
    )


async def calculate_max_applicable(
    db: AsyncSession,
    user_id: int,
    order_total: Decimal | int | str,
) -> MaxApplicableBonus:
    """Largest bonus amount usable on an order: min(balance, percent cap, total), floored to cents."""
    balance = await db.scalar(select(User.bonus_balance).where(User.id == user_id))
    if balance is None:
        msg = "User not found"
        raise NotFoundError(msg, {"user_id": user_id})

    max_percent = get_settings().max_bonus_percent_checkout
    total = to_decimal(order_total)
    by_percent = total * max_percent / 100
    max_amount = floor_money(max(min(balance, by_percent, total), Decimal("0")))

    return MaxApplicableBonus(max_amount=max_amount, balance=money(balance), max_percent=max_percent)
