"""Admin bonus operations: system statistics, rate management and campaigns.

Every mutation here writes an audit row after its own transaction commits.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select, update

from bonus_ledger.admin.schemas import (
    AdminBonusStats,
    CampaignCreate,
    CampaignExecutionResult,
    CampaignListResponse,
    CampaignQuery,
    CampaignResponse,
    CampaignUpdate,
    UserBonusDetails,
)
from bonus_ledger.audit import record_audit_event
from bonus_ledger.bonuses.enums import (
    REF_BONUS_CAMPAIGN,
    BonusSource,
    CampaignStatus,
    CampaignTargetType,
    TransactionType,
    WithdrawalStatus,
)
from bonus_ledger.bonuses.ledger_service import adjust_balance, earn_bonuses, get_balance, get_expiring_bonuses
from bonus_ledger.bonuses.money import ZERO, money, to_decimal
from bonus_ledger.bonuses.schemas import (
    BonusRateCreate,
    BonusRateResponse,
    BonusRateUpdate,
    BonusTransactionResponse,
)
from bonus_ledger.config import get_settings
from bonus_ledger.database import unit_of_work
from bonus_ledger.db.models import BonusCampaign, BonusRate, BonusTransaction, BonusWithdrawal, User
from bonus_ledger.errors import BonusValidationError, NotFoundError, StateConflictError
from bonus_ledger.time_utils import add_days, ensure_utc, start_of_day, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


async def get_bonus_stats(db: AsyncSession) -> AdminBonusStats:
    """System-wide bonus figures for the admin dashboard."""
    now = utcnow()

    total_balance = await db.scalar(select(func.coalesce(func.sum(User.bonus_balance), 0)))
    today = await db.execute(
        select(BonusTransaction.type, func.coalesce(func.sum(BonusTransaction.amount), 0))
        .where(BonusTransaction.created_at >= start_of_day(now))
        .group_by(BonusTransaction.type)
    )
    expiring = await db.scalar(
        select(func.coalesce(func.sum(BonusTransaction.amount), 0)).where(
            BonusTransaction.type == TransactionType.EARNED.value,
            BonusTransaction.expires_at > now,
            BonusTransaction.expires_at <= add_days(now, 30),
            BonusTransaction.amount > 0,
        )
    )
    pending_withdrawals = await db.scalar(
        select(func.coalesce(func.sum(BonusWithdrawal.bonus_amount), 0)).where(
            BonusWithdrawal.status == WithdrawalStatus.PENDING.value
        )
    )
    users_with_balance = await db.scalar(select(func.count(User.id)).where(User.bonus_balance > 0))

    earned_today = ZERO
    spent_today = ZERO
    for type_, total in today.all():
        if type_ == TransactionType.EARNED.value:
            earned_today += money(total)
        elif type_ == TransactionType.SPENT.value:
            spent_today += abs(money(total))

    in_circulation = money(total_balance or 0)
    holders = users_with_balance or 0
    average = money(in_circulation / holders) if holders else ZERO

    return AdminBonusStats(
        total_in_circulation=in_circulation,
        earned_today=earned_today,
        spent_today=spent_today,
        expiring_in_30_days=money(expiring or 0),
        pending_withdrawals=money(pending_withdrawals or 0),
        users_with_balance=holders,
        average_balance=average,
    )


async def get_user_bonus_details(db: AsyncSession, user_id: int) -> UserBonusDetails:
    user = await db.get(User, user_id)
    if user is None:
        msg = "User not found"
        raise NotFoundError(msg, {"user_id": user_id})

    balance = await get_balance(db, user_id)
    expiring = await get_expiring_bonuses(db, user_id, 30)
    tx_count = await db.scalar(select(func.count(BonusTransaction.id)).where(BonusTransaction.user_id == user_id))
    last_at = await db.scalar(select(func.max(BonusTransaction.created_at)).where(BonusTransaction.user_id == user_id))

    return UserBonusDetails(
        user_id=user.id,
        email=user.email,
        full_name=f"{user.first_name} {user.last_name}".strip(),
        balance=balance.balance,
        lifetime_earned=balance.lifetime_earned,
        lifetime_spent=balance.lifetime_spent,
        expiring_in_30_days=expiring.total_expiring,
        transaction_count=tx_count or 0,
        last_transaction_at=ensure_utc(last_at) if last_at else None,
    )


async def adjust_user_balance(
    user_id: int,
    amount: Decimal | int | str,
    reason: str,
    admin_id: int,
) -> BonusTransactionResponse:
    return await adjust_balance(user_id, amount, reason, admin_id)


# ---------------------------------------------------------------------------
# Rates
# ---------------------------------------------------------------------------


async def list_bonus_rates(db: AsyncSession) -> list[BonusRateResponse]:
    result = await db.execute(
        select(BonusRate).order_by(BonusRate.is_active.desc(), BonusRate.effective_from.desc())
    )
    return [BonusRateResponse.model_validate(rate) for rate in result.scalars().all()]


async def create_bonus_rate(data: BonusRateCreate, admin_id: int) -> BonusRateResponse:
    if data.effective_to is not None and data.effective_to < data.effective_from:
        msg = "effective_to must not precede effective_from"
        raise BonusValidationError(msg)

    async with unit_of_work() as session:
        rate = BonusRate(
            from_currency=data.from_currency,
            to_currency=data.to_currency,
            rate=data.rate,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
            is_active=True,
            created_by_id=admin_id,
            created_at=utcnow(),
        )
        session.add(rate)
        await session.flush()
        response = BonusRateResponse.model_validate(rate)

    await record_audit_event(
        admin_id,
        "BONUS_RATE_CREATED",
        "BonusRate",
        str(response.id),
        new_value={"rate": str(data.rate), "effective_from": data.effective_from.isoformat()},
    )
    return response


async def _get_rate_for_update(session: AsyncSession, rate_id: int) -> BonusRate:
    rate = await session.get(BonusRate, rate_id, with_for_update=True)
    if rate is None:
        msg = "Rate not found"
        raise NotFoundError(msg, {"rate_id": rate_id})
    return rate


async def update_bonus_rate(rate_id: int, data: BonusRateUpdate, admin_id: int) -> BonusRateResponse:
    async with unit_of_work() as session:
        rate = await _get_rate_for_update(session, rate_id)
        old_value = {"rate": str(rate.rate), "is_active": rate.is_active}

        if data.rate is not None:
            rate.rate = data.rate
        if data.effective_from is not None:
            rate.effective_from = data.effective_from
        if data.effective_to is not None:
            rate.effective_to = data.effective_to
        if data.is_active is not None:
            rate.is_active = data.is_active
        await session.flush()
        response = BonusRateResponse.model_validate(rate)

    await record_audit_event(
        admin_id,
        "BONUS_RATE_UPDATED",
        "BonusRate",
        str(rate_id),
        old_value=old_value,
        new_value={"rate": str(response.rate), "is_active": response.is_active},
    )
    return response


async def deactivate_rate(rate_id: int, admin_id: int) -> None:
    async with unit_of_work() as session:
        rate = await _get_rate_for_update(session, rate_id)
        rate.is_active = False

    await record_audit_event(admin_id, "BONUS_RATE_DEACTIVATED", "BonusRate", str(rate_id))


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


def _parse_target_type(value: str) -> CampaignTargetType:
    try:
        return CampaignTargetType(value)
    except ValueError:
        msg = f"Unknown campaign target type: {value}"
        raise BonusValidationError(msg) from None


def _parse_campaign_status(value: str) -> CampaignStatus:
    try:
        return CampaignStatus(value)
    except ValueError:
        msg = f"Unknown campaign status: {value}"
        raise BonusValidationError(msg) from None


async def list_campaigns(db: AsyncSession, query: CampaignQuery | None = None) -> CampaignListResponse:
    query = query or CampaignQuery()
    conditions = []
    if query.status:
        conditions.append(BonusCampaign.status == query.status)

    total = await db.scalar(select(func.count(BonusCampaign.id)).where(*conditions))
    result = await db.execute(
        select(BonusCampaign)
        .where(*conditions)
        .order_by(BonusCampaign.created_at.desc(), BonusCampaign.id.desc())
        .offset((query.page - 1) * query.limit)
        .limit(query.limit)
    )
    return CampaignListResponse(
        items=[CampaignResponse.model_validate(c) for c in result.scalars().all()],
        total=total or 0,
        page=query.page,
        limit=query.limit,
    )


async def get_campaign(db: AsyncSession, campaign_id: int) -> CampaignResponse:
    campaign = await db.get(BonusCampaign, campaign_id)
    if campaign is None:
        msg = "Campaign not found"
        raise NotFoundError(msg, {"campaign_id": campaign_id})
    return CampaignResponse.model_validate(campaign)


async def create_campaign(data: CampaignCreate, admin_id: int) -> CampaignResponse:
    """Create a campaign in DRAFT status."""
    target_type = _parse_target_type(data.target_type)
    if data.end_date is not None and data.end_date < data.start_date:
        msg = "end_date must not precede start_date"
        raise BonusValidationError(msg)

    async with unit_of_work() as session:
        campaign = BonusCampaign(
            name=data.name,
            description=data.description,
            bonus_amount=money(data.bonus_amount),
            target_type=target_type.value,
            target_criteria=data.target_criteria,
            status=CampaignStatus.DRAFT.value,
            start_date=data.start_date,
            end_date=data.end_date,
            expiry_days=data.expiry_days,
            usage_limit=data.usage_limit,
            used_count=0,
            created_by_id=admin_id,
            created_at=utcnow(),
        )
        session.add(campaign)
        await session.flush()
        response = CampaignResponse.model_validate(campaign)

    await record_audit_event(
        admin_id,
        "BONUS_CAMPAIGN_CREATED",
        "BonusCampaign",
        str(response.id),
        new_value={"name": response.name, "bonus_amount": str(response.bonus_amount)},
    )
    return response


async def _get_campaign_for_update(session: AsyncSession, campaign_id: int) -> BonusCampaign:
    campaign = await session.get(BonusCampaign, campaign_id, with_for_update=True, populate_existing=True)
    if campaign is None:
        msg = "Campaign not found"
        raise NotFoundError(msg, {"campaign_id": campaign_id})
    return campaign


async def update_campaign(campaign_id: int, data: CampaignUpdate, admin_id: int) -> CampaignResponse:
    """Apply the given fields; completed campaigns are frozen."""
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "target_type" in changes:
        changes["target_type"] = _parse_target_type(changes["target_type"]).value
    if "status" in changes:
        changes["status"] = _parse_campaign_status(changes["status"]).value
    if "bonus_amount" in changes:
        changes["bonus_amount"] = money(changes["bonus_amount"])

    async with unit_of_work() as session:
        campaign = await _get_campaign_for_update(session, campaign_id)
        if campaign.status == CampaignStatus.COMPLETED.value:
            msg = "Cannot update a completed campaign"
            raise StateConflictError(msg, expected="not COMPLETED", actual=campaign.status)

        old_value = {"name": campaign.name, "status": campaign.status}
        for field, value in changes.items():
            setattr(campaign, field, value)
        await session.flush()
        response = CampaignResponse.model_validate(campaign)

    await record_audit_event(
        admin_id,
        "BONUS_CAMPAIGN_UPDATED",
        "BonusCampaign",
        str(campaign_id),
        old_value=old_value,
        new_value={"name": response.name, "status": response.status},
    )
    return response


async def cancel_campaign(campaign_id: int, admin_id: int) -> None:
    async with unit_of_work() as session:
        campaign = await _get_campaign_for_update(session, campaign_id)
        if campaign.status == CampaignStatus.COMPLETED.value:
            msg = "Cannot cancel a completed campaign"
            raise StateConflictError(msg, expected="not COMPLETED", actual=campaign.status)
        campaign.status = CampaignStatus.CANCELLED.value

    await record_audit_event(admin_id, "BONUS_CAMPAIGN_CANCELLED", "BonusCampaign", str(campaign_id))


async def _target_user_ids(db: AsyncSession, target_type: str, criteria: dict[str, Any]) -> list[int]:
    """Active users matched by the campaign's targeting rule, in id order."""
    stmt = select(User.id).where(User.is_active.is_(True)).order_by(User.id)

    if target_type == CampaignTargetType.INDIVIDUAL.value:
        user_ids = criteria.get("user_ids") or []
        if not user_ids:
            return []
        stmt = stmt.where(User.id.in_([int(uid) for uid in user_ids]))
    elif target_type == CampaignTargetType.SEGMENT.value:
        if criteria.get("min_balance") is not None:
            stmt = stmt.where(User.bonus_balance >= to_decimal(criteria["min_balance"]))
        if criteria.get("role"):
            stmt = stmt.where(User.role == criteria["role"])
        if criteria.get("registered_after"):
            registered_after = criteria["registered_after"]
            if isinstance(registered_after, str):
                registered_after = datetime.fromisoformat(registered_after)
            stmt = stmt.where(User.created_at >= ensure_utc(registered_after))
    elif target_type != CampaignTargetType.ALL.value:
        return []

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _reserve_slots(session: AsyncSession, campaign_id: int, wanted: int) -> int:
    """Claim up to ``wanted`` usage slots; returns how many were granted.

    The increment is written first so the campaign row is write-locked
    before ``used_count`` is read back and any overshoot is returned.
    """
    await session.execute(
        update(BonusCampaign)
        .where(BonusCampaign.id == campaign_id)
        .values(used_count=BonusCampaign.used_count + wanted)
    )
    campaign = await _get_campaign_for_update(session, campaign_id)
    if campaign.status != CampaignStatus.ACTIVE.value:
        granted = 0
    elif campaign.usage_limit is None:
        granted = wanted
    else:
        granted = max(wanted - max(campaign.used_count - campaign.usage_limit, 0), 0)
    campaign.used_count -= wanted - granted
    return granted


async def execute_campaign(campaign_id: int, admin_id: int) -> CampaignExecutionResult:
    """Grant the campaign bonus to every targeted user, batch by batch.

    Each batch of grants and its ``used_count`` increment commit together;
    a failure stops the run with earlier batches kept.

    Raises:
        NotFoundError: If the campaign does not exist.
        StateConflictError: If it is not ACTIVE, not running now, or has no eligible users left.
    """
    settings = get_settings()
    now = utcnow()

    async with unit_of_work() as session:
        campaign = await _get_campaign_for_update(session, campaign_id)
        if campaign.status != CampaignStatus.ACTIVE.value:
            msg = "Campaign must be ACTIVE to execute"
            raise StateConflictError(msg, expected=CampaignStatus.ACTIVE.value, actual=campaign.status)
        if ensure_utc(campaign.start_date) > now:
            msg = "Campaign has not started yet"
            raise StateConflictError(msg, expected="started", actual="scheduled")
        if campaign.end_date is not None and ensure_utc(campaign.end_date) < now:
            msg = "Campaign has already ended"
            raise StateConflictError(msg, expected="running", actual="ended")

        user_ids = await _target_user_ids(session, campaign.target_type, campaign.target_criteria or {})
        usage_limit = campaign.usage_limit
        if usage_limit is not None:
            user_ids = user_ids[: max(usage_limit - campaign.used_count, 0)]
        name = campaign.name
        amount = money(campaign.bonus_amount)
        expiry_days = campaign.expiry_days or settings.default_expiry_days
        already_executed = campaign.executed_at is not None

    if not user_ids:
        msg = "No eligible users found or usage limit exhausted"
        raise StateConflictError(msg, expected="eligible users", actual="none")

    awarded = 0
    batch_size = settings.campaign_batch_size
    for start in range(0, len(user_ids), batch_size):
        batch = user_ids[start : start + batch_size]
        async with unit_of_work() as session:
            # Another run may have used slots since the check above.
            batch = batch[: await _reserve_slots(session, campaign_id, len(batch))]
            for user_id in batch:
                await earn_bonuses(
                    user_id,
                    amount,
                    BonusSource.PROMO,
                    reference_id=str(campaign_id),
                    reference_type=REF_BONUS_CAMPAIGN,
                    description=f"Campaign bonus: {name}",
                    expiry_days=expiry_days,
                    metadata={"campaign_id": campaign_id, "campaign_name": name},
                    db=session,
                )
        if not batch:
            break
        awarded += len(batch)

    if not awarded:
        msg = "Usage limit exhausted by a concurrent run"
        raise StateConflictError(msg, expected="eligible users", actual="none")

    async with unit_of_work() as session:
        campaign = await _get_campaign_for_update(session, campaign_id)
        if usage_limit is not None and campaign.used_count >= usage_limit:
            campaign.status = CampaignStatus.COMPLETED.value
            campaign.executed_at = utcnow()
        elif not already_executed:
            campaign.executed_at = utcnow()

    total = money(amount * awarded)
    await record_audit_event(
        admin_id,
        "BONUS_CAMPAIGN_EXECUTED",
        "BonusCampaign",
        str(campaign_id),
        new_value={"users_awarded": awarded, "total_amount": str(total)},
    )
    logger.info("campaign_executed", campaign_id=campaign_id, users_awarded=awarded, total_amount=str(total))
    return CampaignExecutionResult(campaign_id=campaign_id, users_awarded=awarded, total_amount=total)
