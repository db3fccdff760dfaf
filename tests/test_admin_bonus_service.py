"""Admin statistics, rate management and campaign tests."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from bonus_ledger.admin import admin_bonus_service
from bonus_ledger.admin.admin_bonus_service import (
    adjust_user_balance,
    cancel_campaign,
    create_bonus_rate,
    create_campaign,
    deactivate_rate,
    execute_campaign,
    get_bonus_stats,
    get_campaign,
    get_user_bonus_details,
    list_bonus_rates,
    list_campaigns,
    update_bonus_rate,
    update_campaign,
)
from bonus_ledger.admin.schemas import CampaignCreate, CampaignQuery, CampaignUpdate
from bonus_ledger.bonuses.enums import BonusSource
from bonus_ledger.bonuses.ledger_service import earn_bonuses, spend_bonuses
from bonus_ledger.bonuses.rate_service import get_current_rate
from bonus_ledger.bonuses.schemas import BonusRateCreate, BonusRateUpdate
from bonus_ledger.config import get_settings
from bonus_ledger.database import unit_of_work
from bonus_ledger.db.models import AuditLog, BonusCampaign, BonusTransaction
from bonus_ledger.errors import BonusValidationError, NotFoundError, StateConflictError
from bonus_ledger.time_utils import utcnow
from helpers import balance_of

ADMIN_ID = 1


async def _audit_actions(db_session, entity_type: str) -> list[str]:
    result = await db_session.execute(
        select(AuditLog.action).where(AuditLog.entity_type == entity_type).order_by(AuditLog.id)
    )
    return list(result.scalars().all())


def _campaign_data(**overrides) -> CampaignCreate:
    fields = {
        "name": "Spring promo",
        "bonus_amount": Decimal("25"),
        "target_type": "ALL",
        "start_date": utcnow() - timedelta(hours=1),
    }
    fields.update(overrides)
    return CampaignCreate(**fields)


async def _campaign_grants(db_session, campaign_id: int) -> int:
    return await db_session.scalar(
        select(func.count(BonusTransaction.id)).where(
            BonusTransaction.reference_type == "BonusCampaign",
            BonusTransaction.reference_id == str(campaign_id),
        )
    )


def _use_slots_during_check(monkeypatch, campaign_id: int, used: int) -> None:
    """Make another writer set ``used_count`` while eligible users are being selected."""
    target_user_ids = admin_bonus_service._target_user_ids

    async def _racing(session, target_type, criteria):
        user_ids = await target_user_ids(session, target_type, criteria)
        async with unit_of_work() as other:
            await other.execute(
                update(BonusCampaign).where(BonusCampaign.id == campaign_id).values(used_count=used)
            )
        return user_ids

    monkeypatch.setattr(admin_bonus_service, "_target_user_ids", _racing)


async def _active_campaign(**overrides) -> int:
    campaign = await create_campaign(_campaign_data(**overrides), ADMIN_ID)
    await update_campaign(campaign.id, CampaignUpdate(status="ACTIVE"), ADMIN_ID)
    return campaign.id


class TestAdminStats:
    """System-wide and per-user figures."""

    @pytest.mark.asyncio
    async def test_bonus_stats(self, db_session, make_user):
        """Circulation, today's movements and the average over users with a balance."""
        alice = await make_user(balance=100)
        bob = await make_user(balance=300)
        await make_user()
        await earn_bonuses(alice.id, 50, BonusSource.PROMO)
        await spend_bonuses(bob.id, 20, "order-1", "ORDER")

        stats = await get_bonus_stats(db_session)

        assert stats.total_in_circulation == Decimal("430.00")
        assert stats.earned_today == Decimal("50.00")
        assert stats.spent_today == Decimal("20.00")
        assert stats.expiring_in_30_days == Decimal("0.00")
        assert stats.pending_withdrawals == Decimal("0.00")
        assert stats.users_with_balance == 2
        assert stats.average_balance == Decimal("215.00")

    @pytest.mark.asyncio
    async def test_empty_system(self, db_session):
        stats = await get_bonus_stats(db_session)
        assert stats.users_with_balance == 0
        assert stats.average_balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_user_details(self, db_session, make_user):
        """Details combine profile, balance and expiring amounts."""
        user = await make_user(balance=40, first_name="Ada", last_name="Lovelace")
        await earn_bonuses(user.id, 10, BonusSource.PROMO, expiry_days=10)

        details = await get_user_bonus_details(db_session, user.id)

        assert details.full_name == "Ada Lovelace"
        assert details.balance == Decimal("50")
        assert details.expiring_in_30_days == Decimal("10")
        assert details.transaction_count == 2
        assert details.last_transaction_at is not None

    @pytest.mark.asyncio
    async def test_user_details_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            await get_user_bonus_details(db_session, 4242)

    @pytest.mark.asyncio
    async def test_adjust_user_balance(self, db_session, make_user):
        user = await make_user(balance=10)

        tx = await adjust_user_balance(user.id, "-4", "Goodwill reversal", ADMIN_ID)

        assert tx.amount == Decimal("-4")
        assert await balance_of(db_session, user.id) == Decimal("6")
        assert await _audit_actions(db_session, "User") == ["BONUS_ADJUSTED"]


class TestRateManagement:
    """Versioned conversion rates."""

    @pytest.mark.asyncio
    async def test_create_rate_becomes_current(self, db_session):
        created = await create_bonus_rate(
            BonusRateCreate(rate=Decimal("0.75"), effective_from=utcnow() - timedelta(minutes=5)), ADMIN_ID
        )

        current = await get_current_rate(db_session)

        assert created.id is not None
        assert current.id == created.id
        assert current.rate == Decimal("0.75")
        assert await _audit_actions(db_session, "BonusRate") == ["BONUS_RATE_CREATED"]

    @pytest.mark.asyncio
    async def test_create_rate_rejects_inverted_window(self, db):
        now = utcnow()
        with pytest.raises(BonusValidationError):
            await create_bonus_rate(
                BonusRateCreate(rate=Decimal("1"), effective_from=now, effective_to=now - timedelta(days=1)),
                ADMIN_ID,
            )

    @pytest.mark.asyncio
    async def test_update_and_deactivate(self, db_session):
        """A deactivated rate is no longer current; each step is audited."""
        created = await create_bonus_rate(
            BonusRateCreate(rate=Decimal("0.75"), effective_from=utcnow() - timedelta(minutes=5)), ADMIN_ID
        )

        updated = await update_bonus_rate(created.id, BonusRateUpdate(rate=Decimal("0.8")), ADMIN_ID)
        await deactivate_rate(created.id, ADMIN_ID)

        assert updated.rate == Decimal("0.8")
        rates = await list_bonus_rates(db_session)
        assert [r.is_active for r in rates] == [False]
        assert (await get_current_rate(db_session)).id is None
        assert await _audit_actions(db_session, "BonusRate") == [
            "BONUS_RATE_CREATED",
            "BONUS_RATE_UPDATED",
            "BONUS_RATE_DEACTIVATED",
        ]

    @pytest.mark.asyncio
    async def test_update_unknown_rate(self, db):
        with pytest.raises(NotFoundError):
            await update_bonus_rate(4242, BonusRateUpdate(rate=Decimal("1")), ADMIN_ID)


class TestCampaignLifecycle:
    """Create, update, list and cancel."""

    @pytest.mark.asyncio
    async def test_create_starts_as_draft(self, db_session):
        """New campaigns start as DRAFT with nothing used."""
        campaign = await create_campaign(_campaign_data(), ADMIN_ID)

        assert campaign.status == "DRAFT"
        assert campaign.used_count == 0
        assert campaign.created_by_id == ADMIN_ID
        assert await _audit_actions(db_session, "BonusCampaign") == ["BONUS_CAMPAIGN_CREATED"]

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_target(self, db):
        with pytest.raises(BonusValidationError):
            await create_campaign(_campaign_data(target_type="EVERYONE"), ADMIN_ID)

    @pytest.mark.asyncio
    async def test_create_rejects_end_before_start(self, db):
        now = utcnow()
        with pytest.raises(BonusValidationError):
            await create_campaign(_campaign_data(start_date=now, end_date=now - timedelta(days=1)), ADMIN_ID)

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, db_session):
        await create_campaign(_campaign_data(name="Draft one"), ADMIN_ID)
        await _active_campaign(name="Live one")

        active = await list_campaigns(db_session, CampaignQuery(status="ACTIVE"))
        everything = await list_campaigns(db_session)

        assert [c.name for c in active.items] == ["Live one"]
        assert everything.total == 2

    @pytest.mark.asyncio
    async def test_cancel(self, db_session):
        campaign = await create_campaign(_campaign_data(), ADMIN_ID)

        await cancel_campaign(campaign.id, ADMIN_ID)

        assert (await get_campaign(db_session, campaign.id)).status == "CANCELLED"

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, db_session):
        with pytest.raises(NotFoundError):
            await get_campaign(db_session, 4242)
        with pytest.raises(NotFoundError):
            await cancel_campaign(4242, ADMIN_ID)


class TestExecuteCampaign:
    """Batch grants to targeted users."""

    @pytest.mark.asyncio
    async def test_grants_all_active_users(self, db_session, make_user):
        """Inactive users are not targeted by ALL."""
        users = [await make_user() for _ in range(3)]
        await make_user(is_active=False)
        campaign_id = await _active_campaign()

        result = await execute_campaign(campaign_id, ADMIN_ID)

        assert result.users_awarded == 3
        assert result.total_amount == Decimal("75.00")
        for user in users:
            assert await balance_of(db_session, user.id) == Decimal("25")
        tx = (
            await db_session.execute(select(BonusTransaction).where(BonusTransaction.user_id == users[0].id))
        ).scalar_one()
        assert tx.source == "PROMO"
        assert tx.reference_id == str(campaign_id)
        assert tx.reference_type == "BonusCampaign"
        assert tx.description == "Campaign bonus: Spring promo"
        assert tx.expires_at is not None

        campaign = await get_campaign(db_session, campaign_id)
        assert campaign.used_count == 3
        assert campaign.status == "ACTIVE"
        assert campaign.executed_at is not None
        assert "BONUS_CAMPAIGN_EXECUTED" in await _audit_actions(db_session, "BonusCampaign")

    @pytest.mark.asyncio
    async def test_usage_limit_completes_campaign(self, db_session, make_user):
        """Reaching the usage limit completes and freezes the campaign."""
        users = [await make_user() for _ in range(3)]
        campaign_id = await _active_campaign(usage_limit=2)

        result = await execute_campaign(campaign_id, ADMIN_ID)

        assert result.users_awarded == 2
        assert await balance_of(db_session, users[2].id) == Decimal("0")
        assert (await get_campaign(db_session, campaign_id)).status == "COMPLETED"

        with pytest.raises(StateConflictError):
            await execute_campaign(campaign_id, ADMIN_ID)
        with pytest.raises(StateConflictError):
            await update_campaign(campaign_id, CampaignUpdate(name="Renamed"), ADMIN_ID)
        with pytest.raises(StateConflictError):
            await cancel_campaign(campaign_id, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_slots_used_after_check_are_not_granted_again(self, db_session, make_user, monkeypatch):
        """Usage taken between the eligibility check and the batch trims the batch."""
        for _ in range(3):
            await make_user()
        campaign_id = await _active_campaign(usage_limit=2)
        _use_slots_during_check(monkeypatch, campaign_id, used=1)

        result = await execute_campaign(campaign_id, ADMIN_ID)

        assert result.users_awarded == 1
        assert await _campaign_grants(db_session, campaign_id) == 1
        campaign = await get_campaign(db_session, campaign_id)
        assert campaign.used_count == 2
        assert campaign.status == "COMPLETED"

    @pytest.mark.asyncio
    async def test_limit_exhausted_during_run(self, db_session, make_user, monkeypatch):
        """Nothing is granted once another writer has taken every slot."""
        for _ in range(2):
            await make_user()
        campaign_id = await _active_campaign(usage_limit=2)
        _use_slots_during_check(monkeypatch, campaign_id, used=2)

        with pytest.raises(StateConflictError, match="Usage limit exhausted"):
            await execute_campaign(campaign_id, ADMIN_ID)

        assert await _campaign_grants(db_session, campaign_id) == 0
        assert (await get_campaign(db_session, campaign_id)).used_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_runs_respect_usage_limit(self, db_session, make_user):
        """Two simultaneous runs never grant more than the limit between them."""
        for _ in range(3):
            await make_user()
        campaign_id = await _active_campaign(usage_limit=2)

        results = await asyncio.gather(
            execute_campaign(campaign_id, ADMIN_ID),
            execute_campaign(campaign_id, ADMIN_ID),
            return_exceptions=True,
        )

        grants = await _campaign_grants(db_session, campaign_id)
        awarded = sum(r.users_awarded for r in results if not isinstance(r, BaseException))
        assert grants <= 2
        assert awarded <= grants
        assert (await get_campaign(db_session, campaign_id)).used_count == grants

    @pytest.mark.asyncio
    async def test_individual_targeting(self, db_session, make_user):
        alice = await make_user()
        bob = await make_user()
        campaign_id = await _active_campaign(target_type="INDIVIDUAL", target_criteria={"user_ids": [bob.id]})

        result = await execute_campaign(campaign_id, ADMIN_ID)

        assert result.users_awarded == 1
        assert await balance_of(db_session, alice.id) == Decimal("0")
        assert await balance_of(db_session, bob.id) == Decimal("25")

    @pytest.mark.asyncio
    async def test_segment_targeting(self, db_session, make_user):
        await make_user(balance=10)
        rich = await make_user(balance=500)
        await make_user(balance=600, role="ADMIN")
        campaign_id = await _active_campaign(
            target_type="SEGMENT", target_criteria={"min_balance": "100", "role": "USER"}
        )

        result = await execute_campaign(campaign_id, ADMIN_ID)

        assert result.users_awarded == 1
        assert await balance_of(db_session, rich.id) == Decimal("525")

    @pytest.mark.asyncio
    async def test_small_batches(self, db_session, make_user, monkeypatch):
        """Batch boundaries do not change the outcome."""
        users = [await make_user() for _ in range(5)]
        monkeypatch.setattr(get_settings(), "campaign_batch_size", 2)
        campaign_id = await _active_campaign()

        result = await execute_campaign(campaign_id, ADMIN_ID)

        assert result.users_awarded == 5
        assert (await get_campaign(db_session, campaign_id)).used_count == 5
        for user in users:
            assert await balance_of(db_session, user.id) == Decimal("25")

    @pytest.mark.asyncio
    async def test_draft_campaign_not_executable(self, db, make_user):
        await make_user()
        campaign = await create_campaign(_campaign_data(), ADMIN_ID)

        with pytest.raises(StateConflictError):
            await execute_campaign(campaign.id, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_future_campaign_not_executable(self, db, make_user):
        await make_user()
        campaign_id = await _active_campaign(start_date=utcnow() + timedelta(days=1))

        with pytest.raises(StateConflictError):
            await execute_campaign(campaign_id, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_no_eligible_users(self, db):
        campaign_id = await _active_campaign()

        with pytest.raises(StateConflictError):
            await execute_campaign(campaign_id, ADMIN_ID)
