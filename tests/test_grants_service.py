"""Commission, referral and activity grant tests."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from bonus_ledger.bonuses.enums import CommissionStatus
from bonus_ledger.bonuses.grants_service import (
    activity_description,
    convert_commission_to_bonus,
    grant_activity_bonus,
    grant_referral_bonus,
)
from bonus_ledger.bonuses.ledger_service import earn_bonuses, spend_bonuses
from bonus_ledger.db.models import PartnerCommission, PaymentTransaction, UserActivityBonus
from bonus_ledger.errors import NotFoundError, StateConflictError
from helpers import balance_of, transaction_count


async def _commission(db_session, partner_id: int, amount="75.50", status="APPROVED", level=2) -> int:
    commission = PartnerCommission(
        partner_id=partner_id,
        source_user_id=None,
        source_transaction_id="pay-42",
        level=level,
        rate=Decimal("0.05"),
        amount=Decimal(amount),
        status=status,
    )
    db_session.add(commission)
    await db_session.commit()
    return commission.id


async def _commission_status(db_session, commission_id: int) -> str:
    return await db_session.scalar(select(PartnerCommission.status).where(PartnerCommission.id == commission_id))


class TestConvertCommission:
    """APPROVED → PAID commission conversion."""

    @pytest.mark.asyncio
    async def test_approved_commission_credits_partner(self, db_session, make_user):
        """Converted commission is credited and the commission marked paid."""
        partner = await make_user()
        commission_id = await _commission(db_session, partner.id)

        tx = await convert_commission_to_bonus(partner.id, commission_id)

        assert tx.amount == Decimal("75.50")
        assert tx.source == "PARTNER"
        assert tx.reference_id == str(commission_id)
        assert tx.reference_type == "PartnerCommission"
        assert tx.description == "Commission from partner program (Level 2)"
        assert tx.metadata["commission_level"] == 2
        assert tx.metadata["source_transaction_id"] == "pay-42"
        assert await balance_of(db_session, partner.id) == Decimal("75.50")
        assert await _commission_status(db_session, commission_id) == "PAID"

    @pytest.mark.asyncio
    async def test_pending_commission_rejected_without_changes(self, db_session, make_user):
        """Only APPROVED commissions convert; the status is left as it was."""
        partner = await make_user()
        commission_id = await _commission(db_session, partner.id, status=CommissionStatus.PENDING.value)

        with pytest.raises(StateConflictError) as exc_info:
            await convert_commission_to_bonus(partner.id, commission_id)

        assert exc_info.value.expected == "APPROVED"
        assert exc_info.value.actual == "PENDING"
        assert await balance_of(db_session, partner.id) == Decimal("0")
        assert await _commission_status(db_session, commission_id) == "PENDING"
        assert await transaction_count(db_session, partner.id) == 0

    @pytest.mark.asyncio
    async def test_already_paid_commission_not_converted_twice(self, db_session, make_user):
        """Converting twice must fail on the paid status."""
        partner = await make_user()
        commission_id = await _commission(db_session, partner.id)
        await convert_commission_to_bonus(partner.id, commission_id)

        with pytest.raises(StateConflictError):
            await convert_commission_to_bonus(partner.id, commission_id)

        assert await transaction_count(db_session, partner.id, "EARNED") == 1

    @pytest.mark.asyncio
    async def test_foreign_commission_rejected(self, db_session, make_user):
        partner = await make_user()
        other = await make_user()
        commission_id = await _commission(db_session, partner.id)

        with pytest.raises(StateConflictError):
            await convert_commission_to_bonus(other.id, commission_id)

        assert await _commission_status(db_session, commission_id) == "APPROVED"

    @pytest.mark.asyncio
    async def test_missing_commission(self, db_session, make_user):
        partner = await make_user()
        with pytest.raises(NotFoundError):
            await convert_commission_to_bonus(partner.id, 9999)


class TestReferralBonus:
    """Referrer's share of a referred user's first purchase."""

    @pytest.mark.asyncio
    async def test_no_referrer(self, db_session, make_user):
        """Users without a referrer yield no grant."""
        user = await make_user()
        assert await grant_referral_bonus(user.id, 1000) is None

    @pytest.mark.asyncio
    async def test_first_purchase_grants_referrer(self, db_session, make_user):
        """Referrer earns the referral percent of the first purchase."""
        referrer = await make_user()
        referred = await make_user(referred_by_id=referrer.id)

        tx = await grant_referral_bonus(referred.id, 1000)

        assert tx is not None
        assert tx.user_id == referrer.id
        assert tx.amount == Decimal("50.00")
        assert tx.source == "REFERRAL_BONUS"
        assert tx.reference_id == str(referred.id)
        assert tx.reference_type == "ReferralFirstPurchase"
        assert tx.metadata["purchase_amount"] == "1000"
        assert await balance_of(db_session, referrer.id) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_granted_only_once(self, db_session, make_user):
        referrer = await make_user()
        referred = await make_user(referred_by_id=referrer.id)

        await grant_referral_bonus(referred.id, 1000)
        second = await grant_referral_bonus(referred.id, 1000)

        assert second is None
        assert await balance_of(db_session, referrer.id) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_not_first_purchase_after_spend(self, db_session, make_user):
        """A prior bonus spend counts as a purchase."""
        referrer = await make_user()
        referred = await make_user(balance=100, referred_by_id=referrer.id)
        await spend_bonuses(referred.id, 10, "order-1", "ORDER")

        assert await grant_referral_bonus(referred.id, 500) is None
        assert await balance_of(db_session, referrer.id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_not_first_purchase_after_two_payments(self, db_session, make_user):
        referrer = await make_user()
        referred = await make_user(referred_by_id=referrer.id)
        for _ in range(2):
            db_session.add(PaymentTransaction(user_id=referred.id, amount=Decimal("300"), status="COMPLETED"))
        await db_session.commit()

        assert await grant_referral_bonus(referred.id, 300) is None

    @pytest.mark.asyncio
    async def test_single_completed_payment_still_first(self, db_session, make_user):
        """The payment being processed is itself completed, so one is allowed."""
        referrer = await make_user()
        referred = await make_user(referred_by_id=referrer.id)
        db_session.add(PaymentTransaction(user_id=referred.id, amount=Decimal("300"), status="COMPLETED"))
        await db_session.commit()

        tx = await grant_referral_bonus(referred.id, 300)

        assert tx is not None
        assert tx.amount == Decimal("15.00")


class TestActivityBonus:
    """Configured activity grants."""

    @pytest.mark.asyncio
    async def test_one_time_activity_granted_once(self, db_session, make_user):
        """The second trigger hits the unique marker and grants nothing."""
        user = await make_user()

        first = await grant_activity_bonus(user.id, "PROFILE_COMPLETE")
        second = await grant_activity_bonus(user.id, "PROFILE_COMPLETE")

        assert first is not None
        assert first.amount == Decimal("50")
        assert first.source == "ACTIVITY"
        assert first.reference_type == "ActivityBonus"
        assert first.description == "Bonus for completing your profile"
        assert second is None
        assert await balance_of(db_session, user.id) == Decimal("50")
        markers = await db_session.execute(
            select(UserActivityBonus.activity_type).where(UserActivityBonus.user_id == user.id)
        )
        assert markers.scalars().all() == ["PROFILE_COMPLETE"]

    @pytest.mark.asyncio
    async def test_repeatable_activity(self, db_session, make_user):
        """Repeatable activities grant every time and keep caller metadata."""
        user = await make_user()

        await grant_activity_bonus(user.id, "STREAK_7_DAYS", {"streak": 7})
        tx = await grant_activity_bonus(user.id, "STREAK_7_DAYS", {"streak": 14})

        assert tx is not None
        assert tx.metadata == {"activity_type": "STREAK_7_DAYS", "streak": 14}
        assert await balance_of(db_session, user.id) == Decimal("100")

    @pytest.mark.asyncio
    async def test_unknown_activity_ignored(self, db_session, make_user):
        """Unknown activities are logged and skipped."""
        user = await make_user()

        assert await grant_activity_bonus(user.id, "MOON_LANDING") is None
        assert await transaction_count(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_one_time_marker_is_per_user(self, db_session, make_user):
        alice = await make_user()
        bob = await make_user()

        assert await grant_activity_bonus(alice.id, "FIRST_REVIEW") is not None
        assert await grant_activity_bonus(bob.id, "FIRST_REVIEW") is not None

    @pytest.mark.asyncio
    async def test_unknown_user_claims_no_marker(self, db_session):
        """The user is looked up before the one-time marker is written."""
        with pytest.raises(NotFoundError):
            await grant_activity_bonus(9999, "PROFILE_COMPLETE")

        markers = await db_session.scalar(
            select(UserActivityBonus.id).where(UserActivityBonus.user_id == 9999).limit(1)
        )
        assert markers is None

    def test_fallback_description(self):
        assert activity_description("STREAK_30_DAYS") == "Bonus for 30-day activity streak"
        assert activity_description("CUSTOM") == "Activity bonus: CUSTOM"


class TestGrantsJoinCallerTransaction:
    """Grants share the caller's unit of work when one is passed."""

    @pytest.mark.asyncio
    async def test_activity_with_caller_session(self, db_session, make_user):
        user = await make_user()

        tx = await grant_activity_bonus(user.id, "FIRST_PURCHASE", db=db_session)
        await earn_bonuses(user.id, 5, "PROMO", db=db_session)
        await db_session.commit()

        assert tx is not None
        assert await balance_of(db_session, user.id) == Decimal("105")
