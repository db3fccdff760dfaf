"""ORM models for the bonus ledger and the entities it reads from.

Tables are created by the Alembic migrations under ``alembic/versions``.
The ledger owns ``bonus_transactions``, ``bonus_rates``, ``bonus_withdrawals``,
``user_activity_bonuses`` and ``bonus_campaigns``; users, commissions and
payments belong to other parts of the platform and are only read or
transitioned here.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bonus_ledger.db.base import Base, BigIntId, JSONDict
from bonus_ledger.time_utils import utcnow

MONEY = Numeric(14, 2)
RATE = Numeric(12, 6)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user; ``bonus_balance`` is mutated only by the ledger."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("bonus_balance >= 0", name="users_bonus_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="USER")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    bonus_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    referred_by_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    referred_by: Mapped[User | None] = relationship("User", remote_side=[id])


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class BonusTransaction(Base):
    """Immutable ledger entry, one per balance mutation.

    ``amount`` is signed. The expiry job zeroes the amount of grants it has
    consumed; nothing else updates a row after insert.
    """

    __tablename__ = "bonus_transactions"
    __table_args__ = (
        Index("idx_bonus_tx_user_created", "user_id", "created_at"),
        Index("idx_bonus_tx_type_expires", "type", "expires_at"),
        Index("idx_bonus_tx_reference", "reference_type", "reference_id"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONDict, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User")


class BonusRate(Base):
    """Versioned bonus → currency conversion rate."""

    __tablename__ = "bonus_rates"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    from_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="BONUS")
    to_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="RUB")
    rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_id: Mapped[int | None] = mapped_column(BigIntId, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class BonusWithdrawal(Base):
    """Snapshot of a bonus → currency withdrawal request."""

    __tablename__ = "bonus_withdrawals"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    bonus_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    tax_status: Mapped[str] = mapped_column(String(16), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_details: Mapped[dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserActivityBonus(Base):
    """Marker row for a one-time activity bonus; its existence blocks re-grants."""

    __tablename__ = "user_activity_bonuses"
    __table_args__ = (
        UniqueConstraint("user_id", "activity_type", name="user_activity_bonuses_user_activity_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class BonusCampaign(Base):
    """Admin-defined promotional grant to a set of users."""

    __tablename__ = "bonus_campaigns"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    bonus_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_criteria: Mapped[dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expiry_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by_id: Mapped[int] = mapped_column(BigIntId, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Partner program & payments (owned elsewhere)
# ---------------------------------------------------------------------------


class PartnerCommission(Base):
    """Referral commission owed to a partner; the ledger moves APPROVED → PAID."""

    __tablename__ = "partner_commissions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    partner_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    source_user_id: Mapped[int | None] = mapped_column(BigIntId, nullable=True)
    source_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False, default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentTransaction(Base):
    """Currency payment made by a user (checkout, subscription)."""

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Notifications & audit
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted user notifications."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    subtype: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONDict, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(Base):
    """Append-only record of administrative actions."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(BigIntId, nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    old_value: Mapped[dict[str, Any] | None] = mapped_column(JSONDict, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSONDict, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
