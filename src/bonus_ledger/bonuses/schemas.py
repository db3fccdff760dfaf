"""Pydantic models returned by and passed to the ledger services."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from bonus_ledger.db.models import BonusTransaction


# --- Transactions ---


class BonusTransactionResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    source: str
    reference_id: str | None = None
    reference_type: str | None = None
    description: str
    expires_at: datetime | None = None
    metadata: dict[str, Any] = {}
    created_at: datetime

    @classmethod
    def from_model(cls, tx: BonusTransaction) -> BonusTransactionResponse:
        return cls(
            id=tx.id,
            user_id=tx.user_id,
            type=tx.type,
            amount=tx.amount,
            source=tx.source,
            reference_id=tx.reference_id,
            reference_type=tx.reference_type,
            description=tx.description,
            expires_at=tx.expires_at,
            metadata=tx.transaction_metadata or {},
            created_at=tx.created_at,
        )


class TransactionHistoryResponse(BaseModel):
    items: list[BonusTransactionResponse]
    total: int
    page: int
    limit: int


class TransactionQuery(BaseModel):
    type: str | None = None
    source: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


# --- Balance ---


class BalanceResponse(BaseModel):
    balance: Decimal
    pending_earnings: Decimal
    lifetime_earned: Decimal
    lifetime_spent: Decimal


class StatisticsResponse(BalanceResponse):
    expiring_in_30_days: Decimal
    transactions_this_month: int
    earned_this_month: Decimal
    spent_this_month: Decimal


class ExpiringBonus(BaseModel):
    transaction_id: int
    amount: Decimal
    expires_at: datetime
    days_remaining: int


class ExpiringBonusSummary(BaseModel):
    expiring_bonuses: list[ExpiringBonus]
    total_expiring: Decimal
    within_days: int


class ReconciliationResult(BaseModel):
    user_id: int
    stored_balance: Decimal
    ledger_balance: Decimal
    consistent: bool


# --- Rates ---


class BonusRateResponse(BaseModel):
    id: int | None = None
    from_currency: str
    to_currency: str
    rate: Decimal
    effective_from: datetime
    effective_to: datetime | None = None
    is_active: bool = True

    model_config = {"from_attributes": True}


class BonusRateCreate(BaseModel):
    from_currency: str = Field("BONUS", min_length=1, max_length=8)
    to_currency: str = Field("RUB", min_length=1, max_length=8)
    rate: Decimal = Field(..., gt=0)
    effective_from: datetime
    effective_to: datetime | None = None


class BonusRateUpdate(BaseModel):
    rate: Decimal | None = Field(None, gt=0)
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    is_active: bool | None = None


# --- Withdrawal & checkout ---


class WithdrawBonusRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    tax_status: str
    payment_details: dict[str, Any] = {}


class WithdrawalPreview(BaseModel):
    bonus_amount: Decimal
    currency_amount: Decimal
    rate: Decimal
    tax_rate: Decimal
    estimated_tax: Decimal
    estimated_net: Decimal


class WithdrawalResult(BaseModel):
    success: bool = True
    withdrawal_id: int
    bonus_amount: Decimal
    currency_amount: Decimal
    rate: Decimal
    tax_amount: Decimal
    net_amount: Decimal
    message: str = "Withdrawal request created successfully. Processing may take 1-3 business days."


class MaxApplicableBonus(BaseModel):
    max_amount: Decimal
    balance: Decimal
    max_percent: int


# --- Expiry ---


class ExpiryRunResult(BaseModel):
    expired: int = 0
    users: int = 0
    failed: int = 0


class WarningRunResult(BaseModel):
    notified: int = 0
    skipped: int = 0
    failed: int = 0
