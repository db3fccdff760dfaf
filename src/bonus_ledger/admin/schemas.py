"""Pydantic models for admin bonus operations."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


# --- Statistics ---


class AdminBonusStats(BaseModel):
    total_in_circulation: Decimal
    earned_today: Decimal
    spent_today: Decimal
    expiring_in_30_days: Decimal
    pending_withdrawals: Decimal
    users_with_balance: int
    average_balance: Decimal


class UserBonusDetails(BaseModel):
    user_id: int
    email: str
    full_name: str
    balance: Decimal
    lifetime_earned: Decimal
    lifetime_spent: Decimal
    expiring_in_30_days: Decimal
    transaction_count: int
    last_transaction_at: datetime | None = None


# --- Campaigns ---


class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str | None = None
    bonus_amount: Decimal = Field(..., gt=0)
    target_type: str
    target_criteria: dict[str, Any] = {}
    start_date: datetime
    end_date: datetime | None = None
    expiry_days: int | None = Field(None, ge=1)
    usage_limit: int | None = Field(None, ge=1)


class CampaignUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=128)
    description: str | None = None
    bonus_amount: Decimal | None = Field(None, gt=0)
    target_type: str | None = None
    target_criteria: dict[str, Any] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    expiry_days: int | None = Field(None, ge=1)
    usage_limit: int | None = Field(None, ge=1)
    status: str | None = None


class CampaignQuery(BaseModel):
    status: str | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class CampaignResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    bonus_amount: Decimal
    target_type: str
    target_criteria: dict[str, Any] = {}
    status: str
    start_date: datetime
    end_date: datetime | None = None
    expiry_days: int | None = None
    usage_limit: int | None = None
    used_count: int
    created_by_id: int
    created_at: datetime
    executed_at: datetime | None = None

    model_config = {"from_attributes": True}


class CampaignListResponse(BaseModel):
    items: list[CampaignResponse]
    total: int
    page: int
    limit: int


class CampaignExecutionResult(BaseModel):
    campaign_id: int
    users_awarded: int
    total_amount: Decimal
