"""String enums stored in the ledger tables."""

from __future__ import annotations

from enum import Enum


class TransactionType(str, Enum):
    EARNED = "EARNED"
    SPENT = "SPENT"
    ADJUSTMENT = "ADJUSTMENT"
    EXPIRED = "EXPIRED"
    WITHDRAWN = "WITHDRAWN"


class BonusSource(str, Enum):
    PARTNER = "PARTNER"
    PARTNER_COMMISSION = "PARTNER_COMMISSION"
    PROMO = "PROMO"
    REFUND = "REFUND"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    PURCHASE = "PURCHASE"
    SUBSCRIPTION = "SUBSCRIPTION"
    STORE = "STORE"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    ACTIVITY = "ACTIVITY"


class TaxStatus(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    SELF_EMPLOYED = "SELF_EMPLOYED"
    ENTREPRENEUR = "ENTREPRENEUR"
    COMPANY = "COMPANY"


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class CommissionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ActivityType(str, Enum):
    FIRST_PURCHASE = "FIRST_PURCHASE"
    STREAK_7_DAYS = "STREAK_7_DAYS"
    STREAK_30_DAYS = "STREAK_30_DAYS"
    PROFILE_COMPLETE = "PROFILE_COMPLETE"
    FIRST_REVIEW = "FIRST_REVIEW"
    REFERRAL_MILESTONE_5 = "REFERRAL_MILESTONE_5"
    REFERRAL_MILESTONE_10 = "REFERRAL_MILESTONE_10"


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class CampaignTargetType(str, Enum):
    ALL = "ALL"
    INDIVIDUAL = "INDIVIDUAL"
    SEGMENT = "SEGMENT"


# Reference types written on transactions; the (id, type) pair is interpreted by convention.
REF_PARTNER_COMMISSION = "PartnerCommission"
REF_REFERRAL_FIRST_PURCHASE = "ReferralFirstPurchase"
REF_ACTIVITY_BONUS = "ActivityBonus"
REF_ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
REF_BONUS_CAMPAIGN = "BonusCampaign"
REF_BONUS_WITHDRAWAL = "BonusWithdrawal"
