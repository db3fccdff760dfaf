"""Bonus ledger tables.

Creates users, bonus_transactions, bonus_rates, bonus_withdrawals,
user_activity_bonuses, bonus_campaigns, partner_commissions,
payment_transactions, notifications and audit_logs.

Revision ID: 001_bonus_ledger_tables
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_bonus_ledger_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            email VARCHAR(320) UNIQUE NOT NULL,
            first_name VARCHAR(64) NOT NULL DEFAULT '',
            last_name VARCHAR(64) NOT NULL DEFAULT '',
            role VARCHAR(16) NOT NULL DEFAULT 'USER',
            is_active BOOLEAN NOT NULL DEFAULT true,
            bonus_balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
            referred_by_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT users_bonus_balance_non_negative CHECK (bonus_balance >= 0)
        )
    """)

    # --- Bonus Transactions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS bonus_transactions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(16) NOT NULL,
            amount NUMERIC(14, 2) NOT NULL,
            source VARCHAR(32) NOT NULL,
            reference_id VARCHAR(128),
            reference_type VARCHAR(64),
            description VARCHAR(512) NOT NULL,
            expires_at TIMESTAMPTZ,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_bonus_tx_user_created
        ON bonus_transactions(user_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_bonus_tx_type_expires
        ON bonus_transactions(type, expires_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_bonus_tx_reference
        ON bonus_transactions(reference_type, reference_id)
    """)

    # --- Bonus Rates ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS bonus_rates (
            id BIGSERIAL PRIMARY KEY,
            from_currency VARCHAR(8) NOT NULL DEFAULT 'BONUS',
            to_currency VARCHAR(8) NOT NULL DEFAULT 'RUB',
            rate NUMERIC(12, 6) NOT NULL,
            effective_from TIMESTAMPTZ NOT NULL,
            effective_to TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_by_id BIGINT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Bonus Withdrawals ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS bonus_withdrawals (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            bonus_amount NUMERIC(14, 2) NOT NULL,
            currency_amount NUMERIC(14, 2) NOT NULL,
            rate NUMERIC(12, 6) NOT NULL,
            tax_status VARCHAR(16) NOT NULL,
            tax_amount NUMERIC(14, 2) NOT NULL,
            net_amount NUMERIC(14, 2) NOT NULL,
            payment_details JSONB NOT NULL DEFAULT '{}',
            status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            processed_at TIMESTAMPTZ
        )
    """)

    # --- One-time Activity Bonuses ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_activity_bonuses (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            activity_type VARCHAR(32) NOT NULL,
            granted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_activity_bonuses_user_activity_key UNIQUE (user_id, activity_type)
        )
    """)

    # --- Bonus Campaigns ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS bonus_campaigns (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT,
            bonus_amount NUMERIC(14, 2) NOT NULL,
            target_type VARCHAR(16) NOT NULL,
            target_criteria JSONB NOT NULL DEFAULT '{}',
            status VARCHAR(16) NOT NULL DEFAULT 'DRAFT',
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ,
            expiry_days INTEGER,
            usage_limit INTEGER,
            used_count INTEGER NOT NULL DEFAULT 0,
            created_by_id BIGINT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            executed_at TIMESTAMPTZ
        )
    """)

    # --- Partner Commissions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS partner_commissions (
            id BIGSERIAL PRIMARY KEY,
            partner_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            source_user_id BIGINT,
            source_transaction_id VARCHAR(64),
            level INTEGER NOT NULL DEFAULT 1,
            rate NUMERIC(5, 4) NOT NULL DEFAULT 0,
            amount NUMERIC(14, 2) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            paid_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_partner_commissions_partner_status
        ON partner_commissions(partner_id, status)
    """)

    # --- Payment Transactions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS payment_transactions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount NUMERIC(14, 2) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_payment_transactions_user_status
        ON payment_transactions(user_id, status)
    """)

    # --- Notifications ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type VARCHAR(32) NOT NULL,
            subtype VARCHAR(64) NOT NULL,
            title VARCHAR(256) NOT NULL,
            description TEXT,
            read BOOLEAN NOT NULL DEFAULT false,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_user_title_created
        ON notifications(user_id, title, created_at)
    """)

    # --- Audit Logs ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS audit_logs (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT,
            action VARCHAR(64) NOT NULL,
            entity_type VARCHAR(64) NOT NULL,
            entity_id VARCHAR(64),
            old_value JSONB,
            new_value JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_logs_entity
        ON audit_logs(entity_type, entity_id)
    """)


def downgrade() -> None:
    for table in [
        "audit_logs",
        "notifications",
        "payment_transactions",
        "partner_commissions",
        "bonus_campaigns",
        "user_activity_bonuses",
        "bonus_withdrawals",
        "bonus_rates",
        "bonus_transactions",
        "users",
    ]:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
