"""Billing ledger: wallets, transactions, usage, catalog, subscriptions

Revision ID: 20261019_billing_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. Companies (tenant root)
2. Marketplace catalog: apps, app requirements, bundles, bundle items
3. Company wallets and the append-only wallet transaction ledger
4. Reconciliation flags for invariant violations
5. Usage records (metered consumption and settlement stamps)
6. Bundle, app and platform subscriptions
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_billing_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. COMPANIES
    # ==========================================================================
    op.create_table('companies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('companies', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_companies_is_active'), ['is_active'], unique=False)

    # ==========================================================================
    # 2. MARKETPLACE CATALOG
    # ==========================================================================
    op.create_table('marketplace_apps',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('pricing_model', sa.String(length=16), nullable=False),
        sa.Column('monthly_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('trial_days', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('marketplace_apps', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_marketplace_apps_slug'), ['slug'], unique=True)

    op.create_table('marketplace_app_requirements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('app_id', sa.Integer(), nullable=False),
        sa.Column('required_app_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['app_id'], ['marketplace_apps.id'], ),
        sa.ForeignKeyConstraint(['required_app_id'], ['marketplace_apps.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('app_id', 'required_app_id', name='uq_app_requirements_pair'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('marketplace_app_requirements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_marketplace_app_requirements_app_id'), ['app_id'], unique=False)

    op.create_table('app_bundles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('monthly_price_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('app_bundles', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_app_bundles_slug'), ['slug'], unique=True)

    op.create_table('app_bundle_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('bundle_id', sa.Integer(), nullable=False),
        sa.Column('app_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['bundle_id'], ['app_bundles.id'], ),
        sa.ForeignKeyConstraint(['app_id'], ['marketplace_apps.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('bundle_id', 'app_id', name='uq_bundle_items_pair'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('app_bundle_items', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_app_bundle_items_bundle_id'), ['bundle_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_app_bundle_items_app_id'), ['app_id'], unique=False)

    # ==========================================================================
    # 3. WALLETS AND LEDGER
    # ==========================================================================
    op.create_table('company_wallets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='EGP'),
        sa.Column('balance_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_deposited_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_refunded_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_bonus_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_adjusted_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', name='uq_company_wallets_company'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('company_wallets', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_company_wallets_company_id'), ['company_id'], unique=False)

    op.create_table('wallet_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('balance_before_cents', sa.Integer(), nullable=False),
        sa.Column('balance_after_cents', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('related_transaction_id', sa.Integer(), nullable=True),
        sa.Column('source_type', sa.String(length=32), nullable=True),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('amount_cents <> 0', name='ck_wallet_txns_amount_nonzero'),
        sa.ForeignKeyConstraint(['wallet_id'], ['company_wallets.id'], ),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ),
        sa.ForeignKeyConstraint(['related_transaction_id'], ['wallet_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('wallet_id', 'reference', name='uq_wallet_txns_wallet_reference'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('wallet_transactions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_wallet_transactions_wallet_id'), ['wallet_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_wallet_transactions_company_id'), ['company_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_wallet_transactions_type'), ['type'], unique=False)
        batch_op.create_index(batch_op.f('ix_wallet_transactions_related_transaction_id'), ['related_transaction_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_wallet_transactions_source_type'), ['source_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_wallet_transactions_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_wallet_txns_wallet_created', ['wallet_id', 'created_at'], unique=False)

    # ==========================================================================
    # 4. RECONCILIATION FLAGS
    # ==========================================================================
    op.create_table('reconciliation_flags',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('check_name', sa.String(length=32), nullable=False),
        sa.Column('expected_cents', sa.Integer(), nullable=False),
        sa.Column('actual_cents', sa.Integer(), nullable=False),
        sa.Column('detail', sa.String(length=512), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['company_wallets.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('reconciliation_flags', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_reconciliation_flags_wallet_id'), ['wallet_id'], unique=False)

    # ==========================================================================
    # 5. USAGE RECORDS
    # ==========================================================================
    op.create_table('usage_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('app_id', sa.Integer(), nullable=True),
        sa.Column('feature', sa.String(length=128), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_cost_cents', sa.Integer(), nullable=False),
        sa.Column('total_cost_cents', sa.Integer(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settlement_transaction_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ),
        sa.ForeignKeyConstraint(['app_id'], ['marketplace_apps.id'], ),
        sa.ForeignKeyConstraint(['settlement_transaction_id'], ['wallet_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('usage_records', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_usage_records_company_id'), ['company_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_usage_records_app_id'), ['app_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_usage_records_settlement_transaction_id'), ['settlement_transaction_id'], unique=False)
        batch_op.create_index('ix_usage_records_company_feature_occurred', ['company_id', 'feature', 'occurred_at'], unique=False)
        batch_op.create_index('ix_usage_records_company_settled', ['company_id', 'settled_at'], unique=False)

    # ==========================================================================
    # 6. SUBSCRIPTIONS
    # ==========================================================================
    op.create_table('bundle_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('bundle_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('subscribed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_billing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_billing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_anchor_day', sa.Integer(), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ),
        sa.ForeignKeyConstraint(['bundle_id'], ['app_bundles.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', 'bundle_id', name='uq_bundle_subs_company_bundle'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('bundle_subscriptions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_bundle_subscriptions_company_id'), ['company_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bundle_subscriptions_bundle_id'), ['bundle_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bundle_subscriptions_status'), ['status'], unique=False)
        batch_op.create_index('ix_bundle_subs_status_next_billing', ['status', 'next_billing_at'], unique=False)

    op.create_table('company_app_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('app_id', sa.Integer(), nullable=False),
        sa.Column('bundle_subscription_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('subscribed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_billing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_billing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_anchor_day', sa.Integer(), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ),
        sa.ForeignKeyConstraint(['app_id'], ['marketplace_apps.id'], ),
        sa.ForeignKeyConstraint(['bundle_subscription_id'], ['bundle_subscriptions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', 'app_id', name='uq_app_subs_company_app'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('company_app_subscriptions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_company_app_subscriptions_company_id'), ['company_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_company_app_subscriptions_app_id'), ['app_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_company_app_subscriptions_bundle_subscription_id'), ['bundle_subscription_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_company_app_subscriptions_status'), ['status'], unique=False)
        batch_op.create_index('ix_app_subs_status_next_billing', ['status', 'next_billing_at'], unique=False)

    op.create_table('platform_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('plan', sa.String(length=16), nullable=False),
        sa.Column('monthly_fee_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('billing_day', sa.Integer(), nullable=False),
        sa.Column('next_billing_date', sa.Date(), nullable=False),
        sa.Column('last_billing_date', sa.Date(), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('billing_day BETWEEN 1 AND 31', name='ck_platform_subs_billing_day'),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', name='uq_platform_subs_company'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('platform_subscriptions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_platform_subscriptions_company_id'), ['company_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_platform_subscriptions_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_platform_subscriptions_next_billing_date'), ['next_billing_date'], unique=False)


def downgrade():
    op.drop_table('platform_subscriptions')
    op.drop_table('company_app_subscriptions')
    op.drop_table('bundle_subscriptions')
    op.drop_table('usage_records')
    op.drop_table('reconciliation_flags')
    op.drop_table('wallet_transactions')
    op.drop_table('company_wallets')
    op.drop_table('app_bundle_items')
    op.drop_table('app_bundles')
    op.drop_table('marketplace_app_requirements')
    op.drop_table('marketplace_apps')
    op.drop_table('companies')
