"""initial ledger schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, ledger_entries and backend_selections."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_consumed_units', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('monthly_consumed_units', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('monthly_period_anchor', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('subscription_active', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_balance_non_negative'),
        sa.CheckConstraint('lifetime_consumed_units >= 0', name='ck_lifetime_units_non_negative'),
        sa.CheckConstraint('monthly_consumed_units >= 0', name='ck_monthly_units_non_negative'),
        sa.CheckConstraint("tier IN ('free', 'pro', 'enterprise')", name='ck_account_tier'),
    )

    # Indexes for accounts
    op.create_index(
        'idx_accounts_subscription_expiry',
        'accounts',
        ['subscription_active', 'subscription_expires_at'],
    )
    op.create_index('idx_accounts_monthly_anchor', 'accounts', ['monthly_period_anchor'])

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), sa.ForeignKey('accounts.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('entry_type', sa.String(20), nullable=False),
        sa.Column('credits_delta', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.CheckConstraint(
            "entry_type IN ('initialize', 'consume', 'grant', 'upgrade', 'downgrade', "
            "'renew', 'expire', 'monthly_reset')",
            name='ck_ledger_entry_type',
        ),
    )

    # Indexes for ledger_entries
    op.create_index('ix_ledger_entries_account_id', 'ledger_entries', ['account_id'])
    op.create_index('idx_ledger_entries_created_at', 'ledger_entries', ['created_at'])

    # ========================================================================
    # Create backend_selections table
    # ========================================================================
    op.create_table(
        'backend_selections',
        sa.Column('account_id', sa.String(255), sa.ForeignKey('accounts.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('provider_project_ref', sa.String(255), nullable=False),
        sa.Column('project_name', sa.String(255), nullable=True),
        sa.Column('public_endpoint', sa.String(1024), nullable=False),
        sa.Column('public_key', sa.Text(), nullable=False),
        sa.Column('privileged_key', sa.Text(), nullable=False),
        sa.Column('selected_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )


def downgrade() -> None:
    """Drop all ledger tables."""
    op.drop_table('backend_selections')
    op.drop_index('idx_ledger_entries_created_at', table_name='ledger_entries')
    op.drop_index('ix_ledger_entries_account_id', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_index('idx_accounts_monthly_anchor', table_name='accounts')
    op.drop_index('idx_accounts_subscription_expiry', table_name='accounts')
    op.drop_table('accounts')
