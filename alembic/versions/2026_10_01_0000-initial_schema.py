"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit ledger and integration credential tables."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('owner_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('total_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('plan_tier', sa.String(50), nullable=False, server_default='free'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('total_credits >= 0', name='ck_total_credits_non_negative'),
        sa.CheckConstraint('used_credits >= 0', name='ck_used_credits_non_negative'),
        sa.CheckConstraint('used_credits <= total_credits', name='ck_no_overdraft'),
    )

    op.create_index('idx_credit_accounts_updated_at', 'credit_accounts', ['updated_at'])

    # ========================================================================
    # Create credit_ledger table (append-only)
    # ========================================================================
    op.create_table(
        'credit_ledger',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', UUID(as_uuid=True), sa.ForeignKey('credit_accounts.owner_id', ondelete='RESTRICT'), nullable=False),
        sa.Column('delta', sa.BigInteger(), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('balance_before', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('analysis_id', UUID(as_uuid=True), nullable=True),
        sa.Column('integration_sources', JSONB(), nullable=True),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('refund_of_id', UUID(as_uuid=True), sa.ForeignKey('credit_ledger.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.UniqueConstraint('refund_of_id', name='uq_credit_ledger_refund_of_id'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
    )

    op.create_index('idx_credit_ledger_owner_created', 'credit_ledger', ['owner_id', 'created_at'])
    op.create_index('idx_credit_ledger_analysis_id', 'credit_ledger', ['analysis_id'], postgresql_where=sa.text('analysis_id IS NOT NULL'))

    # ========================================================================
    # Create integration_credentials table
    # ========================================================================
    op.create_table(
        'integration_credentials',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False, server_default='production'),
        sa.Column('encrypted_settings', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("status IN ('pending', 'connected', 'warning', 'expired')", name='ck_integration_credential_status'),
    )

    op.create_index('idx_integration_credentials_owner_provider', 'integration_credentials', ['owner_id', 'provider'])
    op.create_index('idx_integration_credentials_status', 'integration_credentials', ['status'])

    # ========================================================================
    # Ledger rows are never updated or deleted
    # ========================================================================
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_credit_ledger_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'credit_ledger is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_credit_ledger_append_only
        BEFORE UPDATE OR DELETE ON credit_ledger
        FOR EACH ROW EXECUTE FUNCTION prevent_credit_ledger_mutation();
    """)


def downgrade() -> None:
    """Drop all tables."""
    op.execute("DROP TRIGGER IF EXISTS trg_credit_ledger_append_only ON credit_ledger")
    op.execute("DROP FUNCTION IF EXISTS prevent_credit_ledger_mutation()")
    op.drop_table('integration_credentials')
    op.drop_table('credit_ledger')
    op.drop_table('credit_accounts')
