"""Initial settlement schema: users, share transactions, commissions,
withdrawals with ledger buckets, installment plans"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f6c2a9d1e40'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('handle', sa.String(length=80), nullable=True),
        sa.Column('handle_lower', sa.String(length=80), nullable=True),
        sa.Column('email', sa.String(length=120), nullable=True),
        sa.Column('full_name', sa.String(length=120), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=True),
        sa.Column('referred_by', sa.String(length=80), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('is_banned', sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('handle_lower'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_referred_by', 'users', ['referred_by'])

    op.create_table(
        'share_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('source_kind', sa.String(length=20), nullable=False),
        sa.Column('source_ref', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('source_ref'),
        sa.CheckConstraint('amount >= 0', name='chk_share_tx_amount'),
    )
    op.create_index('ix_share_transactions_user_id', 'share_transactions', ['user_id'])
    op.create_index('idx_share_tx_user_status', 'share_transactions', ['user_id', 'status'])

    op.create_table(
        'commissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('beneficiary_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('referred_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('generation', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('source_ref', sa.String(length=64), nullable=False),
        sa.Column('source_kind', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('beneficiary_id', 'referred_user_id', 'generation', 'source_ref',
                            name='uq_commission_key'),
        sa.CheckConstraint('generation >= 1 AND generation <= 3', name='chk_commission_generation'),
        sa.CheckConstraint('amount >= 0', name='chk_commission_amount'),
    )
    op.create_index('ix_commissions_beneficiary_id', 'commissions', ['beneficiary_id'])
    op.create_index('ix_commissions_referred_user_id', 'commissions', ['referred_user_id'])
    op.create_index('idx_commission_beneficiary_status', 'commissions', ['beneficiary_id', 'status'])

    op.create_table(
        'referral_aggregates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('referred_users', sa.Integer(), nullable=False),
        sa.Column('total_earnings', sa.BigInteger(), nullable=False),
        sa.Column('gen1_count', sa.Integer(), nullable=False),
        sa.Column('gen1_earnings', sa.BigInteger(), nullable=False),
        sa.Column('gen2_count', sa.Integer(), nullable=False),
        sa.Column('gen2_earnings', sa.BigInteger(), nullable=False),
        sa.Column('gen3_count', sa.Integer(), nullable=False),
        sa.Column('gen3_earnings', sa.BigInteger(), nullable=False),
        sa.Column('last_recomputed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'currency', name='uq_referral_aggregate_user_currency'),
    )
    op.create_index('ix_referral_aggregates_user_id', 'referral_aggregates', ['user_id'])

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=False),
        sa.Column('payment_details', sa.JSON(), nullable=False),
        sa.Column('client_reference', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('provider_reference', sa.String(length=128), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('processing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('review_note', sa.String(length=255), nullable=True),
        sa.Column('receipt_path', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('client_reference'),
        sa.CheckConstraint('amount > 0', name='chk_withdrawal_amount'),
    )
    op.create_index('ix_withdrawals_user_id', 'withdrawals', ['user_id'])
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])
    op.create_index('idx_withdrawal_status_review', 'withdrawals', ['status', 'needs_review'])

    op.create_table(
        'ledger_buckets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('pending_amt', sa.BigInteger(), nullable=False),
        sa.Column('processing_amt', sa.BigInteger(), nullable=False),
        sa.Column('withdrawn_amt', sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'currency', name='uq_ledger_bucket_user_currency'),
        sa.CheckConstraint('pending_amt >= 0', name='chk_bucket_pending'),
        sa.CheckConstraint('processing_amt >= 0', name='chk_bucket_processing'),
        sa.CheckConstraint('withdrawn_amt >= 0', name='chk_bucket_withdrawn'),
    )

    op.create_table(
        'ledger_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('from_bucket', sa.String(length=20), nullable=True),
        sa.Column('to_bucket', sa.String(length=20), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('withdrawal_id', sa.Integer(), sa.ForeignKey('withdrawals.id'), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_ledger_events_user_id', 'ledger_events', ['user_id'])
    op.create_index('ix_ledger_events_withdrawal_id', 'ledger_events', ['withdrawal_id'])

    op.create_table(
        'installment_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plan_ref', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_kind', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('total_shares', sa.Integer(), nullable=False),
        sa.Column('total_price', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('installment_months', sa.Integer(), nullable=False),
        sa.Column('late_fee_percentage', sa.Numeric(precision=6, scale=3), nullable=False),
        sa.Column('current_late_fee', sa.BigInteger(), nullable=False),
        sa.Column('months_late', sa.Integer(), nullable=False),
        sa.Column('total_paid_amount', sa.BigInteger(), nullable=False),
        sa.Column('last_late_check_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_reminder_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('plan_ref'),
        sa.CheckConstraint('total_price > 0', name='chk_plan_total_price'),
        sa.CheckConstraint('current_late_fee >= 0', name='chk_plan_late_fee'),
    )
    op.create_index('ix_installment_plans_user_id', 'installment_plans', ['user_id'])
    op.create_index('ix_installment_plans_status', 'installment_plans', ['status'])

    op.create_table(
        'installments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('installment_plans.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('installment_number', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('paid_amount', sa.BigInteger(), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('late_fee', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('plan_id', 'installment_number', name='uq_installment_number'),
        sa.CheckConstraint('late_fee >= 0', name='chk_installment_late_fee'),
    )
    op.create_index('ix_installments_plan_id', 'installments', ['plan_id'])


def downgrade():
    op.drop_table('installments')
    op.drop_table('installment_plans')
    op.drop_table('ledger_events')
    op.drop_table('ledger_buckets')
    op.drop_table('withdrawals')
    op.drop_table('referral_aggregates')
    op.drop_table('commissions')
    op.drop_table('share_transactions')
    op.drop_table('users')
