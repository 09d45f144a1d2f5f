"""create subscriptions, plan change history and processed stripe events

Revision ID: a1c2e3f4b501
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c2e3f4b501'
down_revision = None
branch_labels = None
depends_on = None

TIERS = ('free', 'professional', 'premium')
INTERVALS = ('monthly', 'annual')


def upgrade() -> None:
    # subscriptions テーブル (1ユーザー1レコード)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False, comment='認証基盤のユーザーID'),
        sa.Column('tier', sa.Enum(*TIERS, name='subscription_tier'), nullable=False),
        sa.Column('billing_interval', sa.Enum(*INTERVALS, name='billing_interval'), nullable=True, comment='請求間隔 (freeはNULL)'),
        sa.Column(
            'status',
            sa.Enum('active', 'trialing', 'past_due', 'cancelled', 'expired', name='subscription_status'),
            nullable=False,
        ),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('scheduled_tier', sa.Enum(*TIERS, name='subscription_scheduled_tier'), nullable=True, comment='ダウングレード予定プラン'),
        sa.Column('scheduled_interval', sa.Enum(*INTERVALS, name='subscription_scheduled_interval'), nullable=True, comment='ダウングレード予定の請求間隔'),
        sa.Column('scheduled_change_date', sa.DateTime(), nullable=True, comment='プラン変更予定日時 (予約時点のperiod_end)'),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        sa.Column('monthly_limit', sa.Integer(), nullable=False),
        sa.Column('has_used_trial', sa.Boolean(), nullable=False, comment='トライアル使用済み'),
        sa.Column('external_customer_ref', sa.String(255), nullable=True, comment='Stripe Customer ID'),
        sa.Column('external_subscription_ref', sa.String(255), nullable=True, comment='Stripe Subscription ID'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_customer_ref'),
        sa.UniqueConstraint('external_subscription_ref'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index('ix_subscriptions_period_end', 'subscriptions', ['period_end'])

    # subscription_plan_changes テーブル (プラン変更履歴、request_idで再送検知)
    op.create_table(
        'subscription_plan_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.String(64), nullable=True, comment='PlanChangeRequest ID (Stripe idempotency key)'),
        sa.Column('old_tier', sa.String(20), nullable=True),
        sa.Column('old_interval', sa.String(20), nullable=True),
        sa.Column('new_tier', sa.String(20), nullable=True),
        sa.Column('new_interval', sa.String(20), nullable=True),
        sa.Column('change_type', sa.String(20), nullable=False, comment='trial / create / upgrade / lateral / downgrade / cancel / reactivate'),
        sa.Column('amount_due', sa.Integer(), nullable=False, comment='即時請求額 (セント)'),
        sa.Column('effective_at', sa.DateTime(), nullable=True, comment='変更適用予定日時 (NULLなら即時適用済み)'),
        sa.Column('applied', sa.Boolean(), nullable=False, default=False, comment='適用済みフラグ'),
        sa.Column('stripe_event_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('request_id'),
    )
    op.create_index('ix_subscription_plan_changes_subscription_id', 'subscription_plan_changes', ['subscription_id'])

    # processed_stripe_events テーブル (webhook冪等性)
    op.create_table(
        'processed_stripe_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('external_subscription_ref', sa.String(255), nullable=True, comment='対象のStripe Subscription ID'),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processed_stripe_events_event_id', 'processed_stripe_events', ['event_id'], unique=True)
    op.create_index('ix_processed_stripe_events_external_subscription_ref', 'processed_stripe_events', ['external_subscription_ref'])


def downgrade() -> None:
    op.drop_index('ix_processed_stripe_events_external_subscription_ref', 'processed_stripe_events')
    op.drop_index('ix_processed_stripe_events_event_id', 'processed_stripe_events')
    op.drop_table('processed_stripe_events')
    op.drop_index('ix_subscription_plan_changes_subscription_id', 'subscription_plan_changes')
    op.drop_table('subscription_plan_changes')
    op.drop_index('ix_subscriptions_period_end', 'subscriptions')
    op.drop_index('ix_subscriptions_user_id', 'subscriptions')
    op.drop_table('subscriptions')
