"""Recovery schema: members, failed payments, retry attempts, dunning, cancellations

Revision ID: a41c7e2f9b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a41c7e2f9b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy stores enum member names
membership_status = sa.Enum('ACTIVE', 'PAST_DUE', 'CANCELED', name='membershipstatus')
failure_kind = sa.Enum(
    'INSUFFICIENT_FUNDS', 'CARD_DECLINED', 'EXPIRED_CARD', 'INVALID_CVC', 'PROCESSING_ERROR', 'UNKNOWN',
    name='failurekind',
)
retry_status = sa.Enum('SCHEDULED', 'PROCESSING', 'SUCCEEDED', 'FAILED', name='retrystatus')
dunning_stage = sa.Enum(
    'INITIAL_FAILURE', 'FIRST_REMINDER', 'SECOND_REMINDER', 'FINAL_NOTICE', 'SUBSCRIPTION_CANCELED',
    name='dunningstage',
)
notification_status = sa.Enum('PENDING', 'SENDING', 'SENT', 'FAILED', name='notificationstatus')


def _timestamps() -> list:
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create the recovery tables."""
    # 1. Members (owned by the portal, mirrored here)
    op.create_table(
        'members',
        *_timestamps(),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(), nullable=False, server_default=''),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('subscription_status', membership_status, nullable=False, server_default='ACTIVE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_members_id'), 'members', ['id'])
    op.create_index(op.f('ix_members_created_at'), 'members', ['created_at'])
    op.create_index(op.f('ix_members_email'), 'members', ['email'])
    op.create_index(op.f('ix_members_stripe_customer_id'), 'members', ['stripe_customer_id'], unique=True)
    op.create_index(op.f('ix_members_stripe_subscription_id'), 'members', ['stripe_subscription_id'])

    # 2. Failed payments
    op.create_table(
        'failed_payments',
        *_timestamps(),
        sa.Column('payer_id', sa.Uuid(), nullable=False),
        sa.Column('source_ref', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('failure_kind', failure_kind, nullable=False, server_default='UNKNOWN'),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=False),
        sa.Column('payment_method_ref', sa.String(), nullable=True),
        sa.Column('customer_ref', sa.String(), nullable=True),
        sa.Column('subscription_ref', sa.String(), nullable=True),
        sa.Column('invoice_ref', sa.String(), nullable=True),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['payer_id'], ['members.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_ref'),
    )
    op.create_index(op.f('ix_failed_payments_id'), 'failed_payments', ['id'])
    op.create_index(op.f('ix_failed_payments_created_at'), 'failed_payments', ['created_at'])
    op.create_index(op.f('ix_failed_payments_payer_id'), 'failed_payments', ['payer_id'])
    op.create_index(op.f('ix_failed_payments_subscription_ref'), 'failed_payments', ['subscription_ref'])
    op.create_index(op.f('ix_failed_payments_next_retry_at'), 'failed_payments', ['next_retry_at'])

    # 3. Retry attempts (depends on failed_payments)
    op.create_table(
        'retry_attempts',
        *_timestamps(),
        sa.Column('failed_payment_id', sa.Uuid(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('scheduled_date', sa.DateTime(), nullable=False),
        sa.Column('status', retry_status, nullable=False, server_default='SCHEDULED'),
        sa.Column('is_manual', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('executed_date', sa.DateTime(), nullable=True),
        sa.Column('result_message', sa.Text(), nullable=True),
        sa.Column('transaction_ref', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['failed_payment_id'], ['failed_payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('failed_payment_id', 'attempt_number', name='uq_retry_attempts_payment_number'),
    )
    op.create_index(op.f('ix_retry_attempts_id'), 'retry_attempts', ['id'])
    op.create_index(op.f('ix_retry_attempts_created_at'), 'retry_attempts', ['created_at'])
    op.create_index(op.f('ix_retry_attempts_failed_payment_id'), 'retry_attempts', ['failed_payment_id'])
    op.create_index(op.f('ix_retry_attempts_status'), 'retry_attempts', ['status'])

    # 4. Dunning notifications
    op.create_table(
        'dunning_notifications',
        *_timestamps(),
        sa.Column('failed_payment_id', sa.Uuid(), nullable=False),
        sa.Column('payer_id', sa.Uuid(), nullable=False),
        sa.Column('stage', dunning_stage, nullable=False),
        sa.Column('scheduled_date', sa.DateTime(), nullable=False),
        sa.Column('status', notification_status, nullable=False, server_default='PENDING'),
        sa.Column('sent_date', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['failed_payment_id'], ['failed_payments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payer_id'], ['members.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('failed_payment_id', 'stage', name='uq_dunning_notifications_payment_stage'),
    )
    op.create_index(op.f('ix_dunning_notifications_id'), 'dunning_notifications', ['id'])
    op.create_index(op.f('ix_dunning_notifications_created_at'), 'dunning_notifications', ['created_at'])
    op.create_index(op.f('ix_dunning_notifications_failed_payment_id'), 'dunning_notifications', ['failed_payment_id'])
    op.create_index(op.f('ix_dunning_notifications_payer_id'), 'dunning_notifications', ['payer_id'])
    op.create_index(op.f('ix_dunning_notifications_scheduled_date'), 'dunning_notifications', ['scheduled_date'])
    op.create_index(op.f('ix_dunning_notifications_status'), 'dunning_notifications', ['status'])

    # 5. Pending cancellations
    op.create_table(
        'pending_cancellations',
        *_timestamps(),
        sa.Column('payer_id', sa.Uuid(), nullable=False),
        sa.Column('failed_payment_id', sa.Uuid(), nullable=True),
        sa.Column('subscription_ref', sa.String(), nullable=False),
        sa.Column('scheduled_date', sa.DateTime(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('processed_date', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['payer_id'], ['members.id']),
        sa.ForeignKeyConstraint(['failed_payment_id'], ['failed_payments.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_pending_cancellations_id'), 'pending_cancellations', ['id'])
    op.create_index(op.f('ix_pending_cancellations_created_at'), 'pending_cancellations', ['created_at'])
    op.create_index(op.f('ix_pending_cancellations_payer_id'), 'pending_cancellations', ['payer_id'])
    op.create_index(op.f('ix_pending_cancellations_failed_payment_id'), 'pending_cancellations', ['failed_payment_id'])
    op.create_index(op.f('ix_pending_cancellations_scheduled_date'), 'pending_cancellations', ['scheduled_date'])
    op.create_index(op.f('ix_pending_cancellations_processed'), 'pending_cancellations', ['processed'])
    # At most one open cancellation per subscription
    op.create_index(
        'uq_pending_cancellations_open_subscription',
        'pending_cancellations',
        ['subscription_ref'],
        unique=True,
        postgresql_where=sa.text('NOT processed'),
    )


def downgrade() -> None:
    """Drop the recovery tables."""
    op.drop_table('pending_cancellations')
    op.drop_table('dunning_notifications')
    op.drop_table('retry_attempts')
    op.drop_table('failed_payments')
    op.drop_table('members')

    for enum_type in (notification_status, dunning_stage, retry_status, failure_kind, membership_status):
        enum_type.drop(op.get_bind(), checkfirst=True)
