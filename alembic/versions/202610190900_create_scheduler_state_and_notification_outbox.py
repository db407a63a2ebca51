"""create scheduler_state and notification_outbox

Revision ID: create_notifier_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

scheduler_state holds the last observed post counts per client.
notification_outbox is the durable delivery queue drained by the outbox worker.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_notifier_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'scheduler_state',
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('last_ig_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_tiktok_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_notified_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_notified_slot', sa.Text(), nullable=True),
        sa.Column('last_fetched_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.Column(
            'updated_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('client_id', name=op.f('pk_scheduler_state')),
    )

    op.create_table(
        'notification_outbox',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('destination', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column(
            'next_attempt_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.Column('last_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.Column(
            'updated_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_notification_outbox')),
        sa.UniqueConstraint(
            'idempotency_key', name=op.f('uq_notification_outbox_idempotency_key')
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'retrying', 'sent', 'dead_letter')",
            name=op.f('ck_notification_outbox_status_valid'),
        ),
    )

    # Claim query: due rows by status, oldest first
    op.create_index(
        'ix_notification_outbox_status_next_attempt',
        'notification_outbox',
        ['status', 'next_attempt_at'],
    )
    op.create_index(
        'ix_notification_outbox_created_at', 'notification_outbox', ['created_at']
    )
    op.create_index(
        op.f('ix_notification_outbox_client_id'), 'notification_outbox', ['client_id']
    )


def downgrade() -> None:
    op.drop_index(op.f('ix_notification_outbox_client_id'), table_name='notification_outbox')
    op.drop_index('ix_notification_outbox_created_at', table_name='notification_outbox')
    op.drop_index(
        'ix_notification_outbox_status_next_attempt', table_name='notification_outbox'
    )
    op.drop_table('notification_outbox')
    op.drop_table('scheduler_state')
