"""Create notification pipeline tables

Revision ID: 20261001000000
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261001000000'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'outbox_jobs',
        sa.Column('id', sa.String(length=36), primary_key=True, nullable=False),
        sa.Column('invite_id', sa.String(length=64), nullable=False),
        sa.Column('store_uid', sa.String(length=64), nullable=False),
        sa.Column('channels', sa.JSON(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('next_attempt_at', sa.BigInteger(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('locked_by', sa.String(length=64), nullable=True),
        sa.Column('locked_at', sa.BigInteger(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_outbox_jobs_invite_id', 'outbox_jobs', ['invite_id'])
    op.create_index('ix_outbox_jobs_store_uid', 'outbox_jobs', ['store_uid'])
    op.create_index('ix_outbox_jobs_status', 'outbox_jobs', ['status'])
    op.create_index('ix_outbox_jobs_status_next_attempt_at', 'outbox_jobs', ['status', 'next_attempt_at'])

    op.create_table(
        'webhook_retry_queue',
        sa.Column('id', sa.String(length=64), primary_key=True, nullable=False),
        sa.Column('event', sa.String(length=100), nullable=False),
        sa.Column('merchant', sa.String(length=64), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('raw_body', sa.Text(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.BigInteger(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_attempt_at', sa.BigInteger(), nullable=True),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('store_uid', sa.String(length=64), nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default=sa.text("'normal'")),
        sa.Column('priority_rank', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('tags', sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_webhook_retry_queue_event', 'webhook_retry_queue', ['event'])
    op.create_index('ix_webhook_retry_queue_next_retry_at', 'webhook_retry_queue', ['next_retry_at'])
    op.create_index('ix_webhook_retry_queue_store_uid', 'webhook_retry_queue', ['store_uid'])

    op.create_table(
        'webhook_dead_letter',
        sa.Column('id', sa.String(length=80), primary_key=True, nullable=False),
        sa.Column('event', sa.String(length=100), nullable=False),
        sa.Column('merchant', sa.String(length=64), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('raw_body', sa.Text(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('total_attempts', sa.Integer(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('store_uid', sa.String(length=64), nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default=sa.text("'normal'")),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('failed_at', sa.BigInteger(), nullable=False),
        sa.Column('reviewed_at', sa.BigInteger(), nullable=True),
        sa.Column('reviewed_by', sa.String(length=128), nullable=True),
        sa.Column('resolution', sa.String(length=20), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_webhook_dead_letter_event', 'webhook_dead_letter', ['event'])
    op.create_index('ix_webhook_dead_letter_store_uid', 'webhook_dead_letter', ['store_uid'])
    op.create_index('ix_webhook_dead_letter_failed_at', 'webhook_dead_letter', ['failed_at'])
    op.create_index('ix_webhook_dead_letter_reviewed_at', 'webhook_dead_letter', ['reviewed_at'])

    op.create_table(
        'processed_events',
        sa.Column('key', sa.String(length=200), primary_key=True, nullable=False),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
    )
    op.create_table(
        'invite_unique',
        sa.Column('key', sa.String(length=200), primary_key=True, nullable=False),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
    )

    op.create_table(
        'review_invites',
        sa.Column('id', sa.String(length=64), primary_key=True, nullable=False),
        sa.Column('store_uid', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('customer_name', sa.String(length=200), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('review_url', sa.Text(), nullable=False),
        sa.Column('sent_channels', sa.JSON(), nullable=False),
        sa.Column('last_sent_at', sa.BigInteger(), nullable=True),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_review_invites_store_uid', 'review_invites', ['store_uid'])
    op.create_index('ix_review_invites_order_id', 'review_invites', ['order_id'])

    op.create_table(
        'stores',
        sa.Column('uid', sa.String(length=64), primary_key=True, nullable=False),
        sa.Column('name', sa.String(length=200), nullable=True),
        sa.Column('invites_used', sa.Integer(), nullable=False, server_default=sa.text('0')),
        *_timestamps(),
    )

    op.create_table(
        'pipeline_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column('ts', sa.BigInteger(), nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=True),
        sa.Column('request_id', sa.String(length=36), nullable=True),
        sa.Column('job_id', sa.String(length=36), nullable=True),
        sa.Column('job_name', sa.Text(), nullable=True),
        sa.Column('step', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('external_system', sa.String(length=20), nullable=False),
        sa.Column('elapsed_ms', sa.Integer(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
    )
    for col in ('ts', 'run_id', 'request_id', 'job_id', 'step', 'status', 'external_system'):
        op.create_index(f'ix_pipeline_logs_{col}', 'pipeline_logs', [col])


def downgrade() -> None:
    op.drop_table('pipeline_logs')
    op.drop_table('stores')
    op.drop_table('review_invites')
    op.drop_table('invite_unique')
    op.drop_table('processed_events')
    op.drop_table('webhook_dead_letter')
    op.drop_table('webhook_retry_queue')
    op.drop_table('outbox_jobs')
