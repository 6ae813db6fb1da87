"""initial schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

GENERATION_STATUSES = "generation_status IN ('none', 'generating', 'completed', 'failed')"


def upgrade() -> None:
    """Create accounts, ledger, tasks and generation target tables."""

    # ========================================================================
    # accounts - one token account per user
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_credited', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_debited', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint('balance >= 0', name='ck_balance_non_negative'),
        sa.CheckConstraint('total_credited >= 0', name='ck_total_credited_non_negative'),
        sa.CheckConstraint('total_debited >= 0', name='ck_total_debited_non_negative'),
        sa.CheckConstraint('balance = total_credited - total_debited', name='ck_balance_conservation'),
    )

    # ========================================================================
    # ledger_entries - append-only; credit ids derive from the payment event id
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('resulting_balance', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('external_event_id', sa.String(255), nullable=True),
        sa.Column('package_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint('amount > 0', name='ck_ledger_amount_positive'),
        sa.CheckConstraint('resulting_balance >= 0', name='ck_ledger_balance_non_negative'),
        sa.CheckConstraint("kind IN ('credit', 'debit')", name='ck_ledger_kind'),
    )
    op.create_index('idx_ledger_entries_user_created', 'ledger_entries', ['user_id', 'created_at'])
    op.create_index('idx_ledger_entries_resource_id', 'ledger_entries', ['resource_id'])

    # ========================================================================
    # tasks - asynchronous generation jobs
    # ========================================================================
    op.create_table(
        'tasks',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='queued'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stage', sa.String(255), nullable=False, server_default='Queued'),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('cost', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('result_id', sa.String(255), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('progress >= 0 AND progress <= 100', name='ck_task_progress_range'),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')", name='ck_task_status'
        ),
    )
    op.create_index('idx_tasks_user_created', 'tasks', ['user_id', 'created_at'])
    op.create_index('idx_tasks_status', 'tasks', ['status'])

    # ========================================================================
    # Generation targets - carry the per-resource generation lock
    # ========================================================================
    op.create_table(
        'learning_entries',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('skill', sa.String(200), nullable=False),
        sa.Column('generation_status', sa.String(16), nullable=False, server_default='none'),
        sa.Column('generated_content', sa.JSON(), nullable=True),
        sa.Column('generation_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint(GENERATION_STATUSES, name='ck_learning_generation_status'),
    )
    op.create_index('ix_learning_entries_user_id', 'learning_entries', ['user_id'])

    op.create_table(
        'job_applications',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('company', sa.String(200), nullable=False),
        sa.Column('job_title', sa.String(200), nullable=False),
        sa.Column('generation_status', sa.String(16), nullable=False, server_default='none'),
        sa.Column('generated_content', sa.JSON(), nullable=True),
        sa.Column('generation_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint(GENERATION_STATUSES, name='ck_application_generation_status'),
    )
    op.create_index('ix_job_applications_user_id', 'job_applications', ['user_id'])

    op.create_table(
        'api_keys',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('key_hash', sa.Text(), nullable=False),
        sa.Column('key_prefix', sa.String(20), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint("status IN ('active', 'revoked')", name='ck_api_key_status'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('api_keys')
    op.drop_table('job_applications')
    op.drop_table('learning_entries')
    op.drop_index('idx_tasks_status', table_name='tasks')
    op.drop_index('idx_tasks_user_created', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('idx_ledger_entries_resource_id', table_name='ledger_entries')
    op.drop_index('idx_ledger_entries_user_created', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_table('accounts')
