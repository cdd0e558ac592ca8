"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts table
    op.create_table(
        'accounts',
        sa.Column('account_id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True, unique=True),
        sa.Column('display_name', sa.String(100), nullable=True),
        sa.Column('credits_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint('credits_balance >= 0', name='ck_accounts_credits_non_negative'),
    )

    # Credit transactions table (append-only)
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('tx_id', sa.String(36), nullable=False, unique=True),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(100), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'ix_credit_transactions_account_created',
        'credit_transactions',
        ['account_id', 'created_at'],
    )

    # Generation jobs table
    op.create_table(
        'generation_jobs',
        sa.Column('job_id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('subject_ref', sa.String(36), nullable=True),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('input', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.JSON(), nullable=True),
        sa.Column('estimated_credits', sa.Integer(), nullable=False),
        sa.Column('estimated_duration_seconds', sa.Integer(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_generation_jobs_status', 'generation_jobs', ['status'])
    op.create_index(
        'ix_generation_jobs_account_created',
        'generation_jobs',
        ['account_id', 'created_at'],
    )

    # Panels (image fields written by finished jobs)
    op.create_table(
        'panels',
        sa.Column('panel_id', sa.String(36), primary_key=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('thumbnail_url', sa.Text(), nullable=True),
        sa.Column('generation_prompt', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('panels')
    op.drop_index('ix_generation_jobs_account_created', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_status', table_name='generation_jobs')
    op.drop_table('generation_jobs')
    op.drop_index('ix_credit_transactions_account_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('accounts')
