"""Initial schema - accounts and audit events

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts
    op.create_table('accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('requester_id', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('name', sa.String(20), nullable=False),
        sa.Column('credential_secret_ref', sa.String(255), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('profile_artifact_ref', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('bytes_in', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('bytes_out', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('max_connections', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('provisioning_state', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('last_provisioning_error', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.UniqueConstraint('name', name='uq_accounts_name'),
        sa.CheckConstraint('bytes_in >= 0', name='ck_accounts_bytes_in'),
        sa.CheckConstraint('bytes_out >= 0', name='ck_accounts_bytes_out'),
        sa.CheckConstraint('max_connections BETWEEN 1 AND 10', name='ck_accounts_max_connections'),
    )
    op.create_index('ix_accounts_requester_id', 'accounts', ['requester_id'])
    op.create_index('idx_accounts_active_expires', 'accounts', ['active', 'expires_at'])

    # Audit Events
    op.create_table('audit_events',
        sa.Column('event_id', sa.String(36), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actor_id', sa.String(64), nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('target_account_id', sa.String(36), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('idx_audit_timestamp', 'audit_events', ['timestamp'])


def downgrade() -> None:
    op.drop_index('idx_audit_timestamp', table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_index('idx_accounts_active_expires', table_name='accounts')
    op.drop_index('ix_accounts_requester_id', table_name='accounts')
    op.drop_table('accounts')
