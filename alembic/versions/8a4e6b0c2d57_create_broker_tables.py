"""Create credential broker tables

Revision ID: 8a4e6b0c2d57
Revises: 3f1c2a9d7b10
Create Date: 2026-10-19 09:30:05.774120

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '8a4e6b0c2d57'
down_revision: Union[str, None] = '3f1c2a9d7b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'credentials',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('owner_user_id', sa.String(length=100), nullable=False),
        sa.Column('provider', sa.String(length=100), nullable=False),
        sa.Column('auth_type', sa.String(length=20), nullable=False),
        sa.Column('external_account_id', sa.String(length=255), nullable=True),
        sa.Column('access_token_handle', sa.String(length=64), nullable=True),
        sa.Column('refresh_token_handle', sa.String(length=64), nullable=True),
        sa.Column('api_key_handle', sa.String(length=64), nullable=True),
        sa.Column('scopes', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('status_reason', sa.String(length=255), nullable=True),
        sa.Column('last_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_refresh_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_claimed_by', sa.String(length=100), nullable=True),
        sa.Column('refresh_claim_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_credentials_owner_user_id', 'credentials', ['owner_user_id'])
    op.create_index('ix_credentials_expires_at', 'credentials', ['expires_at'])
    op.create_index(
        'ix_credential_owner_provider', 'credentials', ['owner_user_id', 'provider', 'status']
    )
    op.create_index('ix_credential_refresh_scan', 'credentials', ['status', 'expires_at'])

    op.create_table(
        'permission_grants',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('agent_id', sa.String(length=100), nullable=False),
        sa.Column('credential_id', sa.String(length=36), nullable=False),
        sa.Column('granted_by_user_id', sa.String(length=100), nullable=False),
        sa.Column('permission_level', sa.String(length=20), nullable=False),
        sa.Column('allowed_scopes', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_by_user_id', sa.String(length=100), nullable=True),
        sa.Column('revoke_reason', sa.String(length=100), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['credential_id'], ['credentials.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_permission_grants_agent_id', 'permission_grants', ['agent_id'])
    op.create_index('ix_permission_grants_credential_id', 'permission_grants', ['credential_id'])
    op.create_index(
        'ix_grant_lookup', 'permission_grants', ['agent_id', 'credential_id', 'is_active']
    )

    op.create_table(
        'oauth_flow_states',
        sa.Column('state', sa.String(length=128), nullable=False),
        sa.Column('code_verifier', sa.Text(), nullable=False),
        sa.Column('provider', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('agent_id', sa.String(length=100), nullable=True),
        sa.Column('requested_scopes', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('redirect_uri', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('used', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('state'),
    )
    op.create_index('ix_oauth_flow_states_user_id', 'oauth_flow_states', ['user_id'])
    op.create_index('ix_oauth_flow_states_expires_at', 'oauth_flow_states', ['expires_at'])

    op.create_table(
        'vault_secrets',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('ciphertext', postgresql.BYTEA(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_type', sa.String(length=40), nullable=False),
        sa.Column('outcome', sa.String(length=30), nullable=False),
        sa.Column('actor', sa.String(length=100), nullable=False),
        sa.Column('agent_id', sa.String(length=100), nullable=True),
        sa.Column('credential_id', sa.String(length=36), nullable=True),
        sa.Column('owner_user_id', sa.String(length=100), nullable=True),
        sa.Column('grant_id', sa.String(length=36), nullable=True),
        sa.Column('scope', sa.String(length=255), nullable=True),
        sa.Column('reason', sa.String(length=100), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('session_id', sa.String(length=100), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_credential_time', 'audit_events', ['credential_id', 'occurred_at'])
    op.create_index('ix_audit_owner_time', 'audit_events', ['owner_user_id', 'occurred_at'])
    op.create_index('ix_audit_agent_time', 'audit_events', ['agent_id', 'occurred_at'])

    # Append-only at the database level as well as in the ORM
    op.execute('REVOKE UPDATE, DELETE, TRUNCATE ON audit_events FROM PUBLIC')


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('audit_events')
    op.drop_table('vault_secrets')
    op.drop_index('ix_oauth_flow_states_expires_at', table_name='oauth_flow_states')
    op.drop_index('ix_oauth_flow_states_user_id', table_name='oauth_flow_states')
    op.drop_table('oauth_flow_states')
    op.drop_table('permission_grants')
    op.drop_table('credentials')
