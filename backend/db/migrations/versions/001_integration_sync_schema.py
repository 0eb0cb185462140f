"""Integration sync schema

Revision ID: 001_integration_sync
Revises: 
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_integration_sync'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One OAuth connection per (organization, provider)
    op.create_table(
        'integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('status_message', sa.Text(), nullable=True),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('scopes', postgresql.JSONB(), nullable=True),
        sa.Column('last_successful_connection_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(), nullable=True),
        sa.Column('external_account_id', sa.String(255), nullable=True),
        sa.Column('external_account_name', sa.String(255), nullable=True),
        sa.Column('config', postgresql.JSONB(), nullable=True),
        sa.Column('connected_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'provider', name='uq_integration_org_provider'),
    )
    op.create_index('ix_integrations_organization_id', 'integrations', ['organization_id'])

    # Single-use OAuth state tokens (10 minute TTL)
    op.create_table(
        'oauth_states',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('state', sa.String(128), nullable=False),
        sa.Column('profile_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('redirect_uri', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_oauth_states_state', 'oauth_states', ['state'], unique=True)
    op.create_index('ix_oauth_states_expires_at', 'oauth_states', ['expires_at'])

    # What to sync, from which integration, and how often
    op.create_table(
        'data_sources',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('query_config', postgresql.JSONB(), nullable=True),
        sa.Column('destination_config', postgresql.JSONB(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sync_frequency', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_status', sa.String(20), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('last_sync_records_count', sa.Integer(), nullable=True),
        sa.Column('next_scheduled_sync_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint(
            'organization_id', 'source_type', 'entity_type',
            name='uq_data_source_org_source_entity',
        ),
    )
    op.create_index('ix_data_sources_organization_id', 'data_sources', ['organization_id'])
    op.create_index('ix_data_sources_next_scheduled_sync_at', 'data_sources', ['next_scheduled_sync_at'])

    # Normalized landing rows, upserted on the natural key
    op.create_table(
        'integration_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('data_source_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('object_type', sa.String(100), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('properties', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('external_created_at', sa.DateTime(), nullable=True),
        sa.Column('external_updated_at', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['data_source_id'], ['data_sources.id'], ondelete='SET NULL'),
        sa.UniqueConstraint(
            'organization_id', 'object_type', 'external_id',
            name='uq_integration_record_org_type_external',
        ),
    )
    op.create_index('ix_integration_records_organization_id', 'integration_records', ['organization_id'])
    op.create_index('ix_integration_records_data_source_id', 'integration_records', ['data_source_id'])

    # Append-only sync audit trail
    op.create_table(
        'sync_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('data_source_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('started_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('records_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_details', postgresql.JSONB(), nullable=True),
        sa.Column('triggered_by', sa.String(20), nullable=False, server_default='manual'),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['data_source_id'], ['data_sources.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_sync_runs_data_source_id', 'sync_runs', ['data_source_id'])
    op.create_index('ix_sync_runs_organization_id', 'sync_runs', ['organization_id'])
    op.create_index('ix_sync_runs_started_at', 'sync_runs', ['started_at'])


def downgrade() -> None:
    op.drop_table('sync_runs')
    op.drop_table('integration_records')
    op.drop_table('data_sources')
    op.drop_table('oauth_states')
    op.drop_table('integrations')
