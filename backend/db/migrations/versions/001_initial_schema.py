"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Connected source systems
    op.create_table(
        'integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('nango_connection_id', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('config', postgresql.JSONB(), nullable=True),  # webhook_secret, region, phone_number_ids, ...
        sa.Column('sync_stats', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_integrations_provider', 'integrations', ['provider'])

    # Source record -> directory contact
    op.create_table(
        'entity_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('internal_id', sa.String(255), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False, server_default='person'),
        sa.Column('sync_method', sa.String(20), nullable=False),  # bulk, incremental, webhook
        sa.Column('action', sa.String(20), nullable=False),  # created, updated
        sa.Column('phone_number', sa.String(50), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'external_id', name='uq_entity_mapping_integration_external')
    )
    op.create_index('ix_entity_mappings_integration_id', 'entity_mappings', ['integration_id'])
    op.create_index('ix_entity_mappings_phone_number', 'entity_mappings', ['phone_number'])

    # Directory call / message -> source log entry
    op.create_table(
        'enrichment_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('activity_id', sa.String(255), nullable=False),
        sa.Column('activity_type', sa.String(20), nullable=False, server_default='call'),
        sa.Column('log_id', sa.String(255), nullable=False),
        sa.Column('contact_id', sa.String(255), nullable=False),
        sa.Column('contact_type', sa.String(50), nullable=False, server_default='person'),
        sa.Column('logged_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('enriched_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'activity_id', name='uq_enrichment_record_integration_activity')
    )
    op.create_index('ix_enrichment_records_integration_id', 'enrichment_records', ['integration_id'])

    # Registered directory webhooks, one row per chunk slot
    op.create_table(
        'webhook_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_kind', sa.String(20), nullable=False),  # call, call_summary, message
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('webhook_id', sa.String(255), nullable=False),
        sa.Column('webhook_key', sa.String(255), nullable=True),
        sa.Column('phone_ids', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'event_kind', 'chunk_index', name='uq_webhook_subscription_slot')
    )
    op.create_index('ix_webhook_subscriptions_integration_id', 'webhook_subscriptions', ['integration_id'])

    # Sync orchestrator runs
    op.create_table(
        'sync_processes',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sync_type', sa.String(20), nullable=False),  # INITIAL, ONGOING, WEBHOOK
        sa.Column('object_type', sa.String(50), nullable=False),
        sa.Column('state', sa.String(30), nullable=False, server_default='INITIALIZING'),
        sa.Column('cursor', sa.Text(), nullable=True),
        sa.Column('modified_since', sa.DateTime(), nullable=True),
        sa.Column('page_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_processes_integration_id', 'sync_processes', ['integration_id'])
    op.create_index('ix_sync_processes_integration_started', 'sync_processes', ['integration_id', 'started_at'])


def downgrade() -> None:
    op.drop_table('sync_processes')
    op.drop_table('webhook_subscriptions')
    op.drop_table('enrichment_records')
    op.drop_table('entity_mappings')
    op.drop_table('integrations')
