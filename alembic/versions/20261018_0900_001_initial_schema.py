"""Initial rank tracker schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

Tables created:
- domains: Tenant-owned tracked websites
- keywords: Tracked search terms with current/previous position
- rank_history: Append-only rank observations
- rank_check_quotas: Per-tenant daily rank-check quota
- service_integrations: Rank lookup provider credentials and their quota
"""
from alembic import op
import sqlalchemy as sa
import logging

logger = logging.getLogger('alembic.runtime.migration')

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create initial rank tracker schema."""
    logger.info("Step 1/5: Creating domains table...")
    op.create_table(
        'domains',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('domain_name', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_domains_tenant_id', 'domains', ['tenant_id'])

    logger.info("Step 2/5: Creating keywords table...")
    op.create_table(
        'keywords',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('domain_id', sa.String(), nullable=False),
        sa.Column('keyword', sa.String(), nullable=False),
        sa.Column('country_code', sa.String(length=2), nullable=False),
        sa.Column('device_type', sa.String(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('current_position', sa.Integer(), nullable=True),
        sa.Column('previous_position', sa.Integer(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['domain_id'], ['domains.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_keywords_tenant_id', 'keywords', ['tenant_id'])
    op.create_index('ix_keywords_domain_id', 'keywords', ['domain_id'])
    op.create_index('ix_keywords_due', 'keywords', ['is_active', 'last_checked_at'])

    logger.info("Step 3/5: Creating rank_history table...")
    op.create_table(
        'rank_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('keyword_id', sa.String(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('checked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('device_type', sa.String(), nullable=False),
        sa.Column('country_code', sa.String(length=2), nullable=False),
        sa.Column('search_volume', sa.Integer(), nullable=True),
        sa.Column('difficulty_score', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['keyword_id'], ['keywords.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_rank_history_keyword_checked', 'rank_history', ['keyword_id', 'checked_at'])

    logger.info("Step 4/5: Creating rank_check_quotas table...")
    op.create_table(
        'rank_check_quotas',
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('daily_quota_used', sa.Integer(), nullable=False),
        sa.Column('daily_quota_limit', sa.Integer(), nullable=False),
        sa.Column('quota_reset_date', sa.Date(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('tenant_id')
    )

    logger.info("Step 5/5: Creating service_integrations table...")
    op.create_table(
        'service_integrations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('service_name', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=True),
        sa.Column('api_key', sa.String(), nullable=False),
        sa.Column('api_url', sa.String(), nullable=True),
        sa.Column('daily_limit', sa.Integer(), nullable=False),
        sa.Column('daily_used', sa.Integer(), nullable=False),
        sa.Column('minute_limit', sa.Integer(), nullable=True),
        sa.Column('credits_remaining', sa.Integer(), nullable=True),
        sa.Column('plan_credits', sa.Integer(), nullable=True),
        sa.Column('credits_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('quota_reset_date', sa.Date(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_service_integrations_tenant_id', 'service_integrations', ['tenant_id'])
    op.create_index('ix_service_integrations_lookup', 'service_integrations', ['service_name', 'is_active'])

    logger.info("✓ Rank tracker schema created")


def downgrade() -> None:
    """Drop rank tracker schema."""
    op.drop_index('ix_service_integrations_lookup', table_name='service_integrations')
    op.drop_index('ix_service_integrations_tenant_id', table_name='service_integrations')
    op.drop_table('service_integrations')
    op.drop_table('rank_check_quotas')
    op.drop_index('ix_rank_history_keyword_checked', table_name='rank_history')
    op.drop_table('rank_history')
    op.drop_index('ix_keywords_due', table_name='keywords')
    op.drop_index('ix_keywords_domain_id', table_name='keywords')
    op.drop_index('ix_keywords_tenant_id', table_name='keywords')
    op.drop_table('keywords')
    op.drop_index('ix_domains_tenant_id', table_name='domains')
    op.drop_table('domains')
