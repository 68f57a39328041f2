"""Stock/price sync schema: sources, listings, credentials and run bookkeeping

Revision ID: prodflow_sync_20260301
Revises:
Create Date: 2026-03-01

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = 'prodflow_sync_20260301'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # meli_credentials: one MercadoLibre seller account per tenant, tokens encrypted (ENC:v1:)
    op.create_table(
        'meli_credentials',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('meli_user_id', sa.String(length=64), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_meli_credentials_tenant_id', 'meli_credentials', ['tenant_id'], unique=True)

    # suppliers: tenant-owned; markup NULL means stock-only supplier
    op.create_table(
        'suppliers',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('markup', sa.Numeric(7, 2), nullable=True),
        sa.Column('warehouse_id', sa.String(length=36), nullable=True),
        sa.Column('safety_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_suppliers_tenant_id', 'suppliers', ['tenant_id'])
    op.create_index('ix_suppliers_warehouse_id', 'suppliers', ['warehouse_id'])

    # products: own inventory
    op.create_table(
        'products',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('sku', sa.Text(), nullable=False),
        sa.Column('cost_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('stock_disponible', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('safety_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('supplier_id', sa.String(length=36), sa.ForeignKey('suppliers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_products_tenant_sku', 'products', ['tenant_id', 'sku'])

    # supplier_stock_items: landed supplier feed rows, per warehouse
    op.create_table(
        'supplier_stock_items',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('warehouse_id', sa.String(length=36), nullable=False),
        sa.Column('sku', sa.Text(), nullable=False),
        sa.Column('cost_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_supplier_stock_items_warehouse_sku', 'supplier_stock_items', ['warehouse_id', 'sku'])

    # business_rules: per-tenant markups and kit rules
    op.create_table(
        'business_rules',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('default_markup', sa.Numeric(7, 2), nullable=True),
        sa.Column('premium_markup', sa.Numeric(7, 2), nullable=True),
        sa.Column('kit_rules', JSONB, nullable=True),
        sa.Column('minimum_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_business_rules_tenant_id', 'business_rules', ['tenant_id'], unique=True)

    # mercadolibre_listings: last synced state per (tenant, item, variation)
    op.create_table(
        'mercadolibre_listings',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('meli_id', sa.String(length=32), nullable=False),
        sa.Column('meli_variation_id', sa.String(length=32), nullable=True),
        sa.Column('sku', sa.Text(), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('safety_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_synced_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('last_requested_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('last_synced_quantity', sa.Integer(), nullable=True),
        sa.Column('last_synced_status', sa.String(length=16), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'meli_id', 'meli_variation_id', name='uq_meli_listing_identity'),
    )
    op.create_index('idx_meli_listings_tenant', 'mercadolibre_listings', ['tenant_id'])
    op.create_index('idx_meli_listings_tenant_sku', 'mercadolibre_listings', ['tenant_id', 'sku'])

    # sync_state: per-tenant switch and page cursor
    op.create_table(
        'sync_state',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('cursor_page', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_sync_state_tenant_id', 'sync_state', ['tenant_id'], unique=True)

    # sync_run: one pass over a tenant's listings
    op.create_table(
        'sync_run',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('triggered_by', sa.String(length=32), nullable=False, server_default='unknown'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('summary_json', JSONB, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_sync_run_tenant_id', 'sync_run', ['tenant_id'])
    op.create_index('ix_sync_run_status', 'sync_run', ['status'])

    # sync_page_task: page queue, unique per (run, page)
    op.create_table(
        'sync_page_task',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('sync_run_id', sa.String(length=36), sa.ForeignKey('sync_run.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('page', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('summary_json', JSONB, nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('sync_run_id', 'page', name='uq_sync_page_task_run_page'),
    )
    op.create_index('ix_sync_page_task_sync_run_id', 'sync_page_task', ['sync_run_id'])
    op.create_index('ix_sync_page_task_tenant_id', 'sync_page_task', ['tenant_id'])
    op.create_index('ix_sync_page_task_status', 'sync_page_task', ['status'])
    op.create_index('idx_sync_page_task_status_created', 'sync_page_task', ['status', 'created_at'])

    # sync_worker_log: structured run events
    op.create_table(
        'sync_worker_log',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('run_id', sa.String(length=36), sa.ForeignKey('sync_run.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('details_json', JSONB, nullable=True),
    )
    op.create_index('ix_sync_worker_log_run_id', 'sync_worker_log', ['run_id'])
    op.create_index('ix_sync_worker_log_tenant_id', 'sync_worker_log', ['tenant_id'])
    op.create_index('ix_sync_worker_log_event_type', 'sync_worker_log', ['event_type'])

    # sync_global_config: kill switch
    op.create_table(
        'sync_global_config',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # background_workers: loop heartbeats
    op.create_table(
        'background_workers',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('worker_name', sa.String(length=128), nullable=False),
        sa.Column('interval_seconds', sa.Integer(), nullable=True),
        sa.Column('last_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_status', sa.String(length=32), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('runs_ok_in_row', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('runs_error_in_row', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_background_workers_worker_name', 'background_workers', ['worker_name'], unique=True)

    # meli_token_refresh_log: one row per refresh attempt
    op.create_table(
        'meli_token_refresh_log',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('old_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('new_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('triggered_by', sa.String(length=32), nullable=False, server_default='sync'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_meli_token_refresh_log_tenant_id', 'meli_token_refresh_log', ['tenant_id'])


def downgrade():
    op.drop_table('meli_token_refresh_log')
    op.drop_table('background_workers')
    op.drop_table('sync_global_config')
    op.drop_table('sync_worker_log')
    op.drop_table('sync_page_task')
    op.drop_table('sync_run')
    op.drop_table('sync_state')
    op.drop_table('mercadolibre_listings')
    op.drop_table('business_rules')
    op.drop_table('supplier_stock_items')
    op.drop_table('products')
    op.drop_table('suppliers')
    op.drop_table('meli_credentials')
