"""Inventory sync: local product cache, stock changes, sync ledger, settings

Revision ID: 20261018_inventory_sync
Revises:
Create Date: 2026-10-18

This migration adds:
1. products (local cache of external inventory items, keyed by sync_id)
2. stock_changes (local stock movements awaiting outbound push)
3. sync_records (sync ledger)
4. system_settings (sync configuration store)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_inventory_sync'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. PRODUCTS TABLE
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sync_id', sa.String(length=128), nullable=True),
        sa.Column('stock_item_id', sa.String(length=64), nullable=True),
        sa.Column('variant_id', sa.String(length=64), nullable=True),
        sa.Column('item_type', sa.String(length=16), nullable=False, server_default='product'),
        sa.Column('is_variant', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('variant_name', sa.String(length=255), nullable=True),
        sa.Column('parent_product_id', sa.String(length=64), nullable=True),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_price_cents', sa.Integer(), nullable=True),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('category_name', sa.String(length=255), nullable=True),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('warehouse_id', sa.String(length=64), nullable=True),
        sa.Column('warehouse_name', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('sync_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sync_id', name='uq_products_sync_id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index('ix_products_warehouse_active', ['warehouse_id', 'is_active'], unique=False)
        batch_op.create_index(batch_op.f('ix_products_stock_item_id'), ['stock_item_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_products_sku'), ['sku'], unique=False)
        batch_op.create_index(batch_op.f('ix_products_warehouse_id'), ['warehouse_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_products_sync_status'), ['sync_status'], unique=False)

    # ==========================================================================
    # 2. STOCK CHANGES TABLE
    # ==========================================================================
    op.create_table('stock_changes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('warehouse_id', sa.String(length=64), nullable=False),
        sa.Column('quantity_change', sa.Integer(), nullable=False),
        sa.Column('quantity_before', sa.Integer(), nullable=False),
        sa.Column('quantity_after', sa.Integer(), nullable=False),
        sa.Column('change_type', sa.String(length=16), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('performed_by_id', sa.String(length=64), nullable=True),
        sa.Column('performed_by_name', sa.String(length=128), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('synced_to_inventory', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('sync_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inventory_transaction_id', sa.String(length=64), nullable=True),
        sa.Column('sync_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_changes', schema=None) as batch_op:
        batch_op.create_index('ix_stock_changes_wh_synced_created', ['warehouse_id', 'synced_to_inventory', 'created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_changes_product_id'), ['product_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_changes_warehouse_id'), ['warehouse_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_changes_change_type'), ['change_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_changes_reference_id'), ['reference_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_changes_synced_to_inventory'), ['synced_to_inventory'], unique=False)

    # ==========================================================================
    # 3. SYNC RECORDS TABLE (ledger)
    # ==========================================================================
    op.create_table('sync_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.String(length=128), nullable=False),
        sa.Column('sync_direction', sa.String(length=16), nullable=False),
        sa.Column('sync_type', sa.String(length=16), nullable=False, server_default='auto'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='processing'),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_succeeded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('result', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('performed_by_id', sa.String(length=64), nullable=True),
        sa.Column('performed_by_username', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('sync_records', schema=None) as batch_op:
        batch_op.create_index('ix_sync_records_status_next_retry', ['status', 'next_retry_at'], unique=False)
        batch_op.create_index('ix_sync_records_entity', ['entity_type', 'entity_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_sync_records_sync_direction'), ['sync_direction'], unique=False)
        batch_op.create_index(batch_op.f('ix_sync_records_status'), ['status'], unique=False)

    # ==========================================================================
    # 4. SYSTEM SETTINGS TABLE
    # ==========================================================================
    op.create_table('system_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key', name='uq_system_settings_key'),
        sqlite_autoincrement=True
    )


def downgrade():
    op.drop_table('system_settings')

    with op.batch_alter_table('sync_records', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_sync_records_status'))
        batch_op.drop_index(batch_op.f('ix_sync_records_sync_direction'))
        batch_op.drop_index('ix_sync_records_entity')
        batch_op.drop_index('ix_sync_records_status_next_retry')
    op.drop_table('sync_records')

    with op.batch_alter_table('stock_changes', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_stock_changes_synced_to_inventory'))
        batch_op.drop_index(batch_op.f('ix_stock_changes_reference_id'))
        batch_op.drop_index(batch_op.f('ix_stock_changes_change_type'))
        batch_op.drop_index(batch_op.f('ix_stock_changes_warehouse_id'))
        batch_op.drop_index(batch_op.f('ix_stock_changes_product_id'))
        batch_op.drop_index('ix_stock_changes_wh_synced_created')
    op.drop_table('stock_changes')

    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_products_sync_status'))
        batch_op.drop_index(batch_op.f('ix_products_warehouse_id'))
        batch_op.drop_index(batch_op.f('ix_products_sku'))
        batch_op.drop_index(batch_op.f('ix_products_stock_item_id'))
        batch_op.drop_index('ix_products_warehouse_active')
    op.drop_table('products')
