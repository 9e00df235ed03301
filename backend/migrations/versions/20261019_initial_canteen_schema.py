"""initial canteen schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the full multi-theater canteen schema:
- theaters, roles, users, session_tokens: tenancy and API gate
- categories, kiosk_types, product_types, products, combos, combo_items: catalog
- order_sequences, orders, order_lines: order engine
- monthly_stocks, stock_entries: monthly stock ledgers (theater and cafe)
- print_jobs, printer_setups: durable print queue and printer config
- system_settings: typed adapter settings, one JSON row per section
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def _updated_at():
    return sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # Tenancy and API gate
    # ============================================================================
    op.create_table(
        'theaters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('order_prefix', sa.String(length=8), nullable=False, server_default='ORD'),
        sa.Column('agent_username', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_theaters_code', 'theaters', ['code'], unique=True)
    op.create_index('ix_theaters_is_active', 'theaters', ['is_active'])

    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('name_key', sa.String(length=64), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'name_key', name='uq_roles_theater_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_roles_theater_id', 'roles', ['theater_id'])

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=True),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('pin_hash', sa.String(length=255), nullable=True),
        sa.Column('role_id', sa.Integer(), nullable=True),
        sa.Column('is_super_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_theater_id', 'users', ['theater_id'])
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=True),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        _created_at(),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_theater_id', 'session_tokens', ['theater_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)

    # ============================================================================
    # Catalog
    # ============================================================================
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('category_type', sa.String(length=32), nullable=False, server_default='Food'),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'name', name='uq_categories_theater_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_categories_theater_id', 'categories', ['theater_id'])

    op.create_table(
        'kiosk_types',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'name', name='uq_kiosk_types_theater_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_kiosk_types_theater_id', 'kiosk_types', ['theater_id'])

    op.create_table(
        'product_types',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('quantity_label', sa.String(length=64), nullable=True),
        sa.Column('default_unit', sa.String(length=8), nullable=False, server_default='Nos'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'name', name='uq_product_types_theater_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_types_theater_id', 'product_types', ['theater_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('kiosk_type_id', sa.Integer(), nullable=True),
        sa.Column('product_type_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('sale_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('gst_type', sa.String(length=8), nullable=False, server_default='EXCLUDE'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('track_stock', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_stock', sa.Integer(), nullable=True),
        sa.Column('stock_unit', sa.String(length=8), nullable=False, server_default='Nos'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id']),
        sa.ForeignKeyConstraint(['kiosk_type_id'], ['kiosk_types.id']),
        sa.ForeignKeyConstraint(['product_type_id'], ['product_types.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_theater_id', 'products', ['theater_id'])
    op.create_index('ix_products_theater_active', 'products', ['theater_id', 'is_active'])
    op.create_index('ix_products_theater_category', 'products', ['theater_id', 'category_id'])

    op.create_table(
        'combos',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('actual_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('current_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('gst_type', sa.String(length=8), nullable=False, server_default='INCLUDE'),
        sa.Column('gst_tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('gst_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('final_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'name', name='uq_combos_theater_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_combos_theater_id', 'combos', ['theater_id'])

    op.create_table(
        'combo_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('combo_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['combo_id'], ['combos.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_combo_items_combo_id', 'combo_items', ['combo_id'])

    # ============================================================================
    # Orders
    # ============================================================================
    op.create_table(
        'order_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', name='uq_order_sequences_theater'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('customer_name', sa.String(length=128), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('seat', sa.String(length=32), nullable=True),
        sa.Column('screen', sa.String(length=32), nullable=True),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax', sa.Numeric(12, 2), nullable=False),
        sa.Column('cgst', sa.Numeric(12, 2), nullable=False),
        sa.Column('sgst', sa.Numeric(12, 2), nullable=False),
        sa.Column('service_charge', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('client_total', sa.Numeric(12, 2), nullable=True),
        sa.Column('payment_method', sa.String(length=16), nullable=True),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_reference', sa.String(length=128), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('request_hash', sa.String(length=64), nullable=True),
        sa.Column('stock_recorded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number'),
        sa.UniqueConstraint('theater_id', 'idempotency_key', name='uq_orders_theater_idempotency'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_theater_id', 'orders', ['theater_id'])
    op.create_index('ix_orders_theater_created', 'orders', ['theater_id', 'created_at'])
    op.create_index('ix_orders_theater_status', 'orders', ['theater_id', 'status'])

    op.create_table(
        'order_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('line_no', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('combo_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('gst_type', sa.String(length=8), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('stock_consumed', sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['combo_id'], ['combos.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'])

    # ============================================================================
    # Monthly stock ledgers
    # ============================================================================
    op.create_table(
        'monthly_stocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('ledger', sa.String(length=16), nullable=False, server_default='theater'),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('month_name', sa.String(length=16), nullable=False),
        sa.Column('old_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('closing_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_invord_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_sales', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_expired_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_damage_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_unit', sa.String(length=8), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'product_id', 'ledger', 'year', 'month', name='uq_monthly_stocks_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_monthly_stocks_theater_id', 'monthly_stocks', ['theater_id'])
    op.create_index('ix_monthly_stocks_product_id', 'monthly_stocks', ['product_id'])
    op.create_index('ix_monthly_stocks_lookup', 'monthly_stocks',
                    ['theater_id', 'product_id', 'ledger', 'year', 'month'])

    op.create_table(
        'stock_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('monthly_stock_id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('unit', sa.String(length=8), nullable=False, server_default='Nos'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('invord_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transfer', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sales', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('addon', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancel_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expired_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('damage_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stock_adjustment', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expire_date', sa.Date(), nullable=True),
        sa.Column('batch_number', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.Column('old_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expired_processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='manual'),
        sa.Column('source_order_id', sa.Integer(), nullable=True),
        sa.Column('source_entry_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['monthly_stock_id'], ['monthly_stocks.id']),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['source_order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_entries_month_date', 'stock_entries', ['monthly_stock_id', 'entry_date', 'id'])
    op.create_index('ix_stock_entries_theater_product', 'stock_entries', ['theater_id', 'product_id'])
    op.create_index('ix_stock_entries_source_order_id', 'stock_entries', ['source_order_id'])
    op.create_index('ix_stock_entries_source_entry_id', 'stock_entries', ['source_entry_id'])

    # ============================================================================
    # Printing
    # ============================================================================
    op.create_table(
        'print_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='QUEUED'),
        sa.Column('printer_hint', sa.String(length=128), nullable=True),
        sa.Column('printer_type', sa.String(length=16), nullable=False, server_default='receipt'),
        sa.Column('rendered_receipt', sa.Text(), nullable=False),
        sa.Column('header', sa.JSON(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.String(length=500), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_print_jobs_theater_id', 'print_jobs', ['theater_id'])
    op.create_index('ix_print_jobs_order_id', 'print_jobs', ['order_id'])
    op.create_index('ix_print_jobs_theater_status_id', 'print_jobs', ['theater_id', 'status', 'id'])

    op.create_table(
        'printer_setups',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('printer_type', sa.String(length=16), nullable=False, server_default='receipt'),
        sa.Column('paper_width_mm', sa.Integer(), nullable=False, server_default='80'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'name', name='uq_printer_setups_theater_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_printer_setups_theater_id', 'printer_setups', ['theater_id'])

    # ============================================================================
    # Adapter settings
    # ============================================================================
    op.create_table(
        'system_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('section', sa.String(length=32), nullable=False),
        sa.Column('value', sa.JSON(), nullable=False),
        sa.Column('updated_by_user_id', sa.Integer(), nullable=True),
        _updated_at(),
        sa.ForeignKeyConstraint(['updated_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('section'),
        sqlite_autoincrement=True
    )


def downgrade():
    for table in (
        'system_settings',
        'printer_setups',
        'print_jobs',
        'stock_entries',
        'monthly_stocks',
        'order_lines',
        'orders',
        'order_sequences',
        'combo_items',
        'combos',
        'products',
        'product_types',
        'kiosk_types',
        'categories',
        'session_tokens',
        'users',
        'roles',
        'theaters',
    ):
        op.drop_table(table)
