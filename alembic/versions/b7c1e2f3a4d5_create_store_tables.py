"""create_store_tables

Revision ID: b7c1e2f3a4d5
Revises:
Create Date: 2026-10-18 09:12:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = 'b7c1e2f3a4d5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    'store_coupon_type_enum': ('percentage', 'fixed', 'free_shipping'),
    'store_bundle_apply_to_enum': ('all', 'categories', 'products', 'tags'),
    'store_bundle_discount_type_enum': (
        'buy_x_get_y_free',
        'buy_x_get_y_percent',
        'buy_x_fixed_price',
        'quantity_percent',
    ),
    'store_order_status_enum': (
        'pending', 'processing', 'shipped', 'delivered', 'cancelled'
    ),
    'store_payment_status_enum': ('pending', 'paid'),
    'store_stock_reservation_status_enum': (
        'reserved', 'released', 'captured', 'not_required'
    ),
    'store_wallet_reservation_status_enum': (
        'none', 'reserved', 'released', 'captured'
    ),
    'store_wallet_transaction_type_enum': ('debit', 'cashback', 'refund'),
    'store_inventory_movement_type_enum': ('reservation', 'release'),
    'store_audit_entity_type_enum': ('order', 'coupon', 'wallet'),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name)


def _money(nullable: bool = True, default: bool = False) -> dict:
    kwargs = {'nullable': nullable}
    if default:
        kwargs['server_default'] = '0'
    return kwargs


def upgrade() -> None:
    """Upgrade schema - Create store catalog, order and wallet tables."""

    # Catalog
    op.create_table(
        'store_customization_schemas',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('fields', JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_products',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category_id', sa.String(100), nullable=True),
        sa.Column('tags', JSONB(), nullable=True),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('sale_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('on_sale', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('stock', sa.Integer(), server_default='0', nullable=False),
        sa.Column('track_inventory', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('allow_backorder', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('is_digital', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('digital_files', JSONB(), nullable=True),
        sa.Column('customization_schema_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('stock >= 0', name='product_stock_non_negative'),
        sa.ForeignKeyConstraint(
            ['customization_schema_id'],
            ['store_customization_schemas.id'],
            ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_product_variants',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('stock', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('stock >= 0', name='variant_stock_non_negative'),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_inventory_movements',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', UUID(as_uuid=True), nullable=True),
        sa.Column('movement_type', _enum('store_inventory_movement_type_enum'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(30), nullable=True),
        sa.Column('reference_id', UUID(as_uuid=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # Promotions
    op.create_table(
        'store_coupons',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('coupon_type', _enum('store_coupon_type_enum'), nullable=False),
        sa.Column('value', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('max_discount', sa.Numeric(12, 2), nullable=True),
        sa.Column('min_purchase', sa.Numeric(12, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=True),
        sa.Column('allowed_emails', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('current_uses >= 0', name='coupon_uses_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code')
    )

    op.create_table(
        'store_coupon_usage',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('coupon_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('coupon_code', sa.String(50), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['coupon_id'], ['store_coupons.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coupon_id', 'order_id', name='unique_coupon_order_usage')
    )

    op.create_table(
        'store_bundle_discounts',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column(
            'apply_to',
            _enum('store_bundle_apply_to_enum'),
            server_default='all',
            nullable=False,
        ),
        sa.Column('category_ids', JSONB(), nullable=True),
        sa.Column('product_ids', JSONB(), nullable=True),
        sa.Column('tag_ids', JSONB(), nullable=True),
        sa.Column('discount_type', _enum('store_bundle_discount_type_enum'), nullable=False),
        sa.Column('buy_quantity', sa.Integer(), nullable=False),
        sa.Column('get_quantity', sa.Integer(), nullable=True),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=True),
        sa.Column('fixed_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('priority', sa.Integer(), server_default='0', nullable=False),
        sa.Column('stackable', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('buy_quantity > 0', name='bundle_buy_quantity_positive'),
        sa.PrimaryKeyConstraint('id')
    )

    # Shipping
    op.create_table(
        'store_shipping_zones',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('postal_codes', JSONB(), nullable=True),
        sa.Column('provinces', JSONB(), nullable=True),
        sa.Column('priority', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_shipping_methods',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('zone_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('free_shipping_threshold', sa.Numeric(12, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['zone_id'], ['store_shipping_zones.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # Orders
    op.create_table(
        'store_orders',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('idempotency_key', sa.String(128), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('shipping_info', JSONB(), nullable=True),
        sa.Column('billing_info', JSONB(), nullable=True),
        sa.Column('coupon_id', UUID(as_uuid=True), nullable=True),
        sa.Column('coupon_code', sa.String(50), nullable=True),
        sa.Column('use_wallet', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('bundle_discount', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('bundle_discount_details', JSONB(), nullable=True),
        sa.Column('coupon_discount', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('free_shipping', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('tax', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('tax_rate', sa.Numeric(5, 4), server_default='0', nullable=True),
        sa.Column('tax_type', sa.String(10), nullable=True),
        sa.Column('tax_label', sa.String(50), nullable=True),
        sa.Column('shipping_cost', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('wallet_discount', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('used_wallet', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column(
            'status',
            _enum('store_order_status_enum'),
            server_default='pending',
            nullable=False,
        ),
        sa.Column(
            'payment_status',
            _enum('store_payment_status_enum'),
            server_default='pending',
            nullable=False,
        ),
        sa.Column('payment_mismatch', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('payment_mismatch_reason', sa.String(50), nullable=True),
        sa.Column('payment_mismatch_details', JSONB(), nullable=True),
        sa.Column(
            'stock_reservation_status',
            _enum('store_stock_reservation_status_enum'),
            server_default='not_required',
            nullable=False,
        ),
        sa.Column('stock_reservation', JSONB(), nullable=True),
        sa.Column('reservation_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'wallet_reservation_status',
            _enum('store_wallet_reservation_status_enum'),
            server_default='none',
            nullable=False,
        ),
        sa.Column('wallet_reserved_amount', sa.Numeric(12, 2), **_money(default=True)),
        sa.Column('payment_intent_id', sa.String(255), nullable=True),
        sa.Column('expected_amount_minor', sa.Integer(), nullable=True),
        sa.Column('requires_payment', sa.Boolean(), server_default='true', nullable=False),
        sa.Column(
            'post_payment_actions_completed',
            sa.Boolean(),
            server_default='false',
            nullable=False,
        ),
        sa.Column('post_payment_actions_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('total >= 0', name='order_total_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )

    op.create_table(
        'store_order_items',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', UUID(as_uuid=True), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('variant_name', sa.String(255), nullable=True),
        sa.Column('is_digital', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('line_total', sa.Numeric(12, 2), nullable=False),
        sa.Column('customization', JSONB(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='order_item_positive_quantity'),
        sa.ForeignKeyConstraint(['order_id'], ['store_orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id']),
        sa.ForeignKeyConstraint(['variant_id'], ['store_product_variants.id']),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_webhook_events',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=True),
        sa.Column('note', sa.String(255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_digital_access',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('files', JSONB(), nullable=True),
        sa.Column('download_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_downloads', sa.Integer(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'product_id', name='unique_digital_access_grant')
    )

    op.create_table(
        'store_audit_logs',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('entity_type', _enum('store_audit_entity_type_enum'), nullable=False),
        sa.Column('entity_id', UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('old_value', JSONB(), nullable=True),
        sa.Column('new_value', JSONB(), nullable=True),
        sa.Column('performed_by', sa.String(255), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    # Wallets
    op.create_table(
        'store_wallets',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('balance', sa.Numeric(12, 2), **_money(nullable=False, default=True)),
        sa.Column(
            'reserved_balance', sa.Numeric(12, 2), **_money(nullable=False, default=True)
        ),
        sa.Column('total_earned', sa.Numeric(12, 2), **_money(nullable=False, default=True)),
        sa.Column('total_spent', sa.Numeric(12, 2), **_money(nullable=False, default=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_store_wallet_balance_non_negative'),
        sa.CheckConstraint(
            'reserved_balance >= 0', name='ck_store_wallet_reserved_non_negative'
        ),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'store_wallet_transactions',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('wallet_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column(
            'transaction_type', _enum('store_wallet_transaction_type_enum'), nullable=False
        ),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('balance_before', sa.Numeric(12, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(12, 2), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=True),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_store_wallet_txn_amount_positive'),
        sa.ForeignKeyConstraint(['wallet_id'], ['store_wallets.id']),
        sa.PrimaryKeyConstraint('id')
    )

    # Create indexes for performance
    op.create_index('ix_store_products_category_id', 'store_products', ['category_id'])
    op.create_index(
        'ix_store_product_variants_product_id', 'store_product_variants', ['product_id']
    )
    op.create_index('ix_store_coupon_usage_user_id', 'store_coupon_usage', ['user_id'])
    op.create_index(
        'ix_store_shipping_methods_zone_id', 'store_shipping_methods', ['zone_id']
    )
    op.create_index('ix_store_orders_user_id', 'store_orders', ['user_id'])
    op.create_index(
        'ix_store_orders_reservation_expires_at', 'store_orders', ['reservation_expires_at']
    )
    op.create_index(
        'ix_store_orders_payment_intent_id', 'store_orders', ['payment_intent_id']
    )
    op.create_index(
        'ix_store_orders_status_payment', 'store_orders', ['status', 'payment_status']
    )
    op.create_index('ix_store_order_items_order_id', 'store_order_items', ['order_id'])
    op.create_index('ix_store_digital_access_user_id', 'store_digital_access', ['user_id'])
    op.create_index(
        'ix_store_audit_logs_entity', 'store_audit_logs', ['entity_type', 'entity_id']
    )
    op.create_index('ix_store_wallets_user_id', 'store_wallets', ['user_id'], unique=True)
    op.create_index(
        'ix_store_wallet_transactions_wallet_id', 'store_wallet_transactions', ['wallet_id']
    )
    op.create_index(
        'ix_store_wallet_transactions_idempotency_key',
        'store_wallet_transactions',
        ['idempotency_key'],
        unique=True,
    )
    op.create_index(
        'ix_store_wallet_transactions_order_id', 'store_wallet_transactions', ['order_id']
    )
    op.create_index(
        'ix_store_wallet_transactions_wallet_created',
        'store_wallet_transactions',
        ['wallet_id', 'created_at'],
    )


def downgrade() -> None:
    """Downgrade schema - Remove store tables."""

    # Drop indexes
    op.drop_index(
        'ix_store_wallet_transactions_wallet_created', table_name='store_wallet_transactions'
    )
    op.drop_index(
        'ix_store_wallet_transactions_order_id', table_name='store_wallet_transactions'
    )
    op.drop_index(
        'ix_store_wallet_transactions_idempotency_key',
        table_name='store_wallet_transactions',
    )
    op.drop_index(
        'ix_store_wallet_transactions_wallet_id', table_name='store_wallet_transactions'
    )
    op.drop_index('ix_store_wallets_user_id', table_name='store_wallets')
    op.drop_index('ix_store_audit_logs_entity', table_name='store_audit_logs')
    op.drop_index('ix_store_digital_access_user_id', table_name='store_digital_access')
    op.drop_index('ix_store_order_items_order_id', table_name='store_order_items')
    op.drop_index('ix_store_orders_status_payment', table_name='store_orders')
    op.drop_index('ix_store_orders_payment_intent_id', table_name='store_orders')
    op.drop_index('ix_store_orders_reservation_expires_at', table_name='store_orders')
    op.drop_index('ix_store_orders_user_id', table_name='store_orders')
    op.drop_index('ix_store_shipping_methods_zone_id', table_name='store_shipping_methods')
    op.drop_index('ix_store_coupon_usage_user_id', table_name='store_coupon_usage')
    op.drop_index(
        'ix_store_product_variants_product_id', table_name='store_product_variants'
    )
    op.drop_index('ix_store_products_category_id', table_name='store_products')

    # Drop tables
    op.drop_table('store_wallet_transactions')
    op.drop_table('store_wallets')
    op.drop_table('store_audit_logs')
    op.drop_table('store_digital_access')
    op.drop_table('store_webhook_events')
    op.drop_table('store_order_items')
    op.drop_table('store_orders')
    op.drop_table('store_shipping_methods')
    op.drop_table('store_shipping_zones')
    op.drop_table('store_bundle_discounts')
    op.drop_table('store_coupon_usage')
    op.drop_table('store_coupons')
    op.drop_table('store_inventory_movements')
    op.drop_table('store_product_variants')
    op.drop_table('store_products')
    op.drop_table('store_customization_schemas')

    bind = op.get_bind()
    for name in ENUMS:
        sa.Enum(name=name).drop(bind, checkfirst=True)
