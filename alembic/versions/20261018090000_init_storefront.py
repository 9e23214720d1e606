from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261018090000"
down_revision = None

JSONDoc = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
Money = sa.Numeric(12, 3)
TS = sa.DateTime(timezone=True)
NOW = sa.text("CURRENT_TIMESTAMP")

def _enum_check(column: str, values, name: str) -> sa.CheckConstraint:
    allowed = ", ".join(f"'{v}'" for v in values)
    return sa.CheckConstraint(f"{column} IN ({allowed})", name=name)

ORDER_STATUS = ("pending", "processing", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUS = ("pending", "paid", "failed", "refunded")
PAYMENT_METHOD = ("cod", "bank_transfer", "flouci")

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name_ar', sa.String(length=240), nullable=False),
        sa.Column('name_fr', sa.String(length=240), nullable=False),
        sa.Column('sku', sa.String(length=64), unique=True, nullable=True),
        sa.Column('price', Money, nullable=False),
        sa.Column('wholesale_price', Money, nullable=True),
        sa.Column('wholesale_min_quantity', sa.Integer(), nullable=True, server_default='10'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column('is_wholesale_only', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('images', JSONDoc, nullable=True),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
    )
    op.create_table(
        'carts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), unique=True, nullable=True),
        sa.Column('session_id', sa.String(length=128), unique=True, nullable=True),
        sa.Column('created_at', TS, nullable=True, server_default=NOW),
        sa.Column('updated_at', TS, nullable=True, server_default=NOW),
        sa.CheckConstraint(
            '(user_id IS NOT NULL AND session_id IS NULL) OR (user_id IS NULL AND session_id IS NOT NULL)',
            name='ck_carts_single_owner',
        ),
    )
    op.create_table(
        'cart_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cart_id', sa.Integer(), sa.ForeignKey('carts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('updated_at', TS, nullable=True, server_default=NOW),
        sa.UniqueConstraint('cart_id', 'product_id', name='uq_cart_items_cart_product'),
        sa.CheckConstraint('quantity > 0', name='ck_cart_items_quantity_positive'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_number', sa.String(length=32), unique=True, nullable=False),
        sa.Column('user_id', sa.String(length=255), index=True, nullable=True),
        sa.Column('guest_email', sa.String(length=255), nullable=True),
        sa.Column('guest_phone', sa.String(length=32), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('subtotal', Money, nullable=False),
        sa.Column('shipping_cost', Money, nullable=False, server_default='0'),
        sa.Column('fee', Money, nullable=False, server_default='0'),
        sa.Column('discount', Money, nullable=False, server_default='0'),
        sa.Column('total', Money, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True, server_default='TND'),
        sa.Column('shipping_address', JSONDoc, nullable=False),
        sa.Column('billing_address', JSONDoc, nullable=False),
        sa.Column('is_wholesale_order', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('payment_reference', sa.String(length=128), index=True, nullable=True),
        sa.Column('bank_transfer_proof_url', sa.String(length=1024), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', TS, nullable=True, server_default=NOW),
        sa.Column('updated_at', TS, nullable=True, server_default=NOW),
        sa.Column('paid_at', TS, nullable=True),
        _enum_check('status', ORDER_STATUS, 'order_status'),
        _enum_check('payment_method', PAYMENT_METHOD, 'payment_method'),
        _enum_check('payment_status', PAYMENT_STATUS, 'payment_status'),
        sa.CheckConstraint('subtotal >= 0', name='ck_orders_subtotal_non_negative'),
        sa.CheckConstraint('shipping_cost >= 0', name='ck_orders_shipping_non_negative'),
        sa.CheckConstraint('fee >= 0', name='ck_orders_fee_non_negative'),
        sa.CheckConstraint('discount >= 0', name='ck_orders_discount_non_negative'),
        sa.CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='CASCADE'), index=True, nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id', ondelete='RESTRICT'), index=True, nullable=False),
        sa.Column('product_snapshot', JSONDoc, nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', Money, nullable=False),
        sa.Column('total_price', Money, nullable=False),
        sa.Column('is_wholesale_price', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
    )
    op.create_table(
        'payment_verifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='CASCADE'), index=True, nullable=False),
        sa.Column('actor', sa.String(length=32), nullable=False),
        sa.Column('verified_by', sa.String(length=255), nullable=True),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('amount_verified', Money, nullable=False),
        sa.Column('bank_reference', sa.String(length=128), nullable=True),
        sa.Column('gateway_payment_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(length=128), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', TS, nullable=True, index=True, server_default=NOW),
        _enum_check('actor', ('admin', 'system'), 'verification_actor'),
        _enum_check('payment_method', PAYMENT_METHOD, 'verification_payment_method'),
        _enum_check('action', ('approve', 'reject'), 'verification_action'),
        sa.CheckConstraint("actor = 'system' OR verified_by IS NOT NULL", name='ck_payment_verifications_admin_named'),
    )
    op.create_table(
        'order_number_counters',
        sa.Column('day', sa.Date(), primary_key=True),
        sa.Column('last_value', sa.Integer(), nullable=False),
    )

def downgrade():
    op.drop_table('order_number_counters')
    op.drop_table('payment_verifications')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('cart_items')
    op.drop_table('carts')
    op.drop_table('products')
