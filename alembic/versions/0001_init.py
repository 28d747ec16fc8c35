from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'parent_categories',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False)
    )
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('parent_category_id', sa.Integer, sa.ForeignKey('parent_categories.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=False)
    )
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('parent_category_id', sa.Integer, sa.ForeignKey('parent_categories.id'), nullable=True),
        sa.Column('category_id', sa.Integer, sa.ForeignKey('categories.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=True, unique=True),
        sa.Column('base_price', sa.Numeric(10,2), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'attributes',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('code', sa.String(100), nullable=False, unique=True)
    )
    op.create_table(
        'attribute_values',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('attribute_id', sa.Integer, sa.ForeignKey('attributes.id'), nullable=False),
        sa.Column('value', sa.String(100), nullable=False)
    )
    op.create_table(
        'product_skus',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False, index=True),
        sa.Column('sku', sa.String(100), nullable=False, unique=True),
        sa.Column('quantity', sa.Integer, nullable=False, server_default='0'),
        sa.Column('price', sa.Numeric(10,2), nullable=True),
        sa.Column('discount_price', sa.Numeric(10,2), nullable=True),
        sa.CheckConstraint('quantity >= 0', name='product_skus_quantity_non_negative')
    )
    op.create_table(
        'product_sku_attributes',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_sku_id', sa.Integer, sa.ForeignKey('product_skus.id'), nullable=False, index=True),
        sa.Column('attribute_id', sa.Integer, sa.ForeignKey('attributes.id'), nullable=False),
        sa.Column('attribute_value_id', sa.Integer, sa.ForeignKey('attribute_values.id'), nullable=False),
        sa.UniqueConstraint('product_sku_id', 'attribute_id', 'attribute_value_id', name='sku_attr_unique')
    )
    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('type', sa.String(16), nullable=False),
        sa.Column('amount', sa.Numeric(10,2), nullable=False),
        sa.Column('is_global', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('min_purchase', sa.Numeric(10,2), nullable=True),
        sa.Column('max_usage', sa.Integer, nullable=True),
        sa.Column('max_usage_per_user', sa.Integer, nullable=True),
        sa.Column('start_date', sa.DateTime, nullable=True),
        sa.Column('end_date', sa.DateTime, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_table(
        'coupon_products',
        sa.Column('coupon_id', sa.Integer, sa.ForeignKey('coupons.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id', ondelete='CASCADE'), primary_key=True)
    )
    op.create_table(
        'shipping_addresses',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, nullable=True, index=True),
        sa.Column('f_name', sa.String(120), nullable=False),
        sa.Column('l_name', sa.String(120), nullable=True),
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('address', sa.String(255), nullable=False),
        sa.Column('city', sa.String(120), nullable=True),
        sa.Column('zip', sa.String(20), nullable=True)
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('invoice_code', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('user_id', sa.Integer, nullable=True, index=True),
        sa.Column('shipping_id', sa.Integer, sa.ForeignKey('shipping_addresses.id'), nullable=True),
        sa.Column('user_name', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('address', sa.String(255), nullable=True),
        sa.Column('status', sa.Integer, nullable=False, server_default='0', index=True),
        sa.Column('item_subtotal', sa.Numeric(12,2), nullable=False),
        sa.Column('shipping_charge', sa.Numeric(12,2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(12,2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('coupon_id', sa.Integer, sa.ForeignKey('coupons.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('order_description', sa.Text, nullable=True),
        sa.Column('status_change_desc', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now(), index=True),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_table(
        'order_lines',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False),
        sa.Column('product_sku_id', sa.Integer, sa.ForeignKey('product_skus.id'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(12,2), nullable=False),
        sa.UniqueConstraint('order_id', 'product_id', 'product_sku_id', name='order_line_unique')
    )
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('status', sa.Integer, nullable=False, server_default='0'),
        sa.Column('amount', sa.Numeric(12,2), nullable=False),
        sa.Column('paid_amount', sa.Numeric(12,2), nullable=False, server_default='0'),
        sa.Column('method', sa.Integer, nullable=False),
        sa.Column('trx_ref', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    invoice_sequences = op.create_table(
        'invoice_sequences',
        sa.Column('name', sa.String(32), primary_key=True),
        sa.Column('prefix', sa.String(8), nullable=False),
        sa.Column('next_value', sa.Integer, nullable=False)
    )
    op.bulk_insert(invoice_sequences, [{'name': 'orders', 'prefix': 'JG', 'next_value': 1000}])
    op.create_table(
        'activities',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('relatable_id', sa.Integer, nullable=False, index=True),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )

def downgrade():
    for table in (
        'activities', 'invoice_sequences', 'payments', 'order_lines', 'orders', 'shipping_addresses',
        'coupon_products', 'coupons', 'product_sku_attributes', 'product_skus', 'attribute_values',
        'attributes', 'products', 'categories', 'parent_categories',
    ):
        op.drop_table(table)
