"""checkout_schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('seller_id', sa.String(64), nullable=False, index=True),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('stock', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('has_discount', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('discount_type', sa.String(20), nullable=True),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('discount_start_date', sa.DateTime(), nullable=True),
        sa.Column('discount_end_date', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
    )
    op.create_table(
        'vouchers',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.Numeric(10, 2), nullable=False),
        sa.Column('min_order_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('max_discount_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('max_uses', sa.Integer, nullable=False),
        sa.Column('used_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('valid_from', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('applicable_product_types', sa.JSON, nullable=False),
        sa.CheckConstraint('used_count <= max_uses', name='ck_vouchers_usage_cap'),
    )
    op.create_table(
        'delivery_vouchers',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('min_order_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('max_uses', sa.Integer, nullable=False),
        sa.Column('used_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.CheckConstraint('used_count <= max_uses', name='ck_delivery_vouchers_usage_cap'),
    )
    op.create_table(
        'delivery_fees',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_default', sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=True, unique=True, index=True),
        sa.Column('customer_id', sa.String(64), nullable=False, index=True),
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('delivery_fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('total', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, index=True),
        sa.Column('payment_type', sa.String(30), nullable=False),
        sa.Column('payment_status', sa.String(30), nullable=False),
        sa.Column('voucher_code', sa.String(50), nullable=True),
        sa.Column('delivery_voucher_code', sa.String(50), nullable=True),
        sa.Column('payment_phone', sa.String(20), nullable=True),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('rejection_reason', sa.Text, nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount_applied', sa.Numeric(10, 2), nullable=False),
        sa.Column('product_name_snapshot', sa.String(200), nullable=True),
        sa.Column('product_type_snapshot', sa.String(30), nullable=True),
        sa.Column('seller_id', sa.String(64), nullable=False, index=True),
    )
    op.create_table(
        'deliveries',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('address', sa.Text, nullable=False),
        sa.Column('tracking_id', sa.String(50), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('delivery_notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('transaction_code', sa.String(100), nullable=True),
        sa.Column('reference_number', sa.String(100), nullable=False, index=True),
        sa.Column('external_reference', sa.String(100), nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('mpesa_message', sa.Text, nullable=True),
        sa.Column('metadata_json', sa.Text, nullable=True),
        sa.Column('stk_push_data', sa.Text, nullable=True),
        sa.Column('callback_data', sa.Text, nullable=True),
        sa.Column('callback_received', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'payment_approval_logs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('approver_id', sa.String(64), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'order_timeline',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('action', sa.String(40), nullable=False),
        sa.Column('actor_role', sa.String(30), nullable=False),
        sa.Column('actor_id', sa.String(64), nullable=True),
        sa.Column('actor_name', sa.String(200), nullable=True),
        sa.Column('old_status', sa.String(30), nullable=True),
        sa.Column('new_status', sa.String(30), nullable=True),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('metadata_json', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('idx_order_timeline_order_created', 'order_timeline', ['order_id', 'created_at'])
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('receiver_id', sa.String(64), nullable=False, index=True),
        sa.Column('sender_id', sa.String(64), nullable=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('type', sa.String(10), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_index('idx_order_timeline_order_created', table_name='order_timeline')
    op.drop_table('order_timeline')
    op.drop_table('payment_approval_logs')
    op.drop_table('payments')
    op.drop_table('deliveries')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('delivery_fees')
    op.drop_table('delivery_vouchers')
    op.drop_table('vouchers')
    op.drop_table('products')
