"""add_stock_released_to_orders

Revision ID: 0002_add_stock_released
Revises: 0001_init
Create Date: 2026-10-20

"""
from alembic import op
import sqlalchemy as sa

revision = '0002_add_stock_released'
down_revision = '0001_init'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        'orders',
        sa.Column('stock_released', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    # Rejected orders have already had their items restocked
    op.execute("UPDATE orders SET stock_released = TRUE WHERE status = 'REJECTED'")


def downgrade() -> None:
    op.drop_column('orders', 'stock_released')
