"""Orders core: orders, order items, order timeline

Revision ID: 20261019_orders
Revises:
Create Date: 2026-10-19

This migration adds:
1. Order (payment + fulfillment status, gateway correlation, version_id)
2. OrderItem (line items captured at checkout)
3. OrderTimelineEntry (append-only audit trail)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_orders'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. ORDERS TABLE
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=False),
        sa.Column('ship_full_name', sa.String(length=255), nullable=False),
        sa.Column('ship_email', sa.String(length=255), nullable=False),
        sa.Column('ship_phone', sa.String(length=32), nullable=False),
        sa.Column('ship_address', sa.String(length=255), nullable=False),
        sa.Column('ship_city', sa.String(length=128), nullable=False),
        sa.Column('ship_region', sa.String(length=128), nullable=True),
        sa.Column('ship_delivery_location', sa.String(length=255), nullable=True),
        sa.Column('total_amount_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='pesapal'),
        sa.Column('fulfillment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('tracking_number', sa.String(length=64), nullable=True),
        sa.Column('transaction_tracking_id', sa.String(length=128), nullable=True),
        sa.Column('transaction_status', sa.String(length=128), nullable=True),
        sa.Column('payment_error', sa.Text(), nullable=True),
        sa.Column('payment_initiated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_check', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_orders_order_number'), ['order_number'], unique=True)
        batch_op.create_index(batch_op.f('ix_orders_fulfillment_status'), ['fulfillment_status'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_payment_status'), ['payment_status'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_transaction_tracking_id'), ['transaction_tracking_id'], unique=False)
        batch_op.create_index('ix_orders_status_created', ['fulfillment_status', 'created_at'], unique=False)
        batch_op.create_index('ix_orders_payment_status_created', ['payment_status', 'created_at'], unique=False)

    # ==========================================================================
    # 2. ORDER ITEMS TABLE
    # ==========================================================================
    op.create_table('order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_ref', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_items', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_order_items_order_id'), ['order_id'], unique=False)

    # ==========================================================================
    # 3. ORDER TIMELINE TABLE
    # ==========================================================================
    op.create_table('order_timeline_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=True),
        sa.Column('source', sa.String(length=32), nullable=False, server_default='admin'),
        sa.Column('note', sa.Text(), nullable=False, server_default=''),
        sa.Column('changed_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_timeline_entries', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_order_timeline_entries_order_id'), ['order_id'], unique=False)


def downgrade():
    with op.batch_alter_table('order_timeline_entries', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_order_timeline_entries_order_id'))
    op.drop_table('order_timeline_entries')

    with op.batch_alter_table('order_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_order_items_order_id'))
    op.drop_table('order_items')

    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index('ix_orders_payment_status_created')
        batch_op.drop_index('ix_orders_status_created')
        batch_op.drop_index(batch_op.f('ix_orders_transaction_tracking_id'))
        batch_op.drop_index(batch_op.f('ix_orders_payment_status'))
        batch_op.drop_index(batch_op.f('ix_orders_fulfillment_status'))
        batch_op.drop_index(batch_op.f('ix_orders_order_number'))
    op.drop_table('orders')
