"""Initial schema - Create order tracking tables

Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ORDER_STATUSES = (
    'pending', 'accepted', 'preparing', 'ready_for_pickup',
    'picked_up', 'out_for_delivery', 'delivered', 'cancelled',
)


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE agent_status AS ENUM ('available', 'busy', 'offline')")
    op.execute(
        "CREATE TYPE order_status AS ENUM ("
        + ", ".join(f"'{s}'" for s in ORDER_STATUSES)
        + ")"
    )

    # Create agents table
    op.create_table(
        'agents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('vehicle_number', sa.String(50), nullable=True),
        sa.Column('vehicle_type', sa.String(50), nullable=True),
        sa.Column('status', postgresql.ENUM('available', 'busy', 'offline', name='agent_status', create_type=False), nullable=False, server_default='offline'),
        sa.Column('status_changed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('current_lat', sa.Float(), nullable=True),
        sa.Column('current_lng', sa.Float(), nullable=True),
        sa.Column('current_accuracy', sa.Float(), nullable=True),
        sa.Column('current_speed', sa.Float(), nullable=True),
        sa.Column('current_heading', sa.Float(), nullable=True),
        sa.Column('location_updated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_agents_status', 'agents', ['status'])
    op.create_index('ix_agents_current_lat', 'agents', ['current_lat'])

    # Create agent_locations table
    op.create_table(
        'agent_locations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('lat', sa.Float(), nullable=False),
        sa.Column('lng', sa.Float(), nullable=False),
        sa.Column('accuracy', sa.Float(), nullable=True),
        sa.Column('speed', sa.Float(), nullable=True),
        sa.Column('heading', sa.Float(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_agent_locations_agent_id', 'agent_locations', ['agent_id'])
    op.create_index('ix_agent_locations_timestamp', 'agent_locations', ['timestamp'])

    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_number', sa.String(40), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('restaurant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('agents.id', ondelete='SET NULL'), nullable=True),
        sa.Column('items', postgresql.JSON(), nullable=False),
        sa.Column('total_amount', sa.Float(), nullable=False),
        sa.Column('delivery_address', sa.Text(), nullable=False),
        sa.Column('delivery_lat', sa.Float(), nullable=False),
        sa.Column('delivery_lng', sa.Float(), nullable=False),
        sa.Column('pickup_lat', sa.Float(), nullable=False),
        sa.Column('pickup_lng', sa.Float(), nullable=False),
        sa.Column('status', postgresql.ENUM(*ORDER_STATUSES, name='order_status', create_type=False), nullable=False, server_default='pending'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_restaurant_id', 'orders', ['restaurant_id'])
    op.create_index('ix_orders_agent_id', 'orders', ['agent_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    # Create order_tracking table
    op.create_table(
        'order_tracking',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', postgresql.ENUM(*ORDER_STATUSES, name='order_status', create_type=False), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location_lat', sa.Float(), nullable=True),
        sa.Column('location_lng', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('order_id', 'sequence', name='uq_order_tracking_sequence'),
    )
    op.create_index('ix_order_tracking_order_id', 'order_tracking', ['order_id'])


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign keys)
    op.drop_table('order_tracking')
    op.drop_table('orders')
    op.drop_table('agent_locations')
    op.drop_table('agents')

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS order_status")
    op.execute("DROP TYPE IF EXISTS agent_status")
