"""Add performance indexes

Revision ID: 002_add_performance_indexes
Revises: 001
Create Date: 2026-10-19

Description:
Adds composite indexes for the hot queries of the order engine:
unfinished-order checks, proration scans and plan capacity counts.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002_add_performance_indexes'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade():
    """Add performance indexes to optimize frequent queries."""

    # ==================== Orders Table Indexes ====================

    # Unfinished order check and proration scans by user
    op.create_index(
        'ix_orders_user_status',
        'orders',
        ['user_id', 'status'],
        unique=False
    )

    # Per-user coupon usage count
    op.create_index(
        'idx_orders_coupon_user',
        'orders',
        ['coupon_id', 'user_id'],
        unique=False
    )

    # ==================== Users Table Indexes ====================

    # Active holders per plan (capacity)
    op.create_index(
        'idx_users_plan_expires',
        'users',
        ['plan_id', 'expires_at'],
        unique=False
    )

    # ==================== Balance Ledger Indexes ====================

    # Balance history ordered by time
    op.create_index(
        'idx_user_balances_user_created',
        'user_balances',
        ['user_id', 'created_at'],
        unique=False
    )

    print("✓ Performance indexes created successfully")


def downgrade():
    """Remove performance indexes."""

    op.drop_index('idx_user_balances_user_created', table_name='user_balances')
    op.drop_index('idx_users_plan_expires', table_name='users')
    op.drop_index('idx_orders_coupon_user', table_name='orders')
    op.drop_index('ix_orders_user_status', table_name='orders')

    print("✓ Performance indexes removed successfully")
