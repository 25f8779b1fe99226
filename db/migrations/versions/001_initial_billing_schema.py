"""initial_billing_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


period_enum = sa.Enum(
    'month', 'quarter', 'half_year', 'year', 'two_year', 'three_year', 'onetime', 'reset',
    name='period',
)
order_type_enum = sa.Enum('new_purchase', 'renewal', 'upgrade', 'reset_traffic', name='ordertype')
order_status_enum = sa.Enum(
    'pending', 'processing', 'cancelled', 'completed', 'discounted',
    name='orderstatus',
)
coupon_type_enum = sa.Enum('fixed_amount', 'percentage', name='coupontype')
commission_mode_enum = sa.Enum(
    'system', 'per_order', 'unlimited', 'first_order_only',
    name='commissionmode',
)


def upgrade() -> None:
    # Create plans table
    op.create_table('plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.Column('transfer_enable', sa.Integer(), nullable=False),
        sa.Column('speed_limit', sa.Integer(), nullable=True),
        sa.Column('capacity_limit', sa.Integer(), nullable=True),
        sa.Column('reset_traffic_method', sa.Integer(), nullable=True),
        sa.Column('sell', sa.Boolean(), nullable=False),
        sa.Column('renew', sa.Boolean(), nullable=False),
        sa.Column('month_price', sa.Integer(), nullable=True),
        sa.Column('quarter_price', sa.Integer(), nullable=True),
        sa.Column('half_year_price', sa.Integer(), nullable=True),
        sa.Column('year_price', sa.Integer(), nullable=True),
        sa.Column('two_year_price', sa.Integer(), nullable=True),
        sa.Column('three_year_price', sa.Integer(), nullable=True),
        sa.Column('onetime_price', sa.Integer(), nullable=True),
        sa.Column('reset_price', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create users table
    op.create_table('users',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('plan_id', sa.Integer(), nullable=True),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.Column('balance', sa.BigInteger(), nullable=False),
        sa.Column('used_upload', sa.BigInteger(), nullable=False),
        sa.Column('used_download', sa.BigInteger(), nullable=False),
        sa.Column('traffic_quota', sa.BigInteger(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('speed_limit', sa.Integer(), nullable=True),
        sa.Column('discount_percent', sa.Integer(), nullable=True),
        sa.Column('invited_by', sa.BigInteger(), nullable=True),
        sa.Column('commission_rate', sa.Integer(), nullable=False),
        sa.Column('commission_mode', commission_mode_enum, nullable=False),
        sa.Column('is_banned', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.ForeignKeyConstraint(['invited_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_plan_id'), 'users', ['plan_id'], unique=False)
    op.create_index(op.f('ix_users_expires_at'), 'users', ['expires_at'], unique=False)
    op.create_index(op.f('ix_users_invited_by'), 'users', ['invited_by'], unique=False)

    # Create coupons table
    op.create_table('coupons',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('type', coupon_type_enum, nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_limit_per_user', sa.Integer(), nullable=True),
        sa.Column('plan_ids', sa.JSON(), nullable=True),
        sa.Column('periods', sa.JSON(), nullable=True),
        sa.Column('show', sa.Boolean(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_coupons_code'), 'coupons', ['code'], unique=True)

    # Create orders table
    op.create_table('orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('trade_no', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('coupon_id', sa.Integer(), nullable=True),
        sa.Column('period', period_enum, nullable=False),
        sa.Column('type', order_type_enum, nullable=True),
        sa.Column('status', order_status_enum, nullable=False),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('discount_amount', sa.BigInteger(), nullable=True),
        sa.Column('surplus_amount', sa.BigInteger(), nullable=True),
        sa.Column('refund_amount', sa.BigInteger(), nullable=True),
        sa.Column('balance_amount', sa.BigInteger(), nullable=True),
        sa.Column('commission_balance', sa.BigInteger(), nullable=False),
        sa.Column('surplus_order_ids', sa.JSON(), nullable=True),
        sa.Column('invite_user_id', sa.BigInteger(), nullable=True),
        sa.Column('callback_no', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('callback_no')
    )
    op.create_index(op.f('ix_orders_trade_no'), 'orders', ['trade_no'], unique=True)
    op.create_index(op.f('ix_orders_user_id'), 'orders', ['user_id'], unique=False)
    op.create_index(op.f('ix_orders_status'), 'orders', ['status'], unique=False)

    # Create user_balances table
    op.create_table('user_balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('operation_type', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_user_balances_user_id'), 'user_balances', ['user_id'], unique=False)

    # Create admin_settings table
    op.create_table('admin_settings',
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('name')
    )


def downgrade() -> None:
    op.drop_table('admin_settings')
    op.drop_index(op.f('ix_user_balances_user_id'), table_name='user_balances')
    op.drop_table('user_balances')
    op.drop_index(op.f('ix_orders_status'), table_name='orders')
    op.drop_index(op.f('ix_orders_user_id'), table_name='orders')
    op.drop_index(op.f('ix_orders_trade_no'), table_name='orders')
    op.drop_table('orders')
    op.drop_index(op.f('ix_coupons_code'), table_name='coupons')
    op.drop_table('coupons')
    op.drop_index(op.f('ix_users_invited_by'), table_name='users')
    op.drop_index(op.f('ix_users_expires_at'), table_name='users')
    op.drop_index(op.f('ix_users_plan_id'), table_name='users')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_table('users')
    op.drop_table('plans')

    bind = op.get_bind()
    for enum_type in (commission_mode_enum, coupon_type_enum, order_status_enum, order_type_enum, period_enum):
        enum_type.drop(bind, checkfirst=True)
