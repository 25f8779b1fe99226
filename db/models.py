from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, BigInteger, JSON, Enum, Index
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
from typing import Optional
import enum


BYTES_PER_GB = 1073741824


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime column that always hands back timezone-aware UTC values.

    Stored as naive UTC so SQLite and PostgreSQL behave the same.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    pass


class Period(str, enum.Enum):
    """Ценовой период тарифа (ключ колонки цены в плане)"""
    month = "month_price"
    quarter = "quarter_price"
    half_year = "half_year_price"
    year = "year_price"
    two_year = "two_year_price"
    three_year = "three_year_price"
    onetime = "onetime_price"
    reset = "reset_price"

    @property
    def is_periodic(self) -> bool:
        return self not in (Period.onetime, Period.reset)


class OrderType(enum.Enum):
    new_purchase = "new_purchase"
    renewal = "renewal"
    upgrade = "upgrade"
    reset_traffic = "reset_traffic"


class OrderStatus(enum.Enum):
    """
    Статус заказа.

    pending -> processing (оплачен, ждет обработки) -> completed
    pending/processing -> cancelled
    completed -> discounted (стоимость учтена при смене тарифа)
    """
    pending = "pending"
    processing = "processing"
    cancelled = "cancelled"
    completed = "completed"
    discounted = "discounted"


# Orders in these states never count as "used" or "valid"
VOID_ORDER_STATUSES = (OrderStatus.pending, OrderStatus.cancelled)


class CouponType(enum.Enum):
    fixed_amount = "fixed_amount"
    percentage = "percentage"


class CommissionMode(enum.Enum):
    """Режим начисления комиссии пригласившему"""
    system = "system"                      # По глобальной настройке commission_first_time_enable
    per_order = "per_order"                # С каждого заказа
    unlimited = "unlimited"                # Бессрочно с каждого заказа
    first_order_only = "first_order_only"  # Только с первого заказа


class ResetTrafficMethod(enum.IntEnum):
    month_first_day = 0
    expire_day = 1
    never = 2
    year_first_day = 3
    year_expire_day = 4


class OrderEvent(enum.IntEnum):
    none = 0
    reset_traffic = 1


class User(Base):
    """
    Subscriber account.

    plan_id: current plan (nullable)
    group_id: server group granted by the plan
    balance: signed balance in currency minor units
    used_upload / used_download: traffic counters in bytes
    traffic_quota: quota in bytes, null means unlimited
    expires_at: null means the entitlement never expires
    discount_percent: personal discount applied to every order
    invited_by: inviter user id
    commission_rate / commission_mode: how this user earns from invitees
    """
    __tablename__ = "users"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    email = Column(String, nullable=True, unique=True, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True, index=True)
    group_id = Column(Integer, nullable=True)
    balance = Column(BigInteger, nullable=False, default=0)
    used_upload = Column(BigInteger, nullable=False, default=0)
    used_download = Column(BigInteger, nullable=False, default=0)
    traffic_quota = Column(BigInteger, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True, index=True)
    speed_limit = Column(Integer, nullable=True)
    discount_percent = Column(Integer, nullable=True)
    invited_by = Column(BigInteger, ForeignKey("users.id"), nullable=True, index=True)
    commission_rate = Column(Integer, nullable=False, default=0)
    commission_mode = Column(Enum(CommissionMode), nullable=False, default=CommissionMode.system)
    is_banned = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)

    @property
    def used_traffic(self) -> int:
        return (self.used_upload or 0) + (self.used_download or 0)

    def __repr__(self):
        return f"<User(id={self.id}, plan_id={self.plan_id}, expires_at='{self.expires_at}')>"


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    group_id = Column(Integer, nullable=True)
    transfer_enable = Column(Integer, nullable=False)  # GB
    speed_limit = Column(Integer, nullable=True)
    capacity_limit = Column(Integer, nullable=True)
    reset_traffic_method = Column(Integer, nullable=True)  # null = global setting
    sell = Column(Boolean, nullable=False, default=True)
    renew = Column(Boolean, nullable=False, default=True)

    # Цены в минимальных единицах валюты, null = период недоступен
    month_price = Column(Integer, nullable=True)
    quarter_price = Column(Integer, nullable=True)
    half_year_price = Column(Integer, nullable=True)
    year_price = Column(Integer, nullable=True)
    two_year_price = Column(Integer, nullable=True)
    three_year_price = Column(Integer, nullable=True)
    onetime_price = Column(Integer, nullable=True)
    reset_price = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def price_for(self, period: Period) -> Optional[int]:
        return getattr(self, Period(period).value)

    @property
    def transfer_enable_bytes(self) -> int:
        return int(self.transfer_enable or 0) * BYTES_PER_GB

    def __repr__(self):
        return f"<Plan(id={self.id}, name='{self.name}')>"


class Order(Base):
    """
    Заказ подписчика.

    total_amount: сумма к оплате (минимальные единицы валюты)
    discount_amount: скидка (купон + персональная)
    surplus_amount: зачтенный остаток стоимости прежнего тарифа
    refund_amount: излишек зачета, возвращаемый на баланс при активации
    balance_amount: часть стоимости, списанная с баланса при оформлении
    commission_balance: комиссия пригласившему
    surplus_order_ids: заказы, поглощенные зачетом (станут discounted)
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_no = Column(String(36), unique=True, nullable=False, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    period = Column(Enum(Period), nullable=False)
    type = Column(Enum(OrderType), nullable=True)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.pending, index=True)

    total_amount = Column(BigInteger, nullable=False, default=0)
    discount_amount = Column(BigInteger, nullable=True)
    surplus_amount = Column(BigInteger, nullable=True)
    refund_amount = Column(BigInteger, nullable=True)
    balance_amount = Column(BigInteger, nullable=True)
    commission_balance = Column(BigInteger, nullable=False, default=0)
    surplus_order_ids = Column(JSON, nullable=True)
    invite_user_id = Column(BigInteger, nullable=True)

    callback_no = Column(String, nullable=True, unique=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)
    paid_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index('ix_orders_user_status', 'user_id', 'status'),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, trade_no='{self.trade_no}', type={self.type}, status={self.status})>"


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    type = Column(Enum(CouponType), nullable=False)
    value = Column(Integer, nullable=False)  # minor units or percent
    usage_limit = Column(Integer, nullable=True)  # remaining global uses, null = unlimited
    usage_limit_per_user = Column(Integer, nullable=True)
    plan_ids = Column(JSON, nullable=True)
    periods = Column(JSON, nullable=True)
    show = Column(Boolean, nullable=False, default=True)
    started_at = Column(UTCDateTime, nullable=False)
    ended_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Coupon(id={self.id}, code='{self.code}', usage_limit={self.usage_limit})>"


class UserBalance(Base):
    __tablename__ = "user_balances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    amount = Column(BigInteger, nullable=False)
    operation_type = Column(String, nullable=False)  # 'deposit', 'payment', 'refund', 'cancel', 'surplus_refund'
    description = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class AdminSetting(Base):
    __tablename__ = "admin_settings"

    name = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)
