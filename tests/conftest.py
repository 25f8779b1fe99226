"""
Общие фикстуры тестов движка заказов.

Каждый тест получает свою файловую SQLite-базу (aiosqlite) со схемой из
Base.metadata, фиксированное "сейчас" и фабрику сессий.
"""

import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest

from billing.exceptions import JobSchedulingFailed
from billing.services.balance_service import BalanceService
from billing.services.coupon_service import CouponService
from billing.services.order import OrderClassifier, OrderFulfillmentService
from billing.services.order_service import OrderService
from billing.services.plan_service import PlanService
from billing.services.proration_service import ProrationService
from billing.services.setting_service import BillingConfig, SettingService
from config.settings import Settings
from db.models import BYTES_PER_GB, Coupon, CouponType, Order, OrderStatus, OrderType, Period, Plan, User
from db.session import create_all_tables, create_engine_and_session_factory

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)

_trade_no_seq = itertools.count(1)


class RecordingDispatcher:
    """Job dispatcher stand-in that records jobs instead of running them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.jobs: List[Tuple[str, Dict[str, Any]]] = []

    async def dispatch(self, name: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise JobSchedulingFailed("queue is full")
        self.jobs.append((name, dict(payload)))


class FakeSortedSetRedis:
    """In-memory subset of the redis.asyncio client used by TrafficStatService."""

    def __init__(self):
        self.zsets: Dict[str, Dict[str, float]] = defaultdict(dict)
        self.values: Dict[str, Any] = {}

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        zset = self.zsets[key]
        zset[member] = zset.get(member, 0) + amount
        return zset[member]

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        if end == -1:
            items = items[start:]
        else:
            items = items[start:end + 1]
        if withscores:
            return [(member.encode(), score) for member, score in items]
        return [member.encode() for member, _ in items]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.zsets.pop(key, None) is not None:
                removed += 1
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    async def set(self, key: str, value: Any) -> bool:
        self.values[key] = value
        return True


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        REDIS_ENABLED=False,
    )


@pytest.fixture
async def session_factory(settings):
    engine, factory = create_engine_and_session_factory(settings)
    await create_all_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def balance_service() -> BalanceService:
    return BalanceService()


@pytest.fixture
def fulfillment_service(balance_service, dispatcher) -> OrderFulfillmentService:
    return OrderFulfillmentService(balance_service, dispatcher)


@pytest.fixture
def order_service(settings, session_factory, balance_service, fulfillment_service) -> OrderService:
    return OrderService(
        setting_service=SettingService(settings),
        balance_service=balance_service,
        coupon_service=CouponService(),
        plan_service=PlanService(),
        classifier=OrderClassifier(ProrationService()),
        fulfillment_service=fulfillment_service,
        session_factory=session_factory,
    )


# ==================== Seed helpers ====================


async def add_plan(session, **overrides) -> Plan:
    data = {
        "name": "Basic",
        "group_id": 1,
        "transfer_enable": 100,
        "speed_limit": 50,
        "month_price": 1000,
        "quarter_price": 2700,
        "year_price": 1200,
        "onetime_price": 100,
        "reset_price": 300,
    }
    data.update(overrides)
    plan = Plan(**data)
    session.add(plan)
    await session.flush()
    return plan


async def add_user(session, **overrides) -> User:
    user = User(**overrides)
    session.add(user)
    await session.flush()
    return user


async def add_order(session, user: User, plan: Plan, **overrides) -> Order:
    data = {
        "trade_no": f"seed-{next(_trade_no_seq)}",
        "user_id": user.id,
        "plan_id": plan.id,
        "period": Period.month,
        "type": OrderType.new_purchase,
        "status": OrderStatus.completed,
        "total_amount": 0,
        "created_at": NOW,
    }
    data.update(overrides)
    order = Order(**data)
    session.add(order)
    await session.flush()
    return order


async def add_coupon(session, **overrides) -> Coupon:
    data = {
        "code": "SAVE10",
        "type": CouponType.percentage,
        "value": 10,
        "show": True,
        "started_at": NOW - timedelta(days=1),
        "ended_at": NOW + timedelta(days=30),
    }
    data.update(overrides)
    coupon = Coupon(**data)
    session.add(coupon)
    await session.flush()
    return coupon


def gb(value: float) -> int:
    return int(value * BYTES_PER_GB)
