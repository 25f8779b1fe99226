import logging
from typing import Iterable, List, Optional

from sqlalchemy import update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from db.models import Order, OrderStatus, Period, VOID_ORDER_STATUSES


async def create_order(session: AsyncSession, order: Order) -> Order:
    session.add(order)
    await session.flush()
    await session.refresh(order)
    logging.info(f"Created order {order.id} (trade_no={order.trade_no}) for user {order.user_id}")
    return order


async def get_order_by_id(session: AsyncSession, order_id: int) -> Optional[Order]:
    return await session.get(Order, order_id)


async def get_order_for_update(session: AsyncSession, order_id: int) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_last_completed_onetime_order(session: AsyncSession, user_id: int) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(
            Order.user_id == user_id,
            Order.period == Period.onetime,
            Order.status == OrderStatus.completed,
        )
        .order_by(Order.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def get_completed_order_ids_excluding_reset(session: AsyncSession, user_id: int) -> List[int]:
    stmt = (
        select(Order.id)
        .where(
            Order.user_id == user_id,
            Order.period != Period.reset,
            Order.status == OrderStatus.completed,
        )
        .order_by(Order.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_completed_periodic_orders(session: AsyncSession, user_id: int) -> List[Order]:
    stmt = (
        select(Order)
        .where(
            Order.user_id == user_id,
            Order.period.not_in([Period.reset, Period.onetime]),
            Order.status == OrderStatus.completed,
        )
        .order_by(Order.id)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def has_valid_order(session: AsyncSession, user_id: int) -> bool:
    """True if the user has any order that is neither pending nor cancelled."""
    stmt = (
        select(Order.id)
        .where(
            Order.user_id == user_id,
            Order.status.not_in(VOID_ORDER_STATUSES),
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def has_unfinished_order(session: AsyncSession, user_id: int) -> bool:
    stmt = (
        select(Order.id)
        .where(
            Order.user_id == user_id,
            Order.status.in_([OrderStatus.pending, OrderStatus.processing]),
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def count_coupon_uses_by_user(session: AsyncSession, coupon_id: int, user_id: int) -> int:
    stmt = select(func.count(Order.id)).where(
        Order.coupon_id == coupon_id,
        Order.user_id == user_id,
        Order.status.not_in(VOID_ORDER_STATUSES),
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def mark_orders_discounted(session: AsyncSession, order_ids: Iterable[int]) -> int:
    """Supersede orders whose remaining value was folded into an upgrade."""
    ids = [int(order_id) for order_id in order_ids]
    if not ids:
        return 0
    stmt = (
        update(Order)
        .where(Order.id.in_(ids))
        .values(status=OrderStatus.discounted)
        .execution_options(synchronize_session="fetch")
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def get_user_orders(
    session: AsyncSession,
    user_id: int,
    limit: int = 20,
    offset: int = 0,
) -> List[Order]:
    stmt = (
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return result.scalars().all()
