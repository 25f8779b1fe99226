from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from db.models import Coupon


async def get_coupon_by_code(
    session: AsyncSession,
    code: str,
    for_update: bool = False,
) -> Optional[Coupon]:
    stmt = select(Coupon).where(Coupon.code == code)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def decrement_usage_limit(session: AsyncSession, coupon_id: int) -> bool:
    """
    Уменьшает остаток использований купона на единицу.

    Условие usage_limit > 0 в самом UPDATE не дает счетчику уйти в минус
    даже при конкурентных списаниях. Returns False if nothing was left.
    """
    stmt = (
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.usage_limit > 0)
        .values(usage_limit=Coupon.usage_limit - 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1
