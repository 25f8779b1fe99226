from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from db.models import Plan, User


async def get_plan_by_id(session: AsyncSession, plan_id: int) -> Optional[Plan]:
    return await session.get(Plan, plan_id)


async def get_plan_for_update(session: AsyncSession, plan_id: int) -> Optional[Plan]:
    """Plan row locked for the rest of the transaction (capacity checks)."""
    stmt = (
        select(Plan)
        .where(Plan.id == plan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_active_users_by_plan(session: AsyncSession, now: datetime) -> Dict[int, int]:
    """Number of users holding each plan whose entitlement has not expired."""
    stmt = (
        select(User.plan_id, func.count(User.id))
        .where(
            User.plan_id.is_not(None),
            or_(User.expires_at >= now, User.expires_at.is_(None)),
        )
        .group_by(User.plan_id)
    )
    result = await session.execute(stmt)
    return {plan_id: count for plan_id, count in result.all()}


async def count_active_users_for_plan(session: AsyncSession, plan_id: int, now: datetime) -> int:
    stmt = select(func.count(User.id)).where(
        User.plan_id == plan_id,
        or_(User.expires_at >= now, User.expires_at.is_(None)),
    )
    result = await session.execute(stmt)
    return result.scalar_one()
