from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from db.models import UserBalance
from db.dal.user_dal import get_user_for_update


class BalanceMutationRejected(Exception):
    """Balance operation refused at row level (missing user or negative result)."""
    pass


async def add_balance_operation(
    session: AsyncSession,
    user_id: int,
    amount: int,
    operation_type: str,
    description: Optional[str] = None,
    order_id: Optional[int] = None,
    allow_negative: bool = False,
) -> UserBalance:
    """
    Adds a balance operation and updates the user's current balance under a row lock.

    Runs inside the caller's transaction; the caller commits or rolls back.
    """
    user = await get_user_for_update(session, user_id)
    if not user:
        raise BalanceMutationRejected(f"User {user_id} not found")

    new_balance = (user.balance or 0) + int(amount)
    if new_balance < 0 and not allow_negative:
        raise BalanceMutationRejected(
            f"Balance of user {user_id} would become negative: "
            f"balance={user.balance}, delta={amount}"
        )

    operation = UserBalance(
        user_id=user_id,
        order_id=order_id,
        amount=int(amount),
        operation_type=operation_type,
        description=description,
    )
    session.add(operation)
    user.balance = new_balance

    await session.flush()
    await session.refresh(operation)

    return operation


async def get_user_balance_history(
    session: AsyncSession,
    user_id: int,
    limit: int = 20,
    offset: int = 0
) -> List[UserBalance]:
    stmt = (
        select(UserBalance)
        .where(UserBalance.user_id == user_id)
        .order_by(UserBalance.created_at.desc(), UserBalance.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return result.scalars().all()
