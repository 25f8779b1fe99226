from typing import Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from db.models import User


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    return await session.get(User, user_id)


async def get_user_for_update(session: AsyncSession, user_id: int) -> Optional[User]:
    """Load a subscriber row under a pessimistic lock (SELECT ... FOR UPDATE)."""
    stmt = (
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def increment_traffic(
    session: AsyncSession,
    traffic_by_user: Dict[int, Tuple[int, int]],
) -> int:
    """
    Атомарно увеличивает счетчики трафика пользователей.

    traffic_by_user: {user_id: (upload_bytes, download_bytes)}
    Returns number of updated rows.
    """
    updated = 0
    for user_id, (upload, download) in traffic_by_user.items():
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                used_upload=User.used_upload + int(upload),
                used_download=User.used_download + int(download),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        updated += result.rowcount or 0
    return updated
