from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from db.models import AdminSetting


async def get_all_settings(session: AsyncSession) -> Dict[str, Optional[str]]:
    result = await session.execute(select(AdminSetting))
    return {row.name: row.value for row in result.scalars().all()}


async def upsert_setting(session: AsyncSession, name: str, value: Optional[str]) -> AdminSetting:
    setting = await session.get(AdminSetting, name)
    if setting:
        setting.value = value
    else:
        setting = AdminSetting(name=name, value=value)
        session.add(setting)
    await session.flush()
    return setting
