import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from billing.cache import RedisCache
from config.settings import Settings
from db.dal import setting_dal
from db.models import OrderEvent, ResetTrafficMethod


class BillingConfig(BaseModel):
    """
    Immutable snapshot of the administrator settings used by one request.

    Resolved once (SettingService.get_config) and passed explicitly into
    classification and fulfillment.
    """
    model_config = ConfigDict(frozen=True)

    plan_change_enable: bool = True
    surplus_enable: bool = True
    commission_first_time_enable: bool = True
    reset_traffic_method: ResetTrafficMethod = ResetTrafficMethod.month_first_day
    new_order_event_id: OrderEvent = OrderEvent.none
    renew_order_event_id: OrderEvent = OrderEvent.none
    change_order_event_id: OrderEvent = OrderEvent.none

    @field_validator(
        "reset_traffic_method",
        "new_order_event_id",
        "renew_order_event_id",
        "change_order_event_id",
        mode="before",
    )
    @classmethod
    def _coerce_int(cls, value: Any) -> int:
        # admin_settings stores text
        return int(value)


class SettingService:
    """Сервис административных настроек: БД + дефолты из окружения + кэш Redis"""

    def __init__(self, settings: Settings, cache: Optional[RedisCache] = None):
        self.settings = settings
        self.cache = cache

    async def _load_overrides(self, session: AsyncSession) -> Dict[str, Optional[str]]:
        if self.cache:
            cached = await self.cache.get_admin_settings()
            if cached is not None:
                return cached

        overrides = await setting_dal.get_all_settings(session)
        if self.cache:
            await self.cache.set_admin_settings(overrides)
        return overrides

    async def get_config(self, session: AsyncSession) -> BillingConfig:
        values: Dict[str, Any] = dict(self.settings.admin_setting_defaults())
        overrides = await self._load_overrides(session)
        for name, value in overrides.items():
            if name in values and value is not None:
                values[name] = value
        return BillingConfig(**values)

    async def set_setting(self, session: AsyncSession, name: str, value: Any) -> None:
        if name not in self.settings.admin_setting_defaults():
            raise ValueError(f"Unknown admin setting '{name}'")
        if isinstance(value, bool):
            value = int(value)
        await setting_dal.upsert_setting(session, name, None if value is None else str(value))
        await session.commit()
        if self.cache:
            await self.cache.invalidate_admin_settings()
        logging.info(f"Admin setting '{name}' set to {value!r}")
