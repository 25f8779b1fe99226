import logging
import sys
from datetime import datetime
from typing import Optional, Dict
from sqlalchemy.ext.asyncio import AsyncSession

from billing.exceptions import NotFoundError
from billing.services.setting_service import BillingConfig
from billing.utils.date_utils import days_until_reset, utcnow
from db.dal import plan_dal
from db.models import Plan, ResetTrafficMethod, User


class PlanService:
    """Сервис для работы с тарифами: вместимость и даты сброса трафика"""

    async def get_plan_for_update(self, session: AsyncSession, plan_id: int) -> Plan:
        """
        Получить тариф с блокировкой строки до конца транзакции.

        Raises:
            NotFoundError: тариф не найден
        """
        plan = await plan_dal.get_plan_for_update(session, plan_id)
        if not plan:
            logging.warning(f"Plan {plan_id} not found")
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    async def count_active_users(
        self,
        session: AsyncSession,
        now: Optional[datetime] = None,
    ) -> Dict[int, int]:
        return await plan_dal.count_active_users_by_plan(session, now or utcnow())

    async def remaining_capacity(
        self,
        session: AsyncSession,
        plan: Plan,
        now: Optional[datetime] = None,
    ) -> int:
        if plan.capacity_limit is None:
            return sys.maxsize

        active = await plan_dal.count_active_users_for_plan(session, plan.id, now or utcnow())
        return plan.capacity_limit - active

    async def have_capacity(
        self,
        session: AsyncSession,
        plan: Plan,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Есть ли свободные места на тарифе.

        Вызывать с тарифом, полученным через get_plan_for_update, чтобы
        параллельные оформления не заняли одно и то же место.
        """
        remaining = await self.remaining_capacity(session, plan, now)
        if remaining <= 0:
            logging.info(f"Plan {plan.id} is at capacity (limit={plan.capacity_limit})")
        return remaining > 0

    @staticmethod
    def resolve_reset_method(plan: Plan, config: BillingConfig) -> ResetTrafficMethod:
        if plan.reset_traffic_method is None:
            return config.reset_traffic_method
        return ResetTrafficMethod(plan.reset_traffic_method)

    async def get_reset_day(
        self,
        session: AsyncSession,
        user: User,
        config: BillingConfig,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Days until the user's next traffic reset, None if it never happens."""
        if user.plan_id is None:
            return None
        plan = await plan_dal.get_plan_by_id(session, user.plan_id)
        if not plan:
            return None
        method = self.resolve_reset_method(plan, config)
        return days_until_reset(method, user.expires_at, now)
