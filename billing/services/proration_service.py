import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing.utils.date_utils import Expiry, add_months, period_months, utcnow
from db.dal import order_dal
from db.models import BYTES_PER_GB, User


@dataclass
class SurplusResult:
    surplus_amount: int = 0
    superseded_order_ids: List[int] = field(default_factory=list)


class ProrationService:
    """
    Расчет остаточной стоимости текущего тарифа при смене тарифа.

    - Бессрочный (разовый) тариф: по неиспользованному трафику
    - Периодический тариф: по неиспользованному времени оплаченных заказов
    """

    async def calculate(
        self,
        session: AsyncSession,
        user: User,
        now: Optional[datetime] = None,
    ) -> SurplusResult:
        now = now or utcnow()
        if Expiry.of(user.expires_at).is_never:
            result = await self.calculate_by_onetime(session, user)
        else:
            result = await self.calculate_by_period(session, user, now)
        logging.info(
            f"Surplus for user {user.id}: amount={result.surplus_amount}, "
            f"superseded_orders={result.superseded_order_ids}"
        )
        return result

    async def calculate_by_onetime(self, session: AsyncSession, user: User) -> SurplusResult:
        last_order = await order_dal.get_last_completed_onetime_order(session, user.id)
        if not last_order:
            return SurplusResult()

        quota_gb = (user.traffic_quota or 0) / BYTES_PER_GB
        if not quota_gb:
            return SurplusResult()

        paid_total = (last_order.total_amount or 0) + (last_order.balance_amount or 0)
        if not paid_total:
            return SurplusResult()

        unit_price = paid_total / quota_gb
        unused_gb = quota_gb - user.used_traffic / BYTES_PER_GB
        surplus = unit_price * unused_gb

        return SurplusResult(
            surplus_amount=max(0, int(round(surplus))),
            superseded_order_ids=await order_dal.get_completed_order_ids_excluding_reset(session, user.id),
        )

    async def calculate_by_period(
        self,
        session: AsyncSession,
        user: User,
        now: datetime,
    ) -> SurplusResult:
        orders = await order_dal.get_completed_periodic_orders(session, user.id)
        if not orders:
            return SurplusResult()

        amount_paid = 0
        months_remaining = 0
        anchor: Optional[datetime] = None
        contributing: List[int] = []

        for order in orders:
            months = period_months(order.period)
            if add_months(order.created_at, months) < now:
                continue
            if anchor is None or order.created_at > anchor:
                anchor = order.created_at
            months_remaining += months
            amount_paid += (
                (order.total_amount or 0)
                + (order.balance_amount or 0)
                + (order.surplus_amount or 0)
                - (order.refund_amount or 0)
            )
            contributing.append(order.id)

        if anchor is None:
            return SurplusResult()

        combined_expiry = add_months(anchor, months_remaining)
        if combined_expiry < now:
            return SurplusResult()

        range_seconds = (combined_expiry - anchor).total_seconds()
        remaining_seconds = (combined_expiry - now).total_seconds()
        rate_per_second = amount_paid / range_seconds
        surplus = rate_per_second * remaining_seconds

        return SurplusResult(
            surplus_amount=max(0, int(round(surplus))),
            superseded_order_ids=contributing,
        )
