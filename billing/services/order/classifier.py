import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing.exceptions import PlanChangeDisabled
from billing.services.proration_service import ProrationService
from billing.services.setting_service import BillingConfig
from billing.utils.date_utils import Expiry, utcnow
from db.dal import order_dal, user_dal
from db.models import CommissionMode, Order, OrderType, Period, User


class OrderClassifier:
    """
    Определение типа заказа и расчет итоговой суммы.

    Шаги (порядок важен):
    1. тип заказа; для смены тарифа - зачет остатка (surplus) и возврат излишка
    2. персональная скидка пользователя
    3. комиссия пригласившему, от итоговой суммы
    """

    def __init__(self, proration_service: Optional[ProrationService] = None):
        self.proration_service = proration_service or ProrationService()

    async def classify(
        self,
        session: AsyncSession,
        order: Order,
        user: User,
        config: BillingConfig,
        now: Optional[datetime] = None,
    ) -> Order:
        now = now or utcnow()
        base_amount = int(order.total_amount or 0)

        await self.set_order_type(session, order, user, config, now)
        self.set_user_discount(order, user, base_amount)
        await self.set_invite(session, order, user, config)

        logging.info(
            f"Order for user {user.id} classified as {order.type.value}: "
            f"total={order.total_amount}, discount={order.discount_amount}, "
            f"surplus={order.surplus_amount}, refund={order.refund_amount}, "
            f"commission={order.commission_balance}"
        )
        return order

    async def set_order_type(
        self,
        session: AsyncSession,
        order: Order,
        user: User,
        config: BillingConfig,
        now: datetime,
    ) -> None:
        expiry = Expiry.of(user.expires_at)

        if Period(order.period) == Period.reset:
            order.type = OrderType.reset_traffic
        elif user.plan_id is not None and order.plan_id != user.plan_id and expiry.is_active(now):
            if not config.plan_change_enable:
                raise PlanChangeDisabled()

            order.type = OrderType.upgrade

            if config.surplus_enable:
                surplus = await self.proration_service.calculate(session, user, now)
                order.surplus_amount = surplus.surplus_amount
                order.surplus_order_ids = surplus.superseded_order_ids

            surplus_amount = order.surplus_amount or 0
            if surplus_amount >= order.total_amount:
                order.refund_amount = surplus_amount - order.total_amount
                order.total_amount = 0
            else:
                order.total_amount -= surplus_amount
        elif not expiry.is_never and expiry.is_active(now) and order.plan_id == user.plan_id:
            order.type = OrderType.renewal
        else:
            order.type = OrderType.new_purchase

    @staticmethod
    def set_user_discount(order: Order, user: User, base_amount: int) -> None:
        """
        Personal discount is computed on the pre-proration price but subtracted
        from the already prorated total, together with any coupon discount.
        """
        discount = order.discount_amount or 0
        if user.discount_percent:
            discount += int(round(base_amount * (user.discount_percent / 100)))
        order.discount_amount = discount

        total = order.total_amount - discount
        if total < 0:
            logging.info(
                f"Order for user {user.id}: discount {discount} exceeds total "
                f"{order.total_amount}, clamping to 0"
            )
            total = 0
        order.total_amount = total

    async def set_invite(
        self,
        session: AsyncSession,
        order: Order,
        user: User,
        config: BillingConfig,
    ) -> None:
        order.commission_balance = 0
        if not user.invited_by or order.total_amount <= 0:
            return

        order.invite_user_id = user.invited_by
        inviter = await user_dal.get_user_by_id(session, user.invited_by)
        if not inviter:
            return

        if not await self._is_commission_order(session, inviter, user, config):
            return

        order.commission_balance = int(order.total_amount * ((inviter.commission_rate or 0) / 100))

    @staticmethod
    async def _is_commission_order(
        session: AsyncSession,
        inviter: User,
        user: User,
        config: BillingConfig,
    ) -> bool:
        mode = inviter.commission_mode or CommissionMode.system
        if mode in (CommissionMode.per_order, CommissionMode.unlimited):
            return True
        if mode == CommissionMode.first_order_only:
            return not await order_dal.has_valid_order(session, user.id)
        # system: follows the global first-time-only switch
        if not config.commission_first_time_enable:
            return True
        return not await order_dal.has_valid_order(session, user.id)
