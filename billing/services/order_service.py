"""
Order Service

Фасад движка заказов для внешнего слоя (HTTP/контроллеры, платежные шлюзы).

Ответственность:
- Оформление заказа: цена, купон, классификация, списание баланса
- Предпросмотр и применение купонов
- Подтверждение оплаты, активация, отмена
- Изменение баланса

Ошибки конкурентности и активации перехватываются здесь, логируются и
пробрасываются наружу одной ошибкой OrderActivationFailed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.exceptions import (
    CapacityExceeded,
    ConcurrencyConflict,
    FulfillmentFailed,
    NotFoundError,
    OrderActivationFailed,
    ValidationError,
)
from billing.services.balance_service import BalanceService
from billing.services.coupon_service import CouponService
from billing.services.order import (
    FULFILLABLE_STATUSES,
    PAID_STATUSES,
    OrderClassifier,
    OrderFulfillmentService,
    new_trade_no,
)
from billing.services.plan_service import PlanService
from billing.services.setting_service import BillingConfig, SettingService
from billing.utils.date_utils import Expiry, utcnow
from billing.utils.transaction_context import TransactionContext
from db.dal import order_dal, plan_dal, user_dal
from db.models import Order, OrderStatus, Period, Plan, User


class OrderService:
    """
    Order lifecycle facade.

    Every public operation takes the caller's session and, where the rules
    depend on administrator settings, a BillingConfig snapshot resolved once
    per request (SettingService.get_config).
    """

    def __init__(
        self,
        setting_service: SettingService,
        balance_service: BalanceService,
        coupon_service: CouponService,
        plan_service: PlanService,
        classifier: OrderClassifier,
        fulfillment_service: OrderFulfillmentService,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.setting_service = setting_service
        self.balance_service = balance_service
        self.coupon_service = coupon_service
        self.plan_service = plan_service
        self.classifier = classifier
        self.fulfillment_service = fulfillment_service
        self.session_factory = session_factory

        logging.info("OrderService initialized")

    # ==================== Checkout ====================

    async def create_order(
        self,
        session: AsyncSession,
        user_id: int,
        plan_id: int,
        period: Period,
        config: BillingConfig,
        coupon_code: Optional[str] = None,
        use_balance: bool = True,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Create a priced pending order.

        Args:
            session: Сессия БД
            user_id: ID подписчика
            plan_id: ID тарифа
            period: Период оплаты
            config: Снимок административных настроек
            coupon_code: Код купона (опционально)
            use_balance: Списать доступный баланс в счет заказа
            now: Текущее время (для тестов)

        Returns:
            Order: сохраненный заказ со статусом pending

        Raises:
            NotFoundError: подписчик или тариф не найден
            ValidationError: заказ не может быть оформлен (в т.ч. CouponError, PlanChangeDisabled)
            CapacityExceeded: на тарифе нет мест
            ConcurrencyConflict: конфликт блокировок, можно повторить
        """
        now = now or utcnow()
        period = Period(period)

        try:
            async with TransactionContext(session, name=f"create_order:{user_id}"):
                user = await user_dal.get_user_for_update(session, user_id)
                if not user:
                    raise NotFoundError(f"User {user_id} not found")

                if await order_dal.has_unfinished_order(session, user.id):
                    raise ValidationError(
                        "You have an unpaid or pending order, please try again later or cancel it"
                    )

                plan = await self.plan_service.get_plan_for_update(session, plan_id)
                price = plan.price_for(period)
                if price is None:
                    raise ValidationError("This payment period cannot be purchased, please choose another period")

                await self._check_plan_available(session, user, plan, period, now)

                order = Order(
                    trade_no=new_trade_no(),
                    user_id=user.id,
                    plan_id=plan.id,
                    period=period,
                    status=OrderStatus.pending,
                    total_amount=int(price),
                    created_at=now,
                )

                if coupon_code:
                    await self.coupon_service.use(session, coupon_code, order, now)

                await self.classifier.classify(session, order, user, config, now)
                order = await order_dal.create_order(session, order)

                if use_balance:
                    await self._draw_down_balance(session, user, order)

                await session.flush()
        except OperationalError as e:
            logging.error(f"Lock conflict while creating order for user {user_id}: {e}")
            raise ConcurrencyConflict(f"Checkout of user {user_id} conflicted with another request") from e

        logging.info(
            f"Order {order.id} created for user {user_id}: plan={plan_id}, period={period.value}, "
            f"type={order.type.value}, total={order.total_amount}, balance_amount={order.balance_amount}"
        )
        return order

    async def _check_plan_available(
        self,
        session: AsyncSession,
        user: User,
        plan: Plan,
        period: Period,
        now: datetime,
    ) -> None:
        is_holder = (
            user.plan_id == plan.id
            and not user.is_banned
            and Expiry.of(user.expires_at).is_active(now)
        )

        if period == Period.reset:
            if not is_holder:
                raise ValidationError(
                    "Subscription has expired or no active subscription, unable to purchase Data Reset Package"
                )
            return

        if not plan.sell and (not plan.renew or user.plan_id != plan.id):
            raise ValidationError("This subscription has been sold out, please choose another subscription")
        if not plan.renew and user.plan_id == plan.id:
            raise ValidationError("This subscription cannot be renewed, please change to another subscription")

        # Plan row is locked, so concurrent checkouts see each other's seats
        if not is_holder and not await self.plan_service.have_capacity(session, plan, now):
            raise CapacityExceeded("Current product is sold out")

    async def _draw_down_balance(self, session: AsyncSession, user: User, order: Order) -> None:
        balance = user.balance or 0
        if balance <= 0 or order.total_amount <= 0:
            return

        drawn = min(balance, order.total_amount)
        await self.balance_service.apply_in_transaction(
            session,
            user_id=user.id,
            amount=-drawn,
            operation_type="payment",
            description=f"Payment for order {order.trade_no}",
            order_id=order.id,
        )
        order.balance_amount = drawn
        order.total_amount -= drawn

    # ==================== Pricing ====================

    async def classify(
        self,
        session: AsyncSession,
        order: Order,
        user: User,
        config: BillingConfig,
        now: Optional[datetime] = None,
    ) -> Order:
        return await self.classifier.classify(session, order, user, config, now)

    async def check_coupon(
        self,
        session: AsyncSession,
        code: str,
        plan_id: int,
        period: Period,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Preview: validate a coupon without consuming it.

        Returns:
            int: скидка, которую купон даст на цену тарифа за период
        """
        plan = await plan_dal.get_plan_by_id(session, plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        coupon = await self.coupon_service.check(session, code, plan_id, period, user_id, now)
        return self.coupon_service.calculate_discount(coupon, plan.price_for(period) or 0)

    async def apply_coupon(
        self,
        session: AsyncSession,
        code: str,
        order: Order,
        now: Optional[datetime] = None,
    ) -> int:
        """Consume one use of the coupon for the order; caller owns the transaction."""
        return await self.coupon_service.use(session, code, order, now)

    # ==================== State transitions ====================

    async def mark_paid(
        self,
        session: AsyncSession,
        order_id: int,
        callback_no: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        return await self.fulfillment_service.mark_paid(session, order_id, callback_no, now)

    async def fulfill(
        self,
        session: AsyncSession,
        order_id: int,
        config: BillingConfig,
        now: Optional[datetime] = None,
        statuses: Tuple[OrderStatus, ...] = FULFILLABLE_STATUSES,
    ) -> Order:
        """
        Activate a paid order.

        Raises:
            NotFoundError: order, subscriber or plan does not exist
            OrderActivationFailed: activation was rolled back
        """
        try:
            return await self.fulfillment_service.fulfill(session, order_id, config, now, statuses)
        except (FulfillmentFailed, ConcurrencyConflict) as e:
            logging.error(f"Order {order_id} activation failed: {e}")
            raise OrderActivationFailed() from e

    async def cancel(self, session: AsyncSession, order_id: int) -> bool:
        return await self.fulfillment_service.cancel(session, order_id)

    async def add_balance(
        self,
        session: AsyncSession,
        user_id: int,
        amount: int,
        description: Optional[str] = None,
    ) -> bool:
        return await self.balance_service.add_balance(
            session,
            user_id,
            amount,
            operation_type="adjustment",
            description=description,
        )

    async def handle_fulfillment_job(self, payload: Dict[str, Any]) -> None:
        """Job handler: activate the order from the payload in a fresh session."""
        if self.session_factory is None:
            raise RuntimeError("OrderService has no session factory for background jobs")

        order_id = int(payload["order_id"])
        async with self.session_factory() as session:
            config = await self.setting_service.get_config(session)
            await self.fulfill(session, order_id, config, statuses=PAID_STATUSES)

    # ==================== Entitlement lookups ====================

    async def get_reset_day(
        self,
        session: AsyncSession,
        user_id: int,
        config: BillingConfig,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        user = await user_dal.get_user_by_id(session, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return await self.plan_service.get_reset_day(session, user, config, now)
