"""
Order Fulfillment Service

Транзакционный автомат состояний заказа.

Ответственность:
- Активация оплаченного заказа (pending/processing -> completed)
- Отмена заказа с возвратом списанного баланса (-> cancelled)
- Подтверждение оплаты и постановка активации в очередь (pending -> processing)

Каждый переход выполняется в одной транзакции: либо применяется целиком,
либо откатывается без частичных изменений.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.exceptions import (
    BalanceUpdateFailed,
    FulfillmentFailed,
    JobSchedulingFailed,
    NotFoundError,
)
from billing.jobs.dispatcher import AsyncioJobDispatcher
from billing.services.balance_service import BalanceService
from billing.services.order.helpers import EntitlementHelper
from billing.services.setting_service import BillingConfig
from billing.utils.date_utils import utcnow
from billing.utils.transaction_context import TransactionContext
from db.dal import order_dal, plan_dal, user_dal
from db.models import Order, OrderStatus

FULFILL_ORDER_JOB = "order.fulfill"

FULFILLABLE_STATUSES = (OrderStatus.pending, OrderStatus.processing)

# Background activation only picks up orders whose payment was committed
PAID_STATUSES = (OrderStatus.processing,)


class OrderFulfillmentService:
    """
    Order state transitions.

    Uses BalanceService for refunds and cancellations and a job dispatcher for
    the asynchronous activation that follows a confirmed payment.
    """

    def __init__(
        self,
        balance_service: BalanceService,
        job_dispatcher: Optional[AsyncioJobDispatcher] = None,
    ):
        self.balance_service = balance_service
        self.job_dispatcher = job_dispatcher
        self.entitlements = EntitlementHelper()

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

        Steps, all in one transaction:
        1. credit refund_amount to the subscriber's balance
        2. mark surplus_order_ids as discounted
        3. apply the entitlement change for the order's period
        4. run the configured order event and copy the plan's speed limit
        5. mark the order completed

        An order whose status is not in `statuses` (already completed,
        cancelled, discounted, or not yet paid for the job path) is returned
        unchanged.

        Raises:
            NotFoundError: order, subscriber or plan does not exist
            FulfillmentFailed: anything else went wrong; nothing was applied
        """
        now = now or utcnow()

        try:
            async with TransactionContext(session, name=f"fulfill:{order_id}"):
                order = await order_dal.get_order_for_update(session, order_id)
                if not order:
                    raise NotFoundError(f"Order {order_id} not found")

                if order.status not in statuses:
                    logging.info(
                        f"Order {order_id} is {order.status.value}, nothing to fulfill"
                    )
                    return order

                user = await user_dal.get_user_for_update(session, order.user_id)
                if not user:
                    raise NotFoundError(f"User {order.user_id} of order {order_id} not found")

                plan = await plan_dal.get_plan_by_id(session, order.plan_id)
                if not plan:
                    raise NotFoundError(f"Plan {order.plan_id} of order {order_id} not found")

                if order.refund_amount:
                    await self.balance_service.apply_in_transaction(
                        session,
                        user_id=user.id,
                        amount=order.refund_amount,
                        operation_type="surplus_refund",
                        description=f"Surplus refund for order {order.trade_no}",
                        order_id=order.id,
                    )

                if order.surplus_order_ids:
                    discounted = await order_dal.mark_orders_discounted(session, order.surplus_order_ids)
                    logging.info(f"Order {order_id}: {discounted} prior orders marked discounted")

                self.entitlements.apply_order(user, order, plan, now)
                self.entitlements.apply_order_event(user, order, config)
                user.speed_limit = plan.speed_limit

                order.status = OrderStatus.completed
                await session.flush()

        except NotFoundError:
            raise
        except Exception as e:
            logging.error(f"Fulfillment of order {order_id} failed and was rolled back: {e}", exc_info=True)
            raise FulfillmentFailed(order_id, str(e)) from e

        logging.info(
            f"Order {order_id} completed: user={user.id}, plan={plan.id}, "
            f"period={order.period.value}, type={order.type.value if order.type else None}, "
            f"expires_at={user.expires_at}"
        )
        return order

    async def cancel(self, session: AsyncSession, order_id: int) -> bool:
        """
        Cancel an order and return its balance portion to the subscriber.

        Only pending and processing orders can be cancelled. Completed and
        discounted orders already granted entitlements and are rejected.

        Returns:
            bool: True if the order is cancelled (or already was), False if
                the cancellation was rejected and rolled back
        """
        try:
            async with TransactionContext(session, name=f"cancel:{order_id}"):
                order = await order_dal.get_order_for_update(session, order_id)
                if not order:
                    raise NotFoundError(f"Order {order_id} not found")

                if order.status == OrderStatus.cancelled:
                    return True
                if order.status not in FULFILLABLE_STATUSES:
                    logging.warning(f"Order {order_id} is {order.status.value} and cannot be cancelled")
                    return False

                order.status = OrderStatus.cancelled
                if order.balance_amount:
                    await self.balance_service.apply_in_transaction(
                        session,
                        user_id=order.user_id,
                        amount=order.balance_amount,
                        operation_type="order_cancel",
                        description=f"Balance returned from cancelled order {order.trade_no}",
                        order_id=order.id,
                    )
                await session.flush()
        except (BalanceUpdateFailed, SQLAlchemyError) as e:
            logging.error(f"Cancellation of order {order_id} rolled back: {e}")
            return False

        logging.info(f"Order {order_id} cancelled")
        return True

    async def mark_paid(
        self,
        session: AsyncSession,
        order_id: int,
        callback_no: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record a payment confirmation and schedule the order's activation.

        Duplicate callbacks for an order that is no longer pending are a
        successful no-op. If the activation job cannot be scheduled the order
        stays pending.
        """
        now = now or utcnow()

        try:
            async with TransactionContext(session, name=f"mark_paid:{order_id}") as tx:
                order = await order_dal.get_order_for_update(session, order_id)
                if not order:
                    raise NotFoundError(f"Order {order_id} not found")

                if order.status != OrderStatus.pending:
                    logging.info(
                        f"Payment callback '{callback_no}' for order {order_id} ignored: "
                        f"status is already {order.status.value}"
                    )
                    return True

                order.status = OrderStatus.processing
                order.paid_at = now
                order.callback_no = callback_no
                await session.flush()

                try:
                    await self._schedule_fulfillment(order.id)
                except JobSchedulingFailed as e:
                    logging.error(f"Could not schedule fulfillment of order {order_id}: {e}")
                    tx.mark_for_rollback()
                    return False
        except SQLAlchemyError as e:
            logging.error(f"Payment confirmation of order {order_id} rolled back: {e}")
            return False

        logging.info(f"Order {order_id} paid (callback_no={callback_no}), fulfillment scheduled")
        return True

    async def _schedule_fulfillment(self, order_id: int) -> None:
        if self.job_dispatcher is None:
            raise JobSchedulingFailed("No job dispatcher configured")
        await self.job_dispatcher.dispatch(FULFILL_ORDER_JOB, {"order_id": order_id})
