import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.exceptions import ConcurrencyConflict, CouponError, CouponErrorReason
from billing.utils.date_utils import utcnow
from db.dal import coupon_dal, order_dal
from db.models import Coupon, CouponType, Order, Period


class CouponService:
    """
    Проверка и применение купонов.

    Порядок проверок фиксирован (первая неудачная определяет сообщение):
    существование/видимость, остаток, начало, окончание, тариф, период,
    лимит на пользователя.
    """

    async def validate(
        self,
        session: AsyncSession,
        coupon: Optional[Coupon],
        plan_id: Optional[int] = None,
        period: Optional[Period] = None,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Coupon:
        now = now or utcnow()

        if not coupon or not coupon.show:
            raise CouponError(CouponErrorReason.NOT_FOUND)
        if coupon.usage_limit is not None and coupon.usage_limit <= 0:
            raise CouponError(CouponErrorReason.EXHAUSTED)
        if now < coupon.started_at:
            raise CouponError(CouponErrorReason.NOT_STARTED)
        if now > coupon.ended_at:
            raise CouponError(CouponErrorReason.EXPIRED)
        if coupon.plan_ids and plan_id and plan_id not in coupon.plan_ids:
            raise CouponError(CouponErrorReason.PLAN_NOT_ELIGIBLE)
        if coupon.periods and period and Period(period).value not in coupon.periods:
            raise CouponError(CouponErrorReason.PERIOD_NOT_ELIGIBLE)
        if coupon.usage_limit_per_user is not None and user_id:
            used = await order_dal.count_coupon_uses_by_user(session, coupon.id, user_id)
            if used >= coupon.usage_limit_per_user:
                raise CouponError(
                    CouponErrorReason.PER_SUBSCRIBER_LIMIT_EXCEEDED,
                    limit=coupon.usage_limit_per_user,
                )
        return coupon

    @staticmethod
    def calculate_discount(coupon: Coupon, total_amount: int) -> int:
        total_amount = int(total_amount or 0)
        if coupon.type == CouponType.fixed_amount:
            discount = int(coupon.value)
        else:
            discount = int(round(total_amount * (coupon.value / 100)))
        return max(0, min(discount, total_amount))

    async def check(
        self,
        session: AsyncSession,
        code: str,
        plan_id: Optional[int] = None,
        period: Optional[Period] = None,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Coupon:
        """Validate a code without consuming it (price preview)."""
        coupon = await coupon_dal.get_coupon_by_code(session, code)
        return await self.validate(session, coupon, plan_id, period, user_id, now)

    async def use(
        self,
        session: AsyncSession,
        code: str,
        order: Order,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Validate the coupon against the order, consume one use and set the
        order's discount. Runs inside the caller's transaction; the coupon row
        stays locked until it ends.

        Returns the discount amount.
        """
        try:
            coupon = await coupon_dal.get_coupon_by_code(session, code, for_update=True)
            await self.validate(
                session,
                coupon,
                plan_id=order.plan_id,
                period=order.period,
                user_id=order.user_id,
                now=now,
            )

            discount = self.calculate_discount(coupon, order.total_amount)

            if coupon.usage_limit is not None:
                if not await coupon_dal.decrement_usage_limit(session, coupon.id):
                    logging.warning(f"Coupon {coupon.id} exhausted while applying to user {order.user_id}")
                    raise CouponError(CouponErrorReason.EXHAUSTED)
        except OperationalError as e:
            logging.error(f"Lock conflict while applying coupon '{code}': {e}")
            raise ConcurrencyConflict(f"Coupon '{code}' is locked by another checkout") from e

        order.coupon_id = coupon.id
        order.discount_amount = discount
        logging.info(
            f"Coupon {coupon.id} ('{code}') applied for user {order.user_id}: "
            f"discount={discount} of total={order.total_amount}"
        )
        return discount
