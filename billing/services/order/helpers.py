"""
Order Helper Classes

Вспомогательные функции для заказов: изменение прав подписчика при
активации и генерация номера заказа.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from billing.services.setting_service import BillingConfig
from billing.utils.date_utils import extend_by_period
from db.models import Order, OrderEvent, OrderType, Period, Plan, User


def new_trade_no() -> str:
    return uuid.uuid4().hex


class EntitlementHelper:
    """
    Mutations of a subscriber's entitlements (quota, plan, expiry).

    Pure in-memory changes on already locked ORM objects; persisting is up to
    the caller's transaction.
    """

    @staticmethod
    def reset_traffic(user: User) -> None:
        user.used_upload = 0
        user.used_download = 0

    @staticmethod
    def apply_plan(user: User, plan: Plan) -> None:
        user.traffic_quota = plan.transfer_enable_bytes
        user.plan_id = plan.id
        user.group_id = plan.group_id

    @classmethod
    def buy_by_reset_traffic(cls, user: User) -> None:
        cls.reset_traffic(user)

    @classmethod
    def buy_by_onetime(cls, user: User, plan: Plan) -> None:
        cls.reset_traffic(user)
        cls.apply_plan(user, plan)
        user.expires_at = None

    @classmethod
    def buy_by_period(cls, user: User, order: Order, plan: Plan, now: datetime) -> None:
        if order.type == OrderType.upgrade:
            # Unused time of the previous plan is already credited as surplus
            user.expires_at = now

        # One-time -> periodic, or a brand-new purchase: start from clean counters
        if user.expires_at is None or order.type == OrderType.new_purchase:
            cls.reset_traffic(user)

        cls.apply_plan(user, plan)
        user.expires_at = extend_by_period(order.period, user.expires_at, now)

    @classmethod
    def apply_order(cls, user: User, order: Order, plan: Plan, now: datetime) -> None:
        period = Period(order.period)
        if period == Period.reset:
            cls.buy_by_reset_traffic(user)
        elif period == Period.onetime:
            cls.buy_by_onetime(user, plan)
        else:
            cls.buy_by_period(user, order, plan, now)

    @staticmethod
    def event_for_order(order: Order, config: BillingConfig) -> Optional[OrderEvent]:
        if order.type == OrderType.new_purchase:
            return config.new_order_event_id
        if order.type == OrderType.renewal:
            return config.renew_order_event_id
        if order.type == OrderType.upgrade:
            return config.change_order_event_id
        return None

    @classmethod
    def apply_order_event(cls, user: User, order: Order, config: BillingConfig) -> None:
        event = cls.event_for_order(order, config)
        if event == OrderEvent.reset_traffic:
            logging.info(f"Order {order.id}: event reset_traffic for user {user.id}")
            cls.reset_traffic(user)
