"""
Billing Exceptions

Иерархия ошибок движка заказов и биллинга.

- ValidationError и наследники: ошибка пользователя, сообщение показывается как есть
- ConcurrencyConflict: конфликт блокировок, операцию можно повторить
- FulfillmentFailed: активация заказа откатена целиком
- OrderActivationFailed: единственная ошибка, которую видит внешний слой
"""

import enum
from typing import Optional


class BillingError(Exception):
    """Base class for all billing engine errors."""
    pass


class ValidationError(BillingError):
    """User-correctable rule violation."""
    pass


class CouponErrorReason(enum.Enum):
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    PLAN_NOT_ELIGIBLE = "plan_not_eligible"
    PERIOD_NOT_ELIGIBLE = "period_not_eligible"
    PER_SUBSCRIBER_LIMIT_EXCEEDED = "per_subscriber_limit_exceeded"


COUPON_ERROR_MESSAGES = {
    CouponErrorReason.NOT_FOUND: "Invalid coupon",
    CouponErrorReason.EXHAUSTED: "This coupon is no longer available",
    CouponErrorReason.NOT_STARTED: "This coupon has not yet started",
    CouponErrorReason.EXPIRED: "This coupon has expired",
    CouponErrorReason.PLAN_NOT_ELIGIBLE: "The coupon code cannot be used for this subscription",
    CouponErrorReason.PERIOD_NOT_ELIGIBLE: "The coupon code cannot be used for this period",
    CouponErrorReason.PER_SUBSCRIBER_LIMIT_EXCEEDED: "The coupon can only be used {limit} times per person",
}


class CouponError(ValidationError):

    def __init__(self, reason: CouponErrorReason, limit: Optional[int] = None):
        self.reason = reason
        self.limit = limit
        super().__init__(COUPON_ERROR_MESSAGES[reason].format(limit=limit))


class PlanChangeDisabled(ValidationError):

    def __init__(self, message: str = "Plan changes are not allowed at this time. Please contact support."):
        super().__init__(message)


class CapacityExceeded(BillingError):
    """Plan has no free seats left."""
    pass


class ConcurrencyConflict(BillingError):
    """Lock wait / version conflict. Safe to retry."""
    pass


class NotFoundError(BillingError):
    """Missing coupon, plan, subscriber or order. Not retryable."""
    pass


class BalanceUpdateFailed(BillingError):
    pass


class FulfillmentFailed(BillingError):
    """Atomic entitlement transition failed and was rolled back."""

    def __init__(self, order_id: Optional[int], message: str = "Order fulfillment failed"):
        self.order_id = order_id
        super().__init__(f"{message} (order_id={order_id})")


class OrderActivationFailed(BillingError):

    def __init__(self, message: str = "Order activation failed"):
        super().__init__(message)


class JobSchedulingFailed(BillingError):
    """Follow-up job could not be enqueued."""
    pass
