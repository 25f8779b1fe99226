"""
Order Services Module

Сервисы жизненного цикла заказа: классификация и расчет суммы,
активация/отмена/подтверждение оплаты, изменение прав подписчика.
"""

from billing.services.order.helpers import EntitlementHelper, new_trade_no
from billing.services.order.classifier import OrderClassifier
from billing.services.order.fulfillment import (
    FULFILL_ORDER_JOB,
    FULFILLABLE_STATUSES,
    PAID_STATUSES,
    OrderFulfillmentService,
)

__all__ = [
    "EntitlementHelper",
    "new_trade_no",
    "OrderClassifier",
    "OrderFulfillmentService",
    "FULFILL_ORDER_JOB",
    "FULFILLABLE_STATUSES",
    "PAID_STATUSES",
]
