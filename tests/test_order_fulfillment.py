"""
Тесты активации, отмены и подтверждения оплаты заказов.
"""

from datetime import timedelta

import pytest

from billing.exceptions import BalanceUpdateFailed, FulfillmentFailed, NotFoundError
from billing.services.order import FULFILL_ORDER_JOB, OrderFulfillmentService
from billing.services.setting_service import BillingConfig
from billing.utils.date_utils import add_months
from db.dal import balance_dal, order_dal, user_dal
from db.models import OrderEvent, OrderStatus, OrderType, Period

from conftest import NOW, RecordingDispatcher, add_order, add_plan, add_user, gb


async def _reload(session_factory, user_id, order_id):
    async with session_factory() as fresh:
        user = await user_dal.get_user_by_id(fresh, user_id)
        order = await order_dal.get_order_by_id(fresh, order_id)
        return user, order


# ==================== fulfill ====================


async def test_reset_order_only_zeroes_counters(session, session_factory, fulfillment_service, config):
    """
    Тест: заказ на сброс трафика обнуляет счетчики, тариф и срок не меняются.
    """
    plan = await add_plan(session, speed_limit=None)
    expires_at = NOW + timedelta(days=20)
    user = await add_user(
        session,
        plan_id=plan.id,
        group_id=5,
        traffic_quota=gb(50),
        used_upload=gb(1),
        used_download=gb(2),
        expires_at=expires_at,
    )
    order = await add_order(
        session, user, plan,
        period=Period.reset, type=OrderType.reset_traffic, status=OrderStatus.processing, total_amount=300,
    )
    await session.commit()

    await fulfillment_service.fulfill(session, order.id, config, NOW)

    user, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.completed
    assert user.used_upload == 0
    assert user.used_download == 0
    assert user.plan_id == plan.id
    assert user.group_id == 5
    assert user.traffic_quota == gb(50)
    assert user.expires_at == expires_at


async def test_new_periodic_purchase(session, session_factory, fulfillment_service, config):
    plan = await add_plan(session, group_id=3, transfer_enable=200, speed_limit=100)
    user = await add_user(session, used_upload=gb(5), used_download=gb(5))
    order = await add_order(
        session, user, plan,
        period=Period.month, type=OrderType.new_purchase, status=OrderStatus.processing, total_amount=1000,
    )
    await session.commit()

    await fulfillment_service.fulfill(session, order.id, config, NOW)

    user, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.completed
    assert user.plan_id == plan.id
    assert user.group_id == 3
    assert user.traffic_quota == gb(200)
    assert user.speed_limit == 100
    assert user.used_traffic == 0
    assert user.expires_at == add_months(NOW, 1)


async def test_renewal_stacks_on_future_expiry_and_keeps_usage(session, session_factory, fulfillment_service, config):
    plan = await add_plan(session)
    expires_at = NOW + timedelta(days=10)
    user = await add_user(session, plan_id=plan.id, expires_at=expires_at, used_download=gb(7))
    order = await add_order(
        session, user, plan,
        period=Period.quarter, type=OrderType.renewal, status=OrderStatus.processing,
    )
    await session.commit()

    await fulfillment_service.fulfill(session, order.id, config, NOW)

    user, _ = await _reload(session_factory, user.id, order.id)
    assert user.expires_at == add_months(expires_at, 3)
    assert user.used_download == gb(7)


async def test_upgrade_collapses_expiry_refunds_and_supersedes(session, session_factory, fulfillment_service, config):
    """
    Тест: смена тарифа - срок считается от "сейчас", излишек зачета
    зачисляется на баланс, поглощенные заказы становятся discounted.
    """
    old_plan = await add_plan(session, name="Old")
    new_plan = await add_plan(session, name="New", transfer_enable=300)
    user = await add_user(
        session, plan_id=old_plan.id, expires_at=NOW + timedelta(days=200), balance=10, used_download=gb(1),
    )
    prior = await add_order(session, user, old_plan, period=Period.year, status=OrderStatus.completed)
    order = await add_order(
        session, user, new_plan,
        period=Period.month, type=OrderType.upgrade, status=OrderStatus.processing,
        total_amount=0, surplus_amount=150, refund_amount=50, surplus_order_ids=[prior.id],
    )
    await session.commit()

    await fulfillment_service.fulfill(session, order.id, config, NOW)

    user, order = await _reload(session_factory, user.id, order.id)
    _, prior = await _reload(session_factory, user.id, prior.id)
    assert order.status == OrderStatus.completed
    assert prior.status == OrderStatus.discounted
    assert user.balance == 60
    assert user.plan_id == new_plan.id
    assert user.traffic_quota == gb(300)
    assert user.expires_at == add_months(NOW, 1)
    # Upgrade keeps the counters unless an order event resets them
    assert user.used_download == gb(1)

    async with session_factory() as fresh:
        history = await balance_dal.get_user_balance_history(fresh, user.id)
    assert [(op.amount, op.operation_type) for op in history] == [(50, "surplus_refund")]


async def test_onetime_purchase_clears_expiry(session, session_factory, fulfillment_service, config):
    plan = await add_plan(session, transfer_enable=100)
    user = await add_user(session, expires_at=NOW + timedelta(days=3), used_upload=gb(2))
    order = await add_order(
        session, user, plan,
        period=Period.onetime, type=OrderType.new_purchase, status=OrderStatus.processing,
    )
    await session.commit()

    await fulfillment_service.fulfill(session, order.id, config, NOW)

    user, _ = await _reload(session_factory, user.id, order.id)
    assert user.expires_at is None
    assert user.used_traffic == 0
    assert user.traffic_quota == gb(100)


async def test_order_event_resets_traffic_on_renewal(session, session_factory, fulfillment_service):
    plan = await add_plan(session)
    user = await add_user(session, plan_id=plan.id, expires_at=NOW + timedelta(days=10), used_upload=gb(3))
    order = await add_order(
        session, user, plan,
        period=Period.month, type=OrderType.renewal, status=OrderStatus.processing,
    )
    await session.commit()

    config = BillingConfig(renew_order_event_id=OrderEvent.reset_traffic)
    await fulfillment_service.fulfill(session, order.id, config, NOW)

    user, _ = await _reload(session_factory, user.id, order.id)
    assert user.used_traffic == 0


async def test_fulfill_is_noop_for_completed_order(session, session_factory, fulfillment_service, config):
    plan = await add_plan(session)
    user = await add_user(session, used_upload=gb(1))
    order = await add_order(session, user, plan, status=OrderStatus.completed)
    await session.commit()

    result = await fulfillment_service.fulfill(session, order.id, config, NOW)

    assert result.status == OrderStatus.completed
    user, _ = await _reload(session_factory, user.id, order.id)
    assert user.plan_id is None
    assert user.used_upload == gb(1)


async def test_fulfill_missing_order(session, fulfillment_service, config):
    with pytest.raises(NotFoundError):
        await fulfillment_service.fulfill(session, 404, config, NOW)


async def test_failed_fulfillment_rolls_back_everything(session, session_factory, balance_service, config, monkeypatch):
    """
    Тест: ошибка на любом шаге откатывает и возврат на баланс, и discounted,
    и изменения подписчика.
    """
    old_plan = await add_plan(session, name="Old")
    new_plan = await add_plan(session, name="New")
    user = await add_user(session, plan_id=old_plan.id, expires_at=NOW + timedelta(days=30), balance=0)
    prior = await add_order(session, user, old_plan, status=OrderStatus.completed)
    order = await add_order(
        session, user, new_plan,
        type=OrderType.upgrade, status=OrderStatus.processing,
        refund_amount=70, surplus_order_ids=[prior.id],
    )
    await session.commit()

    service = OrderFulfillmentService(balance_service, RecordingDispatcher())

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(service.entitlements, "apply_order_event", explode)

    with pytest.raises(FulfillmentFailed) as exc_info:
        await service.fulfill(session, order.id, config, NOW)
    assert exc_info.value.order_id == order.id

    user, order = await _reload(session_factory, user.id, order.id)
    _, prior = await _reload(session_factory, user.id, prior.id)
    assert order.status == OrderStatus.processing
    assert prior.status == OrderStatus.completed
    assert user.balance == 0
    assert user.plan_id == old_plan.id


# ==================== cancel ====================


async def test_cancel_returns_balance_portion(session, session_factory, fulfillment_service):
    plan = await add_plan(session)
    user = await add_user(session, balance=5)
    order = await add_order(session, user, plan, status=OrderStatus.pending, balance_amount=300)
    await session.commit()

    assert await fulfillment_service.cancel(session, order.id) is True

    user, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.cancelled
    assert user.balance == 305

    # Second cancel is a no-op
    assert await fulfillment_service.cancel(session, order.id) is True
    user, _ = await _reload(session_factory, user.id, order.id)
    assert user.balance == 305


async def test_cancel_with_failed_balance_credit_changes_nothing(
    session, session_factory, balance_service, fulfillment_service, monkeypatch,
):
    """
    Тест: если возврат на баланс не удался, статус заказа и баланс не меняются.
    """
    plan = await add_plan(session)
    user = await add_user(session, balance=5)
    order = await add_order(session, user, plan, status=OrderStatus.pending, balance_amount=300)
    await session.commit()

    async def failing_credit(*args, **kwargs):
        raise BalanceUpdateFailed("lock wait timeout")

    monkeypatch.setattr(balance_service, "apply_in_transaction", failing_credit)

    assert await fulfillment_service.cancel(session, order.id) is False

    user, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.pending
    assert user.balance == 5


async def test_cancel_rejects_completed_order(session, session_factory, fulfillment_service):
    plan = await add_plan(session)
    user = await add_user(session)
    order = await add_order(session, user, plan, status=OrderStatus.completed, balance_amount=100)
    await session.commit()

    assert await fulfillment_service.cancel(session, order.id) is False

    user, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.completed
    assert user.balance == 0


# ==================== mark_paid ====================


async def test_mark_paid_is_idempotent(session, session_factory, fulfillment_service, dispatcher):
    """
    Тест: повторный callback об оплате - успешный no-op без второй задачи активации.
    """
    plan = await add_plan(session)
    user = await add_user(session)
    order = await add_order(session, user, plan, status=OrderStatus.pending, total_amount=1000)
    await session.commit()

    assert await fulfillment_service.mark_paid(session, order.id, "cb-1", NOW) is True
    assert await fulfillment_service.mark_paid(session, order.id, "cb-2", NOW + timedelta(minutes=1)) is True

    assert dispatcher.jobs == [(FULFILL_ORDER_JOB, {"order_id": order.id})]
    _, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.processing
    assert order.callback_no == "cb-1"
    assert order.paid_at == NOW


async def test_mark_paid_scheduling_failure_keeps_order_pending(session, session_factory, balance_service):
    plan = await add_plan(session)
    user = await add_user(session)
    order = await add_order(session, user, plan, status=OrderStatus.pending)
    await session.commit()

    service = OrderFulfillmentService(balance_service, RecordingDispatcher(fail=True))

    assert await service.mark_paid(session, order.id, "cb-1", NOW) is False

    _, order = await _reload(session_factory, user.id, order.id)
    assert order.status == OrderStatus.pending
    assert order.callback_no is None
    assert order.paid_at is None
