"""
Тесты вместимости тарифов и дат сброса трафика.
"""

from datetime import timedelta

from billing.services.plan_service import PlanService
from db.models import ResetTrafficMethod

from conftest import NOW, add_plan, add_user


async def test_capacity_counts_only_active_holders(session):
    """
    Тест: истекшие подписки не занимают места, бессрочные занимают.
    """
    service = PlanService()
    plan = await add_plan(session, capacity_limit=2)
    await add_user(session, plan_id=plan.id, expires_at=NOW + timedelta(days=1))
    await add_user(session, plan_id=plan.id, expires_at=NOW - timedelta(days=1))

    assert await service.remaining_capacity(session, plan, NOW) == 1
    assert await service.have_capacity(session, plan, NOW) is True

    await add_user(session, plan_id=plan.id, expires_at=None)
    assert await service.have_capacity(session, plan, NOW) is False
    assert await service.count_active_users(session, NOW) == {plan.id: 2}


async def test_unlimited_plan_always_has_capacity(session):
    plan = await add_plan(session, capacity_limit=None)

    assert await PlanService().have_capacity(session, plan, NOW) is True


async def test_reset_method_prefers_plan_value(session, config):
    service = PlanService()
    plan = await add_plan(session, reset_traffic_method=ResetTrafficMethod.never)
    inherited = await add_plan(session, name="Inherited", reset_traffic_method=None)

    assert service.resolve_reset_method(plan, config) == ResetTrafficMethod.never
    assert service.resolve_reset_method(inherited, config) == config.reset_traffic_method

    user = await add_user(session, plan_id=plan.id, expires_at=NOW + timedelta(days=10))
    assert await service.get_reset_day(session, user, config, NOW) is None

    stranger = await add_user(session)
    assert await service.get_reset_day(session, stranger, config, NOW) is None
