import logging
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing.cache import RedisCache
from billing.jobs.dispatcher import AsyncioJobDispatcher
from billing.services.balance_service import BalanceService
from billing.services.coupon_service import CouponService
from billing.services.order import FULFILL_ORDER_JOB, OrderClassifier, OrderFulfillmentService
from billing.services.order_service import OrderService
from billing.services.plan_service import PlanService
from billing.services.proration_service import ProrationService
from billing.services.setting_service import SettingService
from billing.services.traffic_service import TrafficStatService
from config.settings import Settings


def build_core_services(
    settings: Settings,
    async_session_factory: async_sessionmaker,
    redis: Optional[Redis] = None,
    job_dispatcher: Optional[AsyncioJobDispatcher] = None,
) -> Dict[str, Any]:
    """
    Build and wire all core services with explicit dependency injection.

    Args:
        settings: Application settings
        async_session_factory: SQLAlchemy async session factory
        redis: Redis client for traffic statistics (optional)
        job_dispatcher: Dispatcher for order post-processing (built from settings if omitted)

    Returns:
        Dictionary of initialized services with proper dependencies
    """
    cache = RedisCache(settings)
    setting_service = SettingService(settings, cache)
    balance_service = BalanceService()
    coupon_service = CouponService()
    plan_service = PlanService()
    proration_service = ProrationService()
    classifier = OrderClassifier(proration_service)

    if job_dispatcher is None:
        job_dispatcher = AsyncioJobDispatcher(
            workers=settings.JOB_WORKERS,
            queue_size=settings.JOB_QUEUE_SIZE,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )

    fulfillment_service = OrderFulfillmentService(balance_service, job_dispatcher)
    order_service = OrderService(
        setting_service=setting_service,
        balance_service=balance_service,
        coupon_service=coupon_service,
        plan_service=plan_service,
        classifier=classifier,
        fulfillment_service=fulfillment_service,
        session_factory=async_session_factory,
    )

    # Paid orders are activated by the background worker
    job_dispatcher.register(FULFILL_ORDER_JOB, order_service.handle_fulfillment_job)
    logging.info(f"Wired OrderService.handle_fulfillment_job to job '{FULFILL_ORDER_JOB}'")

    if redis is None and settings.REDIS_ENABLED:
        redis = Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            db=settings.REDIS_STATS_DB,
        )
    traffic_service = TrafficStatService(redis) if redis is not None else None
    if traffic_service is None:
        logging.warning("Redis is disabled, traffic statistics service not available")

    return {
        "cache": cache,
        "setting_service": setting_service,
        "balance_service": balance_service,
        "coupon_service": coupon_service,
        "plan_service": plan_service,
        "proration_service": proration_service,
        "order_classifier": classifier,
        "fulfillment_service": fulfillment_service,
        "order_service": order_service,
        "traffic_service": traffic_service,
        "job_dispatcher": job_dispatcher,
    }
