from . import user_dal
from . import plan_dal
from . import order_dal
from . import coupon_dal
from . import balance_dal
from . import setting_dal

__all__ = (
    "user_dal",
    "plan_dal",
    "order_dal",
    "coupon_dal",
    "balance_dal",
    "setting_dal",
)
