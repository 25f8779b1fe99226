"""
Entitlement Clock

Чистая арифметика дат для подписок: продление на календарные месяцы и
расчет дней до сброса трафика. Никакого состояния, "сейчас" передается
параметром (по умолчанию текущее время UTC).

Calendar months are added with relativedelta: the day is clamped to the
last day of the target month (Jan 31 + 1 month = Feb 28/29). Every place
that adds months (expiry extension, proration, reset days) goes through
add_months so the rule is the same everywhere.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

from db.models import Period, ResetTrafficMethod

SECONDS_PER_DAY = 86400

PERIOD_MONTHS = {
    Period.month: 1,
    Period.quarter: 3,
    Period.half_year: 6,
    Period.year: 12,
    Period.two_year: 24,
    Period.three_year: 36,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    return dt + relativedelta(months=int(months))


def period_months(period: Period) -> int:
    period = Period(period)
    if period not in PERIOD_MONTHS:
        raise ValueError(f"Period {period.value} has no calendar length")
    return PERIOD_MONTHS[period]


@dataclass(frozen=True)
class Expiry:
    """
    Explicit expiry of an entitlement: either Never or At(timestamp).

    Stored as a nullable column where NULL means "never expires".
    """
    at: Optional[datetime] = None

    @classmethod
    def never(cls) -> "Expiry":
        return cls(None)

    @classmethod
    def of(cls, expires_at: Optional[datetime]) -> "Expiry":
        return cls(expires_at)

    @property
    def is_never(self) -> bool:
        return self.at is None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.at is None:
            return False
        return self.at <= (now or utcnow())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now)


def extend_by_period(
    period: Period,
    from_timestamp: Optional[datetime],
    now: Optional[datetime] = None,
) -> datetime:
    """
    New expiry after buying `period` on top of `from_timestamp`.

    An anchor in the past (or missing) is moved to now so expired time is
    never stacked.
    """
    now = now or utcnow()
    anchor = from_timestamp
    if anchor is None or anchor < now:
        anchor = now
    return add_months(anchor, period_months(period))


def _last_day_of_month(dt: datetime) -> int:
    return (dt.replace(day=1) + relativedelta(months=1, days=-1)).day


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _days_until_month_first_day(now: datetime) -> int:
    return _last_day_of_month(now) - now.day


def _days_until_expire_day(expires_at: datetime, now: datetime) -> int:
    day = expires_at.day
    today = now.day
    last_day = _last_day_of_month(now)

    if day >= today and day >= last_day:
        return last_day - today
    if day >= today:
        return day - today
    return last_day - today + day


def _days_until_year_first_day(now: datetime) -> int:
    next_year = _start_of_day(now).replace(year=now.year + 1, month=1, day=1)
    return int((next_year - now).total_seconds() // SECONDS_PER_DAY)


def _anniversary(expires_at: datetime, year: int, now: datetime) -> datetime:
    # Feb 29 falls back to Feb 28 in non-leap years
    base = _start_of_day(now).replace(year=year, month=1, day=1)
    return base + relativedelta(month=expires_at.month, day=expires_at.day)


def _days_until_year_expire_day(expires_at: datetime, now: datetime) -> int:
    this_year = _anniversary(expires_at, now.year, now)
    if this_year > now:
        return int((this_year - now).total_seconds() // SECONDS_PER_DAY)
    next_year = _anniversary(expires_at, now.year + 1, now)
    return int((next_year - now).total_seconds() // SECONDS_PER_DAY)


def days_until_reset(
    method: ResetTrafficMethod,
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    Days left until the next traffic reset.

    None when the entitlement never expires, is already expired, or the
    method is `never`.
    """
    now = now or utcnow()
    expiry = Expiry.of(expires_at)
    if expiry.is_never or expiry.is_expired(now):
        return None

    method = ResetTrafficMethod(method)
    if method == ResetTrafficMethod.month_first_day:
        return _days_until_month_first_day(now)
    if method == ResetTrafficMethod.expire_day:
        return _days_until_expire_day(expires_at, now)
    if method == ResetTrafficMethod.year_first_day:
        return _days_until_year_first_day(now)
    if method == ResetTrafficMethod.year_expire_day:
        return _days_until_year_expire_day(expires_at, now)
    return None
